"""后台审核调度器测试。"""

import asyncio
import os
import sqlite3
import tempfile
from unittest.mock import MagicMock, patch

import pytest

# 在导入 app 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="verify_worker_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import app.database as _db_mod
from app.database import init_db
from app.services import verification_worker
from app.services.ocr_extractor import OcrExtractor
from app.services.orchestrator import VerificationOrchestrator
from app.services.order_service import OrderService
from app.services.platform_config import save_receiving_account
from app.services.submission_service import SubmissionService


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库，测试后恢复全局编排器。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS settlement_event_logs;
        DROP TABLE IF EXISTS settlement_events;
        DROP TABLE IF EXISTS platform_fees;
        DROP TABLE IF EXISTS verification_logs;
        DROP TABLE IF EXISTS payment_submissions;
        DROP TABLE IF EXISTS payment_orders;
        DROP TABLE IF EXISTS wallet_transactions;
        DROP TABLE IF EXISTS wallets;
        DROP TABLE IF EXISTS system_config;
        DROP TABLE IF EXISTS admin;
    """)
    conn.close()
    init_db()
    save_receiving_account("JUAN DELA CRUZ", "09171234567")
    yield
    verification_worker.set_orchestrator(None)
    verification_worker._active_tasks.clear()


@pytest.fixture
def orchestrator(fake_engine, receipt_text):
    orch = VerificationOrchestrator(extractor=OcrExtractor(fake_engine(receipt_text(amount="10.00"))))
    verification_worker.set_orchestrator(orch)
    yield orch
    orch.shutdown()


def _submit(make_screenshot, user_id="u1", seed=1) -> int:
    order = OrderService().create_topup_order(user_id, "10.00")
    return SubmissionService().create_submission(order.order_id, user_id, make_screenshot(seed=seed), "a.jpg")


class TestOrchestratorRegistry:
    """全局编排器测试。"""

    def test_lazy_default(self):
        verification_worker.set_orchestrator(None)
        orch = verification_worker.get_orchestrator()
        assert isinstance(orch, VerificationOrchestrator)
        assert verification_worker.get_orchestrator() is orch
        orch.shutdown()

    def test_set_orchestrator(self, orchestrator):
        assert verification_worker.get_orchestrator() is orchestrator


class TestStartVerification:
    """start_verification 测试。"""

    def test_without_event_loop_is_noop(self, orchestrator, make_screenshot):
        sid = _submit(make_screenshot)
        verification_worker.start_verification(sid)
        assert verification_worker.get_active_task_count() == 0

    def test_runs_in_background(self, orchestrator, make_screenshot):
        sid = _submit(make_screenshot)

        async def _run():
            verification_worker.start_verification(sid)
            assert verification_worker.get_active_task_count() == 1
            # 重复启动不会创建新任务
            verification_worker.start_verification(sid)
            assert verification_worker.get_active_task_count() == 1
            await asyncio.gather(*list(verification_worker._active_tasks.values()))

        asyncio.run(_run())
        assert verification_worker.get_active_task_count() == 0
        assert SubmissionService().get_status(sid, "u1")["status"] == "approved"

    def test_approval_pushes_settlement_events(self, orchestrator, make_screenshot):
        sid = _submit(make_screenshot)
        with patch("app.services.verification_worker.SettlementNotifier") as mock_cls:
            asyncio.run(verification_worker._verify_submission(sid))
        mock_cls.return_value.retry_due.assert_called_once()

    def test_errors_are_contained(self, make_screenshot):
        broken = MagicMock()
        broken.verify.side_effect = RuntimeError("boom")
        verification_worker.set_orchestrator(broken)
        asyncio.run(verification_worker._verify_submission(1))
        assert verification_worker.get_active_task_count() == 0

    def test_cancel_verification(self):
        async def _run():
            blocker = asyncio.get_running_loop().create_future()
            task = asyncio.ensure_future(blocker)
            verification_worker._active_tasks[42] = task
            verification_worker.cancel_verification(42)
            await asyncio.sleep(0)
            return task.cancelled()

        assert asyncio.run(_run()) is True
        assert verification_worker.get_active_task_count() == 0


class TestSweep:
    """sweep_once 测试。"""

    def test_sweep_processes_pending(self, orchestrator, make_screenshot):
        a = _submit(make_screenshot, "u1", seed=1)
        b = _submit(make_screenshot, "u2", seed=2)
        assert verification_worker.sweep_once() == 2
        assert SubmissionService().get_status(a, "u1")["status"] == "approved"
        assert SubmissionService().get_status(b, "u2")["status"] != "pending"
        assert verification_worker.sweep_once() == 0
