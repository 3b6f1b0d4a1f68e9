"""结算服务单元测试：订单履约的一次性资金副作用。"""

import os
import sqlite3
import tempfile

import pytest

# 在导入 app 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="settlement_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import app.database as _db_mod
from app.database import get_db, init_db
from app.services.order_service import OrderService
from app.services.platform_config import save_receiving_account
from app.services.settlement_service import (
    EVENT_PLATFORM_FEE_PAID,
    EVENT_WALLET_CREDIT,
    OrderAlreadyFulfilledError,
    SettlementError,
    apply_approval,
    settle,
)


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
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


def _balance(user_id: str) -> int:
    db = get_db()
    try:
        return db.execute("SELECT balance FROM wallets WHERE user_id = ?", (user_id,)).fetchone()["balance"]
    finally:
        db.close()


def _count(table: str, order_id: str) -> int:
    db = get_db()
    try:
        return db.execute(f"SELECT COUNT(*) AS cnt FROM {table} WHERE order_id = ?", (order_id,)).fetchone()["cnt"]
    finally:
        db.close()


class TestTopupSettlement:
    """充值订单结算测试。"""

    def test_credits_wallet_once(self):
        order = OrderService().create_topup_order("u1", "10.00")
        assert settle(order.order_id, 1) is True
        assert _balance("u1") == 1000
        assert _count("wallet_transactions", order.order_id) == 1
        assert _count("settlement_events", order.order_id) == 1

    def test_same_submission_twice_is_noop(self):
        """同一提交记录重复结算只入账一次。"""
        order = OrderService().create_topup_order("u1", "10.00")
        settle(order.order_id, 1)
        assert settle(order.order_id, 1) is False
        assert _balance("u1") == 1000
        assert _count("wallet_transactions", order.order_id) == 1

    def test_other_submission_raises(self):
        order = OrderService().create_topup_order("u1", "10.00")
        settle(order.order_id, 1)
        with pytest.raises(OrderAlreadyFulfilledError):
            settle(order.order_id, 2)
        assert _balance("u1") == 1000

    def test_marks_order_fulfilled(self):
        svc = OrderService()
        order = svc.create_topup_order("u1", "10.00")
        settle(order.order_id, 5)
        stored = svc.get_order(order.order_id)
        assert stored.fulfilled is True
        assert stored.fulfilled_by == 5
        assert stored.status == "fulfilled"

    def test_event_payload(self):
        order = OrderService().create_topup_order("u1", "10.00")
        settle(order.order_id, 1)
        db = get_db()
        try:
            event = db.execute(
                "SELECT * FROM settlement_events WHERE order_id = ?", (order.order_id,)
            ).fetchone()
        finally:
            db.close()
        assert event["event_type"] == EVENT_WALLET_CREDIT
        assert event["amount"] == 1000
        assert event["user_id"] == "u1"
        assert event["notify_status"] == 0

    def test_balance_accumulates_across_orders(self):
        svc = OrderService()
        settle(svc.create_topup_order("u1", "10.00").order_id, 1)
        settle(svc.create_topup_order("u1", "5.50").order_id, 2)
        assert _balance("u1") == 1550


class TestPlatformFeeSettlement:
    """平台服务费订单结算测试。"""

    def test_marks_fee_paid(self):
        order = OrderService().create_platform_fee_order("u1", "BID-9", "250")
        settle(order.order_id, 1)
        db = get_db()
        try:
            fee = db.execute("SELECT * FROM platform_fees WHERE bid_id = 'BID-9'").fetchone()
            event = db.execute(
                "SELECT * FROM settlement_events WHERE order_id = ?", (order.order_id,)
            ).fetchone()
        finally:
            db.close()
        assert fee["order_id"] == order.order_id
        assert event["event_type"] == EVENT_PLATFORM_FEE_PAID
        assert event["linked_bid_id"] == "BID-9"
        # 服务费不影响钱包余额
        assert _balance("u1") == 0


class TestApplyApproval:
    """apply_approval 事务行为测试。"""

    def test_unknown_order_raises(self):
        db = get_db()
        try:
            with pytest.raises(SettlementError):
                apply_approval(db, "ORD-NOPE", 1)
        finally:
            db.close()

    def test_rollback_discards_side_effects(self):
        """调用方回滚时不产生任何副作用。"""
        order = OrderService().create_topup_order("u1", "10.00")
        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            apply_approval(db, order.order_id, 1)
            db.rollback()
        finally:
            db.close()
        assert _balance("u1") == 0
        assert _count("settlement_events", order.order_id) == 0
        assert OrderService().get_order(order.order_id).fulfilled is False
