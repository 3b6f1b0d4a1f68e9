"""
后台审核调度器：截图提交后自动启动审核任务，并定期扫描到期的重试记录。

审核流程本身是同步的（sqlite3 + 线程池），在事件循环中通过
asyncio.to_thread 执行，避免阻塞请求处理。
"""

import asyncio
import logging

from app.services.orchestrator import VerificationOrchestrator
from app.services.settlement_notifier import SettlementNotifier
from app.services.state_machine import APPROVED, MANUAL_REVIEW, REJECTED

logger = logging.getLogger(__name__)

# 活跃的审核任务 {submission_id: asyncio.Task}
_active_tasks: dict[int, asyncio.Task] = {}

_orchestrator: VerificationOrchestrator | None = None


def get_orchestrator() -> VerificationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = VerificationOrchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: VerificationOrchestrator | None) -> None:
    """替换全局编排器（用于注入自定义 OCR 引擎）。"""
    global _orchestrator
    _orchestrator = orchestrator


async def _verify_submission(submission_id: int) -> None:
    """认领并审核一条提交记录；通过时立即推送结算事件。"""
    logger.info("启动审核任务: submission_id=%d", submission_id)
    try:
        status = await asyncio.to_thread(get_orchestrator().verify, submission_id)
        if status in (APPROVED, REJECTED, MANUAL_REVIEW):
            logger.info("审核任务结束: submission_id=%d, status=%s", submission_id, status)
        if status == APPROVED:
            await asyncio.to_thread(SettlementNotifier().retry_due)
    except asyncio.CancelledError:
        logger.info("审核任务被取消: submission_id=%d", submission_id)
    except Exception as e:
        logger.error("审核任务异常: submission_id=%d, error=%s", submission_id, e)
    finally:
        _active_tasks.pop(submission_id, None)


def start_verification(submission_id: int) -> None:
    """
    为指定提交记录启动后台审核任务。

    如果该记录已有任务在运行，则跳过；无事件循环时交由定期扫描处理。
    """
    if submission_id in _active_tasks:
        logger.debug("审核任务已存在: submission_id=%d", submission_id)
        return

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("无法启动审核任务(无事件循环): submission_id=%d", submission_id)
        return
    _active_tasks[submission_id] = loop.create_task(_verify_submission(submission_id))


def cancel_verification(submission_id: int) -> None:
    """取消指定提交记录的审核任务。"""
    task = _active_tasks.pop(submission_id, None)
    if task and not task.done():
        task.cancel()


def get_active_task_count() -> int:
    """返回当前活跃的审核任务数量。"""
    return len(_active_tasks)


def sweep_once() -> int:
    """回收超时认领并处理所有到期的 pending 记录，返回处理条数。"""
    orchestrator = get_orchestrator()
    orchestrator.recover_stale_claims()
    return orchestrator.run_pending()
