"""
ProofCheck 应用入口：FastAPI 应用实例、路由注册、生命周期和后台任务。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)

VERIFY_SWEEP_INTERVAL = int(os.getenv("VERIFY_SWEEP_INTERVAL_SECONDS", "10"))


# ── 后台任务 ──────────────────────────────────────────────

async def _order_expiry_task() -> None:
    """定期检查并过期超时订单（每 60 秒）。"""
    from app.services.order_service import OrderService

    svc = OrderService()
    while True:
        try:
            expired = svc.expire_orders()
            if expired:
                logger.info("已过期订单: %d 条", expired)
        except Exception as e:
            logger.error("订单过期检查异常: %s", e)
        await asyncio.sleep(60)


async def _verification_sweep_task() -> None:
    """
    定期扫描待审核记录：回收超时认领，处理到期的 pending 提交
    （包括临时故障后的退避重试和未能即时启动的审核）。
    """
    from app.services.verification_worker import sweep_once

    while True:
        try:
            handled = await asyncio.to_thread(sweep_once)
            if handled:
                logger.info("审核扫描完成: 处理 %d 条", handled)
        except Exception as e:
            logger.error("审核扫描任务异常: %s", e)
        await asyncio.sleep(VERIFY_SWEEP_INTERVAL)


async def _settlement_notify_task() -> None:
    """定期推送到期的结算事件（每 30 秒扫描一次）。

    重试间隔：[5, 30, 60, 300, 1800] 秒。
    """
    from app.services.settlement_notifier import SettlementNotifier

    svc = SettlementNotifier()
    while True:
        try:
            sent = await asyncio.to_thread(svc.retry_due)
            if sent:
                logger.info("结算通知推送: %d 条", sent)
        except Exception as e:
            logger.error("结算通知任务异常: %s", e)
        await asyncio.sleep(30)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from app.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_order_expiry_task()))
        tasks.append(asyncio.create_task(_verification_sweep_task()))
        tasks.append(asyncio.create_task(_settlement_notify_task()))
        logger.info("后台任务已启动：订单过期检查、审核扫描、结算通知推送")

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass

    from app.services.verification_worker import get_orchestrator
    get_orchestrator().shutdown()


app = FastAPI(title="ProofCheck", description="GCash 付款截图审核与风控服务", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from app.routes.payment import router as payment_router
from app.routes.admin import router as admin_router

app.include_router(payment_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
