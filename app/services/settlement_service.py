"""
结算服务：审核通过后对订单执行一次性的资金副作用。

- topup：增加用户钱包余额并记录 wallet_transactions
- platform_fee：记录 platform_fees（标记对应竞价服务费已支付）
- 两者均写入一条 settlement_events，由 settlement_notifier 推送给下游

幂等键为 order_id：payment_orders.fulfilled 通过条件 UPDATE 从 0 置为 1，
只有赢得该 CAS 的调用方执行副作用；同一提交记录重复调用为空操作。
"""

import logging
import sqlite3
from datetime import datetime

from app.database import get_db
from app.services.order_service import PURPOSE_PLATFORM_FEE, PURPOSE_TOPUP, STATUS_FULFILLED, row_to_order

logger = logging.getLogger(__name__)

EVENT_WALLET_CREDIT = "wallet_credit"
EVENT_PLATFORM_FEE_PAID = "platform_fee_paid"


class SettlementError(Exception):
    """结算失败（订单不存在或数据异常）。"""
    pass


class OrderAlreadyFulfilledError(SettlementError):
    """订单已由其他提交记录完成结算。"""
    pass


def _credit_wallet(db: sqlite3.Connection, order, submission_id: int, now: str) -> int:
    """增加钱包余额并记录流水，返回入账后余额。"""
    cursor = db.execute(
        "UPDATE wallets SET balance = balance + ?, updated_at = ? WHERE user_id = ?",
        (order.amount, now, order.user_id),
    )
    if cursor.rowcount == 0:
        db.execute(
            """INSERT INTO wallets (user_id, balance, account_created_at, updated_at)
               VALUES (?, ?, ?, ?)""",
            (order.user_id, order.amount, now, now),
        )
    balance = db.execute(
        "SELECT balance FROM wallets WHERE user_id = ?", (order.user_id,)
    ).fetchone()["balance"]

    db.execute(
        """INSERT INTO wallet_transactions
           (user_id, order_id, submission_id, type, amount, balance_after, description, created_at)
           VALUES (?, ?, ?, 'topup', ?, ?, ?, ?)""",
        (order.user_id, order.order_id, submission_id, order.amount, balance,
         f"GCash top-up {order.order_id}", now),
    )
    return balance


def apply_approval(db: sqlite3.Connection, order_id: str, submission_id: int) -> bool:
    """
    在调用方事务内执行订单结算副作用。

    不提交事务；调用方需在同一事务中完成提交记录的状态转移后统一 commit。

    Returns:
        True 表示本次调用执行了副作用；False 表示该提交记录此前已完成结算（空操作）。

    Raises:
        OrderAlreadyFulfilledError: 订单已由其他提交记录结算。
        SettlementError: 订单不存在或用途未知。
    """
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    cursor = db.execute(
        """UPDATE payment_orders
           SET fulfilled = 1, fulfilled_by = ?, fulfilled_at = ?, status = ?
           WHERE order_id = ? AND fulfilled = 0""",
        (submission_id, now, STATUS_FULFILLED, order_id),
    )
    row = db.execute(
        "SELECT * FROM payment_orders WHERE order_id = ?", (order_id,)
    ).fetchone()
    if not row:
        raise SettlementError(f"order not found: {order_id}")

    if cursor.rowcount == 0:
        if row["fulfilled_by"] == submission_id:
            logger.info("订单已结算，跳过: order_id=%s, submission_id=%d", order_id, submission_id)
            return False
        raise OrderAlreadyFulfilledError("payment order has already been fulfilled")

    order = row_to_order(row)
    if order.purpose == PURPOSE_TOPUP:
        balance = _credit_wallet(db, order, submission_id, now)
        event_type = EVENT_WALLET_CREDIT
        logger.info(
            "钱包充值入账: user_id=%s, amount=%d, balance=%d",
            order.user_id, order.amount, balance,
        )
    elif order.purpose == PURPOSE_PLATFORM_FEE:
        db.execute(
            """INSERT INTO platform_fees (bid_id, order_id, user_id, amount, submission_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (order.linked_bid_id, order.order_id, order.user_id, order.amount, submission_id, now),
        )
        event_type = EVENT_PLATFORM_FEE_PAID
        logger.info("平台服务费已支付: bid_id=%s, order_id=%s", order.linked_bid_id, order.order_id)
    else:
        raise SettlementError(f"unknown order purpose: {order.purpose}")

    db.execute(
        """INSERT INTO settlement_events
           (order_id, event_type, user_id, amount, linked_bid_id, submission_id, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (order.order_id, event_type, order.user_id, order.amount,
         order.linked_bid_id, submission_id, now),
    )
    return True


def settle(order_id: str, submission_id: int) -> bool:
    """在独立事务中执行 apply_approval（用于补偿 / 手动重放）。"""
    db = get_db()
    try:
        db.execute("BEGIN IMMEDIATE")
        applied = apply_approval(db, order_id, submission_id)
        db.commit()
        return applied
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
