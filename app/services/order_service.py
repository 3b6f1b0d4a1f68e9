"""
订单服务模块：创建充值 / 平台服务费订单、订单查询、订单过期处理。
"""

import logging
import os
import random
import sqlite3
import string
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from app.database import get_db
from app.models.schemas import PaymentOrder, WalletAccount
from app.services.platform_config import get_config, get_receiving_account, mask_account_number

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"

ORDER_EXPIRY_MINUTES = int(os.getenv("ORDER_EXPIRY_MINUTES", "30"))
MAX_TOPUP_AMOUNT = int(os.getenv("MAX_TOPUP_AMOUNT", "5000000"))  # 分，即 PHP 50,000
MAX_DAILY_ORDERS = int(os.getenv("MAX_DAILY_ORDERS", "10"))

PURPOSE_TOPUP = "topup"
PURPOSE_PLATFORM_FEE = "platform_fee"

STATUS_AWAITING_UPLOAD = "awaiting_upload"
STATUS_FULFILLED = "fulfilled"
STATUS_EXPIRED = "expired"


class OrderCreateError(Exception):
    """订单创建失败通用异常。"""
    pass


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT)


def row_to_order(row: sqlite3.Row) -> PaymentOrder:
    """将 payment_orders 行转换为 PaymentOrder。"""
    return PaymentOrder(
        order_id=row["order_id"],
        user_id=row["user_id"],
        amount=row["amount"],
        purpose=row["purpose"],
        linked_bid_id=row["linked_bid_id"],
        receiving_account_name=row["receiving_account_name"],
        receiving_account_number=row["receiving_account_number"],
        status=row["status"],
        fulfilled=bool(row["fulfilled"]),
        fulfilled_by=row["fulfilled_by"],
        fulfilled_at=_parse_ts(row["fulfilled_at"]),
        created_at=_parse_ts(row["created_at"]),
        expires_at=_parse_ts(row["expires_at"]),
    )


def parse_amount_to_minor(value) -> int:
    """
    将 "1,500.50" / 1500.5 形式的比索金额转为整数分。

    Raises:
        OrderCreateError: 金额格式无效、非正数或超过两位小数。
    """
    try:
        amount = Decimal(str(value).replace(",", "").strip())
    except (InvalidOperation, ValueError):
        raise OrderCreateError("invalid amount")
    if not amount.is_finite() or amount <= 0:
        raise OrderCreateError("amount must be positive")
    if amount != amount.quantize(Decimal("0.01")):
        raise OrderCreateError("amount must have at most 2 decimal places")
    return int(amount * 100)


def format_minor(amount: int) -> str:
    """整数分格式化为两位小数的比索金额字符串。"""
    return f"{Decimal(amount) / 100:.2f}"


class OrderService:
    """订单服务：创建订单、查询、过期处理。"""

    def generate_order_id(self) -> str:
        """
        生成唯一订单号：ORD-<毫秒时间戳 base36>-<4 位随机字符>。
        """
        alphabet = string.digits + string.ascii_uppercase
        db = get_db()
        try:
            for _ in range(10):
                ms = int(time.time() * 1000)
                ts = ""
                while ms:
                    ms, rem = divmod(ms, 36)
                    ts = alphabet[rem] + ts
                rand = "".join(random.choices(alphabet, k=4))
                order_id = f"ORD-{ts}-{rand}"
                row = db.execute(
                    "SELECT 1 FROM payment_orders WHERE order_id = ?", (order_id,)
                ).fetchone()
                if not row:
                    return order_id
            raise OrderCreateError("unable to generate a unique order id, please retry")
        finally:
            db.close()

    def ensure_wallet(self, user_id: str) -> WalletAccount:
        """确保用户钱包存在（首次下单时开户），返回钱包信息。"""
        now = datetime.now().strftime(_TS_FORMAT)
        db = get_db()
        try:
            db.execute(
                """INSERT OR IGNORE INTO wallets (user_id, balance, account_created_at, updated_at)
                   VALUES (?, 0, ?, ?)""",
                (user_id, now, now),
            )
            db.commit()
            row = db.execute(
                "SELECT user_id, balance, account_created_at FROM wallets WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            db.close()
        return WalletAccount(
            user_id=row["user_id"],
            balance=row["balance"],
            account_created_at=_parse_ts(row["account_created_at"]),
        )

    def _check_daily_limit(self, db: sqlite3.Connection, user_id: str) -> None:
        today = datetime.now().strftime("%Y-%m-%d")
        row = db.execute(
            """SELECT COUNT(*) AS cnt FROM payment_orders
               WHERE user_id = ? AND date(created_at) = ?""",
            (user_id, today),
        ).fetchone()
        if row["cnt"] >= MAX_DAILY_ORDERS:
            raise OrderCreateError("daily payment order limit reached, please try again tomorrow")

    def _insert_order(
        self, user_id: str, amount: int, purpose: str, linked_bid_id: str | None
    ) -> PaymentOrder:
        account = get_receiving_account()
        if not account:
            raise OrderCreateError("receiving GCash account is not configured")

        self.ensure_wallet(user_id)
        order_id = self.generate_order_id()
        created = datetime.now().replace(microsecond=0)
        expires = created + timedelta(minutes=ORDER_EXPIRY_MINUTES)

        db = get_db()
        try:
            self._check_daily_limit(db, user_id)
            db.execute(
                """INSERT INTO payment_orders
                   (order_id, user_id, amount, purpose, linked_bid_id,
                    receiving_account_name, receiving_account_number,
                    status, fulfilled, created_at, expires_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                (
                    order_id, user_id, amount, purpose, linked_bid_id,
                    account["account_name"], account["account_number"],
                    STATUS_AWAITING_UPLOAD,
                    created.strftime(_TS_FORMAT), expires.strftime(_TS_FORMAT),
                ),
            )
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            raise OrderCreateError(f"failed to create order: {e}")
        finally:
            db.close()

        logger.info(
            "订单创建成功: order_id=%s, user_id=%s, purpose=%s, amount=%d",
            order_id, user_id, purpose, amount,
        )
        return PaymentOrder(
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            purpose=purpose,
            linked_bid_id=linked_bid_id,
            receiving_account_name=account["account_name"],
            receiving_account_number=account["account_number"],
            created_at=created,
            expires_at=expires,
        )

    def create_topup_order(self, user_id: str, amount) -> PaymentOrder:
        """
        创建钱包充值订单。

        Raises:
            OrderCreateError: 金额无效或超限、收款账户未配置、超过每日下单上限。
        """
        minor = parse_amount_to_minor(amount)
        if minor > MAX_TOPUP_AMOUNT:
            raise OrderCreateError(f"top-up amount must not exceed {format_minor(MAX_TOPUP_AMOUNT)}")
        return self._insert_order(user_id, minor, PURPOSE_TOPUP, None)

    def create_platform_fee_order(self, user_id: str, bid_id: str, amount) -> PaymentOrder:
        """
        创建平台服务费订单（关联竞价 bid_id）。

        同一竞价已有未过期、未完成的订单时直接返回该订单。

        Raises:
            OrderCreateError: bid_id 为空、服务费已支付、金额无效等。
        """
        if not bid_id:
            raise OrderCreateError("bid_id is required")
        minor = parse_amount_to_minor(amount)

        now = datetime.now().strftime(_TS_FORMAT)
        db = get_db()
        try:
            paid = db.execute(
                "SELECT 1 FROM platform_fees WHERE bid_id = ?", (bid_id,)
            ).fetchone()
            if paid:
                raise OrderCreateError("platform fee for this bid has already been paid")
            existing = db.execute(
                """SELECT * FROM payment_orders
                   WHERE linked_bid_id = ? AND user_id = ? AND purpose = ?
                     AND fulfilled = 0 AND status = ? AND expires_at > ?
                   ORDER BY created_at DESC LIMIT 1""",
                (bid_id, user_id, PURPOSE_PLATFORM_FEE, STATUS_AWAITING_UPLOAD, now),
            ).fetchone()
        finally:
            db.close()

        if existing:
            logger.info("复用未完成的服务费订单: order_id=%s", existing["order_id"])
            return row_to_order(existing)

        return self._insert_order(user_id, minor, PURPOSE_PLATFORM_FEE, bid_id)

    def get_order(self, order_id: str) -> PaymentOrder | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM payment_orders WHERE order_id = ?", (order_id,)
            ).fetchone()
        finally:
            db.close()
        return row_to_order(row) if row else None

    def is_open(self, order: PaymentOrder, now: datetime | None = None) -> bool:
        """订单是否仍可上传付款截图（未完成且未过期）。"""
        now = now or datetime.now()
        return (
            not order.fulfilled
            and order.status == STATUS_AWAITING_UPLOAD
            and order.expires_at > now
        )

    def display_data(self, order: PaymentOrder) -> dict:
        """构建前端付款页所需数据（收款号码脱敏）。"""
        if order.fulfilled:
            status = STATUS_FULFILLED
        elif order.status == STATUS_EXPIRED or order.expires_at <= datetime.now():
            status = STATUS_EXPIRED
        else:
            status = STATUS_AWAITING_UPLOAD
        return {
            "order_id": order.order_id,
            "purpose": order.purpose,
            "linked_bid_id": order.linked_bid_id,
            "amount": format_minor(order.amount),
            "amount_minor": order.amount,
            "status": status,
            "gcash_account_name": order.receiving_account_name,
            "gcash_account_number": mask_account_number(order.receiving_account_number),
            "qrcode_payload": get_config("qrcode_payload"),
            "created_at": order.created_at.strftime(_TS_FORMAT),
            "expires_at": order.expires_at.strftime(_TS_FORMAT),
        }

    def expire_orders(self) -> int:
        """
        将超过有效期且未完成的订单标记为过期（status=expired）。

        过期只阻止新的截图上传，不影响已提交截图的审核与结算。
        """
        now = datetime.now().strftime(_TS_FORMAT)
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE payment_orders
                   SET status = ?, expired_at = ?
                   WHERE status = ? AND fulfilled = 0 AND expires_at < ?""",
                (STATUS_EXPIRED, now, STATUS_AWAITING_UPLOAD, now),
            )
            db.commit()
            return cursor.rowcount
        finally:
            db.close()
