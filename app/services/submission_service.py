"""
提交服务：接收付款截图、保存截图文件、创建待审核提交记录、查询用户可见状态。
"""

import json
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path

from app.database import get_db
from app.models.schemas import PaymentSubmission
from app.services.order_service import OrderService, STATUS_EXPIRED, format_minor
from app.services.state_machine import APPROVED, MANUAL_REVIEW, PENDING, PROCESSING, REJECTED

logger = logging.getLogger(__name__)

SCREENSHOT_DIR = Path(os.getenv("SCREENSHOT_DIR", "data/screenshots"))

ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg"}
MAX_FILE_SIZE = 5 * 1024 * 1024  # 5MB

_STATUS_MESSAGES = {
    PENDING: "Your payment proof has been received and is waiting for verification.",
    PROCESSING: "Your payment proof is being verified.",
    MANUAL_REVIEW: "Your payment is under review. This usually takes a few hours.",
    APPROVED: "Payment verified.",
    REJECTED: "Payment proof was rejected.",
}


class SubmissionCreateError(Exception):
    """提交创建失败（订单无效、文件不合法等）。"""
    pass


class ScreenshotStoreError(Exception):
    """截图文件读写失败，属于可重试的临时故障。"""
    pass


# ── 截图存储 ──────────────────────────────────────────────


def save_screenshot(content: bytes, ext: str) -> str:
    """保存截图到 SCREENSHOT_DIR，返回存储引用（文件名）。"""
    SCREENSHOT_DIR.mkdir(parents=True, exist_ok=True)
    ref = f"{datetime.now().strftime('%Y%m%d')}_{uuid.uuid4().hex}{ext}"
    try:
        (SCREENSHOT_DIR / ref).write_bytes(content)
    except OSError as e:
        raise ScreenshotStoreError(f"failed to store screenshot: {e}") from e
    return ref


def load_screenshot(ref: str) -> bytes:
    """按存储引用读取截图内容。"""
    path = SCREENSHOT_DIR / Path(ref).name
    try:
        return path.read_bytes()
    except OSError as e:
        raise ScreenshotStoreError(f"failed to read screenshot {ref}: {e}") from e


def row_to_submission(row) -> PaymentSubmission:
    """将 payment_submissions 行转换为 PaymentSubmission（不含指纹与提取结果）。"""
    return PaymentSubmission(
        id=row["id"],
        order_id=row["order_id"],
        user_id=row["user_id"],
        screenshot_ref=row["screenshot_ref"],
        status=row["status"],
        fraud_flags=json.loads(row["fraud_flags"] or "[]"),
        fraud_score=row["fraud_score"],
        validation_errors=json.loads(row["validation_errors"] or "[]"),
        attempts=row["attempts"],
        created_at=datetime.strptime(row["created_at"], "%Y-%m-%d %H:%M:%S"),
    )


class SubmissionService:
    """付款截图提交服务。"""

    def __init__(self, order_service: OrderService | None = None):
        self.orders = order_service or OrderService()

    def create_submission(
        self, order_id: str, user_id: str, content: bytes, filename: str
    ) -> int:
        """
        为订单创建一条待审核提交记录。

        Returns:
            新提交记录 ID（status = pending）。

        Raises:
            SubmissionCreateError: 订单不存在 / 不属于该用户 / 已过期 / 已完成，
                已有审核中的提交，或文件格式、大小不合法。
        """
        order = self.orders.get_order(order_id)
        if not order or order.user_id != user_id:
            raise SubmissionCreateError("order not found")
        if order.fulfilled:
            raise SubmissionCreateError("payment order has already been fulfilled")
        if order.status == STATUS_EXPIRED or not self.orders.is_open(order):
            raise SubmissionCreateError("payment order has expired")

        ext = Path(filename or "").suffix.lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise SubmissionCreateError("only PNG and JPG screenshots are supported")
        if len(content) == 0:
            raise SubmissionCreateError("file is empty")
        if len(content) > MAX_FILE_SIZE:
            raise SubmissionCreateError("file must not exceed 5MB")

        db = get_db()
        try:
            in_flight = db.execute(
                """SELECT id FROM payment_submissions
                   WHERE order_id = ? AND status IN (?, ?, ?)""",
                (order_id, PENDING, PROCESSING, MANUAL_REVIEW),
            ).fetchone()
        finally:
            db.close()
        if in_flight:
            raise SubmissionCreateError("a payment proof for this order is already being verified")

        try:
            ref = save_screenshot(content, ext)
        except ScreenshotStoreError as e:
            logger.error("截图保存失败: order_id=%s, error=%s", order_id, e)
            raise SubmissionCreateError("failed to store screenshot, please retry")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                """INSERT INTO payment_submissions
                   (order_id, user_id, screenshot_ref, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (order_id, user_id, ref, PENDING, now, now),
            )
            db.commit()
            submission_id = cursor.lastrowid
        finally:
            db.close()

        logger.info(
            "付款截图已提交: submission_id=%d, order_id=%s, user_id=%s",
            submission_id, order_id, user_id,
        )
        return submission_id

    def get_status(self, submission_id: int, user_id: str) -> dict | None:
        """
        用户可见的提交状态。

        rejected 时返回原因和命中规则名；manual_review 不暴露规则名和权重。
        """
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM payment_submissions WHERE id = ? AND user_id = ?",
                (submission_id, user_id),
            ).fetchone()
        finally:
            db.close()
        if not row:
            return None

        status = row["status"]
        result = {
            "submission_id": row["id"],
            "order_id": row["order_id"],
            "status": status,
            "message": _STATUS_MESSAGES.get(status, ""),
            "created_at": row["created_at"],
        }

        if status in (MANUAL_REVIEW, APPROVED, REJECTED) and row["exact_hash"]:
            result["extracted_data"] = {
                "amount": format_minor(row["extracted_amount"]) if row["extracted_amount"] is not None else None,
                "reference_number": row["reference_number"],
                "receiver_name": row["receiver_name"],
                "transaction_time": row["transaction_time"],
            }

        if status == REJECTED:
            result["reasons"] = json.loads(row["validation_errors"] or "[]")
            result["flags"] = [f["rule"] for f in json.loads(row["fraud_flags"] or "[]")]
        elif status == APPROVED:
            result["resolved_at"] = row["resolved_at"]

        return result
