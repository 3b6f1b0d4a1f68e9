"""
结算事件通知：将 settlement_events 推送给钱包 / 合同下游服务，支持重试。

核心功能：
- send_notify: POST 事件到 SETTLEMENT_NOTIFY_URL，对方返回 "success" 则标记成功
- retry_due: 按 [5, 30, 60, 300, 1800] 秒间隔重试，最多 5 次
- 每次推送记录到 settlement_event_logs 表

notify_status: 0 未通知, 1 成功, 2 失败, 3 通知中
"""

import logging
import os
from datetime import datetime

import httpx

from app.database import get_db
from app.services.order_service import format_minor
from app.services.sign import generate_sign

logger = logging.getLogger(__name__)

NOTIFY_PENDING = 0
NOTIFY_SUCCESS = 1
NOTIFY_FAILED = 2
NOTIFY_IN_PROGRESS = 3


class SettlementNotifier:
    """结算事件通知服务。"""

    RETRY_INTERVALS = [5, 30, 60, 300, 1800]  # 秒

    def __init__(self, notify_url: str | None = None, notify_key: str | None = None):
        self.notify_url = notify_url if notify_url is not None else os.getenv("SETTLEMENT_NOTIFY_URL", "")
        self.notify_key = notify_key if notify_key is not None else os.getenv("SETTLEMENT_NOTIFY_KEY", "")

    def _get_event(self, event_id: int) -> dict | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM settlement_events WHERE id = ?", (event_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            db.close()

    def get_event_by_order(self, order_id: str) -> dict | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM settlement_events WHERE order_id = ?", (order_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            db.close()

    def _build_params(self, event: dict) -> dict:
        """构建通知参数并签名。"""
        params = {
            "event_id": event["id"],
            "event_type": event["event_type"],
            "order_id": event["order_id"],
            "user_id": event["user_id"],
            "amount": format_minor(event["amount"]),
            "amount_minor": event["amount"],
            "linked_bid_id": event["linked_bid_id"] or "",
            "submission_id": event["submission_id"] or "",
            "created_at": event["created_at"],
            "sign_type": "HMAC-SHA256",
        }
        params["sign"] = generate_sign(params, self.notify_key)
        return params

    def _log_attempt(
        self,
        event_id: int,
        attempt: int,
        http_status: int | None,
        response_body: str | None,
    ) -> None:
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                """INSERT INTO settlement_event_logs
                   (event_id, attempt, url, http_status, response_body, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (event_id, attempt, self.notify_url, http_status, response_body, now),
            )
            db.commit()
        finally:
            db.close()

    def _update_status(self, event_id: int, status: int, attempts: int) -> None:
        notified_at = datetime.now().strftime("%Y-%m-%d %H:%M:%S") if status == NOTIFY_SUCCESS else None
        db = get_db()
        try:
            db.execute(
                """UPDATE settlement_events
                   SET notify_status = ?, notify_attempts = ?,
                       notified_at = COALESCE(?, notified_at)
                   WHERE id = ?""",
                (status, attempts, notified_at, event_id),
            )
            db.commit()
        finally:
            db.close()

    def send_notify(self, event_id: int) -> bool:
        """
        推送一条结算事件（POST 表单）。

        Returns:
            True 表示下游返回 "success"。
        """
        event = self._get_event(event_id)
        if not event:
            logger.warning("结算通知失败：事件不存在 (event_id=%d)", event_id)
            return False

        if not self.notify_url:
            logger.info("未配置 SETTLEMENT_NOTIFY_URL，跳过结算通知 (event_id=%d)", event_id)
            return False

        attempt = event["notify_attempts"] + 1
        self._update_status(event_id, NOTIFY_IN_PROGRESS, attempt)

        http_status = None
        response_body = None
        success = False
        try:
            with httpx.Client(timeout=10.0) as client:
                resp = client.post(self.notify_url, data=self._build_params(event))
                http_status = resp.status_code
                response_body = resp.text.strip()
                success = response_body == "success"
        except Exception as e:
            response_body = str(e)
            logger.warning(
                "结算通知请求异常 (event_id=%d, url=%s): %s",
                event_id, self.notify_url, e,
            )

        self._log_attempt(event_id, attempt, http_status, response_body)

        if success:
            self._update_status(event_id, NOTIFY_SUCCESS, attempt)
            logger.info("结算通知成功 (event_id=%d, order_id=%s)", event_id, event["order_id"])
        elif attempt >= len(self.RETRY_INTERVALS) + 1:
            # 首次 + 5 次重试均失败
            self._update_status(event_id, NOTIFY_FAILED, attempt)
            logger.warning(
                "结算通知全部失败 (event_id=%d, attempts=%d)", event_id, attempt
            )
        else:
            self._update_status(event_id, NOTIFY_IN_PROGRESS, attempt)

        return success

    def retry_due(self, now: datetime | None = None) -> int:
        """
        推送所有到期的结算事件：从未推送过的立即推送，失败过的按重试间隔推送。

        Returns:
            本次推送的事件数。
        """
        if not self.notify_url:
            return 0

        now = now or datetime.now()
        db = get_db()
        try:
            rows = db.execute(
                """SELECT id, notify_attempts, created_at
                   FROM settlement_events
                   WHERE notify_status IN (?, ?)
                     AND notify_attempts <= ?""",
                (NOTIFY_PENDING, NOTIFY_IN_PROGRESS, len(self.RETRY_INTERVALS)),
            ).fetchall()
        finally:
            db.close()

        sent = 0
        for row in rows:
            attempts = row["notify_attempts"]
            if attempts > 0:
                try:
                    base_time = datetime.strptime(row["created_at"], "%Y-%m-%d %H:%M:%S")
                except (ValueError, TypeError):
                    continue
                total_wait = sum(self.RETRY_INTERVALS[:attempts])
                if (now - base_time).total_seconds() < total_wait:
                    continue
            try:
                self.send_notify(row["id"])
                sent += 1
            except Exception as e:
                logger.error("结算通知重试异常 (event_id=%d): %s", row["id"], e)
        return sent
