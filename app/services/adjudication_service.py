"""
人工审核服务：管理员对 manual_review 状态的提交记录做出最终裁决。

- approve：与自动通过走同一结算流程（同一事务内完成状态转移与结算）
- reject：必须填写原因，原因追加到 validation_errors
- 状态不是 manual_review、或订单已被其他提交完成结算时抛出 InvalidStateError，不做任何修改
"""

import json
import logging
from datetime import datetime

from app.database import get_db
from app.services import audit_log
from app.services.settlement_service import apply_approval
from app.services.state_machine import (
    APPROVED,
    MANUAL_REVIEW,
    REJECTED,
    InvalidStateError,
    transition,
)

logger = logging.getLogger(__name__)

DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"


class AdjudicationService:
    """人工审核裁决。"""

    def resolve(
        self,
        submission_id: int,
        reviewer_id: str,
        decision: str,
        reason: str | None = None,
        notes: str | None = None,
    ) -> dict:
        """
        裁决一条待人工审核的提交记录。

        Returns:
            dict: {"submission_id", "status", "resolved_by", "resolved_at"}

        Raises:
            ValueError: decision 非 approve / reject，或拒绝时未填写原因。
            InvalidStateError: 提交记录不存在、不处于 manual_review，或订单已被其他提交结算。
        """
        if decision not in (DECISION_APPROVE, DECISION_REJECT):
            raise ValueError(f"unknown decision: {decision}")
        reason = (reason or "").strip()
        if decision == DECISION_REJECT and not reason:
            raise ValueError("a reason is required to reject a submission")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        target = APPROVED if decision == DECISION_APPROVE else REJECTED

        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            row = db.execute(
                "SELECT * FROM payment_submissions WHERE id = ?", (submission_id,)
            ).fetchone()
            if not row:
                raise InvalidStateError("submission not found")
            if row["status"] != MANUAL_REVIEW:
                raise InvalidStateError(
                    f"submission is {row['status']}, only manual_review submissions can be resolved"
                )

            fields = {
                "resolved_by": reviewer_id,
                "resolved_at": now,
                "resolution_reason": reason or None,
                "resolution_notes": notes,
            }

            if target == APPROVED:
                order = db.execute(
                    "SELECT fulfilled, fulfilled_by FROM payment_orders WHERE order_id = ?",
                    (row["order_id"],),
                ).fetchone()
                if not order:
                    raise InvalidStateError("order not found")
                if order["fulfilled"] and order["fulfilled_by"] != submission_id:
                    raise InvalidStateError("payment order has already been fulfilled")
            else:
                errors = json.loads(row["validation_errors"] or "[]")
                errors.append(reason)
                fields["validation_errors"] = json.dumps(errors)

            if not transition(db, submission_id, MANUAL_REVIEW, target, **fields):
                raise InvalidStateError("submission was resolved concurrently")

            if target == APPROVED:
                apply_approval(db, row["order_id"], submission_id)

            audit_log.record(
                db, submission_id, row["user_id"],
                "manual_approved" if target == APPROVED else "manual_rejected",
                row["fraud_score"], row["fraud_flags"],
                actor=reviewer_id,
                notes="; ".join(p for p in (reason, notes) if p) or None,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "人工审核完成: submission_id=%d, status=%s, reviewer=%s",
            submission_id, target, reviewer_id,
        )
        return {
            "submission_id": submission_id,
            "status": target,
            "resolved_by": reviewer_id,
            "resolved_at": now,
        }
