"""
提交记录状态机：显式的状态转移图 + 基于条件 UPDATE 的比较并交换（CAS）。

pending → processing → approved / rejected / manual_review
processing → pending（临时故障释放，等待重试）
manual_review → approved / rejected（人工审核）
"""

import sqlite3
from datetime import datetime

PENDING = "pending"
PROCESSING = "processing"
MANUAL_REVIEW = "manual_review"
APPROVED = "approved"
REJECTED = "rejected"

STATUSES = (PENDING, PROCESSING, MANUAL_REVIEW, APPROVED, REJECTED)
TERMINAL_STATUSES = (APPROVED, REJECTED)

TRANSITIONS = {
    PENDING: frozenset({PROCESSING}),
    PROCESSING: frozenset({APPROVED, REJECTED, MANUAL_REVIEW, PENDING}),
    MANUAL_REVIEW: frozenset({APPROVED, REJECTED}),
    APPROVED: frozenset(),
    REJECTED: frozenset(),
}

# transition() 允许一并写入的列
_WRITABLE_COLUMNS = {
    "exact_hash", "perceptual_hash", "image_width", "image_height", "has_exif",
    "extracted_amount", "reference_number", "sender_name", "receiver_name",
    "transaction_time", "ocr_confidence", "ocr_text",
    "fraud_flags", "fraud_score", "validation_errors",
    "resolved_by", "resolved_at", "resolution_reason", "resolution_notes",
    "attempts", "next_attempt_at", "claimed_at", "last_error",
}


class InvalidTransitionError(Exception):
    """状态转移不在转移图中。"""
    pass


class InvalidStateError(Exception):
    """提交记录当前状态不允许该操作。"""
    pass


def can_transition(current: str, target: str) -> bool:
    """判断 current → target 是否为合法转移。"""
    return target in TRANSITIONS.get(current, frozenset())


def transition(
    db: sqlite3.Connection,
    submission_id: int,
    current: str,
    target: str,
    **fields,
) -> bool:
    """
    以 CAS 方式执行状态转移：仅当记录仍处于 current 状态时更新为 target。

    不提交事务，由调用方决定 commit 时机（以便与副作用放入同一事务）。

    Returns:
        True 表示本次调用赢得转移；False 表示状态已被其他调用方改变。

    Raises:
        InvalidTransitionError: current → target 不在转移图中。
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(f"illegal transition {current} -> {target}")

    unknown = set(fields) - _WRITABLE_COLUMNS
    if unknown:
        raise ValueError(f"unknown submission columns: {sorted(unknown)}")

    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    assignments = ["status = ?", "updated_at = ?"]
    params = [target, now]
    for column, value in fields.items():
        assignments.append(f"{column} = ?")
        params.append(value)
    params.extend([submission_id, current])

    cursor = db.execute(
        f"""UPDATE payment_submissions
            SET {", ".join(assignments)}
            WHERE id = ? AND status = ?""",
        params,
    )
    return cursor.rowcount == 1
