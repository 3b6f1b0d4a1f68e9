"""
历史记录查询：为风控规则提供跨提交记录的只读快照。

查询不加锁，读到的可能是稍旧的数据；并发写入由状态机 CAS 和结算幂等保证。
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.database import get_db
from app.services.image_analyzer import hamming_distance

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"

# 相似截图比对的候选记录上限
SIMILAR_CANDIDATE_LIMIT = 5000


@dataclass
class HistorySnapshot:
    duplicate_image_ids: list = field(default_factory=list)
    similar_image: tuple | None = None  # (submission_id, distance)
    duplicate_reference_ids: list = field(default_factory=list)
    recent_submissions: int = 0
    account_created_at: datetime | None = None


def find_exact_hash_matches(exact_hash: str, exclude_id: int) -> list[int]:
    """查找精确哈希相同的其他提交记录。"""
    db = get_db()
    try:
        rows = db.execute(
            """SELECT id FROM payment_submissions
               WHERE exact_hash = ? AND id != ?
               ORDER BY id""",
            (exact_hash, exclude_id),
        ).fetchall()
        return [r["id"] for r in rows]
    finally:
        db.close()


def find_nearest_similar_image(
    perceptual_hash: str,
    exact_hash: str,
    exclude_id: int,
    since: datetime | None = None,
    limit: int = SIMILAR_CANDIDATE_LIMIT,
) -> tuple | None:
    """
    查找感知哈希最接近、但精确哈希不同的其他提交记录。

    只比较 since 之后创建的、最新的 limit 条记录。

    Returns:
        (submission_id, distance) 或 None（无可比较记录）。
    """
    sql = """SELECT id, perceptual_hash FROM payment_submissions
             WHERE perceptual_hash IS NOT NULL
               AND id != ?
               AND (exact_hash IS NULL OR exact_hash != ?)"""
    params: list = [exclude_id, exact_hash]
    if since is not None:
        sql += " AND created_at >= ?"
        params.append(since.strftime(_TS_FORMAT))
    sql += " ORDER BY id DESC LIMIT ?"
    params.append(limit)

    db = get_db()
    try:
        rows = db.execute(sql, params).fetchall()
    finally:
        db.close()

    nearest = None
    for row in rows:
        distance = hamming_distance(perceptual_hash, row["perceptual_hash"])
        if nearest is None or distance < nearest[1]:
            nearest = (row["id"], distance)
    return nearest


def find_reference_matches(reference_number: str, exclude_id: int) -> list[int]:
    """查找已通过或待人工审核的、使用相同参考号的其他提交记录（不限用户）。"""
    db = get_db()
    try:
        rows = db.execute(
            """SELECT id FROM payment_submissions
               WHERE reference_number = ?
                 AND id != ?
                 AND status IN ('approved', 'manual_review')
               ORDER BY id""",
            (reference_number, exclude_id),
        ).fetchall()
        return [r["id"] for r in rows]
    finally:
        db.close()


def count_recent_submissions(user_id: str, until: datetime, window_minutes: int) -> int:
    """统计用户在 [until - window, until] 时间窗口内的提交次数（含当前提交）。"""
    since = until - timedelta(minutes=window_minutes)
    db = get_db()
    try:
        row = db.execute(
            """SELECT COUNT(*) AS cnt FROM payment_submissions
               WHERE user_id = ? AND created_at >= ? AND created_at <= ?""",
            (user_id, since.strftime(_TS_FORMAT), until.strftime(_TS_FORMAT)),
        ).fetchone()
        return row["cnt"]
    finally:
        db.close()


def get_account_created_at(user_id: str) -> datetime | None:
    """获取用户钱包账户的开户时间，未开户返回 None。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT account_created_at FROM wallets WHERE user_id = ?",
            (user_id,),
        ).fetchone()
    finally:
        db.close()
    if not row or not row["account_created_at"]:
        return None
    try:
        return datetime.strptime(row["account_created_at"], _TS_FORMAT)
    except ValueError:
        return None


def build_snapshot(
    submission_id: int,
    user_id: str,
    created_at: datetime,
    fingerprint,
    proof,
    velocity_window_minutes: int,
    similar_lookback_days: int | None = None,
) -> HistorySnapshot:
    """一次性收集风控规则所需的全部历史数据。"""
    snapshot = HistorySnapshot(
        recent_submissions=count_recent_submissions(
            user_id, created_at, velocity_window_minutes
        ),
        account_created_at=get_account_created_at(user_id),
    )
    if fingerprint is not None:
        snapshot.duplicate_image_ids = find_exact_hash_matches(
            fingerprint.exact_hash, submission_id
        )
        since = None
        if similar_lookback_days is not None:
            since = created_at - timedelta(days=similar_lookback_days)
        snapshot.similar_image = find_nearest_similar_image(
            fingerprint.perceptual_hash, fingerprint.exact_hash, submission_id, since
        )
    if proof is not None and proof.reference_number:
        snapshot.duplicate_reference_ids = find_reference_matches(
            proof.reference_number, submission_id
        )
    return snapshot
