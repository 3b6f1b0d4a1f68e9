"""审核日志：记录每次自动 / 人工处理结果（仅追加，不修改）。"""

import json
import sqlite3
from datetime import datetime

from app.database import get_db


def flags_to_json(flags: list) -> str:
    """风险标记序列化为 [{"rule", "weight", "hard_override", "detail"}, ...]。"""
    return json.dumps([
        {"rule": f.rule, "weight": f.weight, "hard_override": f.hard_override, "detail": f.detail}
        for f in flags
    ])


def record(
    db: sqlite3.Connection,
    submission_id: int,
    user_id: str | None,
    action: str,
    fraud_score: int | None = None,
    fraud_flags: str | None = None,
    actor: str = "system",
    notes: str | None = None,
) -> None:
    """在调用方事务内追加一条审核日志。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db.execute(
        """INSERT INTO verification_logs
           (submission_id, user_id, action, fraud_score, fraud_flags, actor, notes, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (submission_id, user_id, action, fraud_score, fraud_flags, actor, notes, now),
    )


def list_logs(submission_id: int) -> list[dict]:
    """按时间顺序返回某提交记录的全部审核日志。"""
    db = get_db()
    try:
        rows = db.execute(
            """SELECT id, action, fraud_score, fraud_flags, actor, notes, created_at
               FROM verification_logs
               WHERE submission_id = ?
               ORDER BY id""",
            (submission_id,),
        ).fetchall()
    finally:
        db.close()

    logs = []
    for r in rows:
        d = dict(r)
        d["fraud_flags"] = json.loads(d["fraud_flags"]) if d["fraud_flags"] else []
        logs.append(d)
    return logs
