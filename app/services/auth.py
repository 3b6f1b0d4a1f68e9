"""
认证模块：管理员 JWT 令牌生成/验证、密码 bcrypt 哈希、登录认证；
用户身份由上游网关通过 X-User-Id 请求头传入。
"""

import os
import re
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import Request, HTTPException
from jose import jwt, JWTError

from app.database import get_db

JWT_SECRET = os.environ.get("JWT_SECRET", "change-me-to-a-random-secret-key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 24

MAX_LOGIN_FAILURES = 5
LOCKOUT_MINUTES = 15

USER_ID_HEADER = "X-User-Id"
_USER_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def hash_password(password: str) -> str:
    """使用 bcrypt 对密码进行哈希。"""
    return bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """验证密码是否与 bcrypt 哈希匹配。"""
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(username: str) -> str:
    """生成 JWT 令牌，有效期 24 小时。"""
    expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    payload = {"sub": username, "exp": expire}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    解码并验证 JWT 令牌。

    Raises:
        ValueError: 令牌无效或已过期。
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        if "sub" not in payload:
            raise ValueError("token has no subject")
        return payload
    except JWTError as e:
        raise ValueError(f"invalid token: {e}")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.strptime(value, "%Y-%m-%d %H:%M:%S") if value else None


def _record_login_failure(db, admin_id: int, fail_count: int) -> None:
    """累计失败次数，达到 MAX_LOGIN_FAILURES 时锁定账号 LOCKOUT_MINUTES 分钟。"""
    locked_until = None
    if fail_count >= MAX_LOGIN_FAILURES:
        locked_until = (datetime.now() + timedelta(minutes=LOCKOUT_MINUTES)).strftime(
            "%Y-%m-%d %H:%M:%S"
        )
    db.execute(
        "UPDATE admin SET login_fail_count = ?, locked_until = ? WHERE id = ?",
        (fail_count, locked_until, admin_id),
    )
    db.commit()


def authenticate(username: str, password: str) -> dict:
    """
    验证审核员（管理员）用户名和密码，成功返回 {"code": 1, "token": "..."}。

    连续 5 次失败锁定 15 分钟；锁定过期后失败计数从 0 重新开始。

    Raises:
        ValueError: 认证失败，msg 为错误原因。
    """
    db = get_db()
    try:
        admin = db.execute(
            "SELECT * FROM admin WHERE username = ?", (username,)
        ).fetchone()
        if not admin:
            raise ValueError("invalid username or password")

        fail_count = admin["login_fail_count"]
        locked_until = _parse_ts(admin["locked_until"])
        if locked_until is not None:
            if datetime.now() < locked_until:
                raise ValueError("account is locked, please try again later")
            fail_count = 0

        if not verify_password(password, admin["password_hash"]):
            _record_login_failure(db, admin["id"], fail_count + 1)
            raise ValueError("invalid username or password")

        db.execute(
            "UPDATE admin SET login_fail_count = 0, locked_until = NULL WHERE id = ?",
            (admin["id"],),
        )
        db.commit()
        return {"code": 1, "token": create_token(username)}
    finally:
        db.close()


def get_current_admin(request: Request) -> dict:
    """
    FastAPI 依赖项：校验 Authorization: Bearer <JWT>，返回令牌载荷（sub 即审核员标识）。

    Raises:
        HTTPException(401): 令牌缺失或无效。
    """
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme != "Bearer" or not token:
        raise HTTPException(status_code=401, detail="missing authentication token")
    try:
        return verify_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid or expired token")


def get_current_user_id(request: Request) -> str:
    """
    FastAPI 依赖项：读取上游网关注入的 X-User-Id 请求头。

    Raises:
        HTTPException(401): 请求头缺失或格式非法。
    """
    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    if not user_id or not _USER_ID_RE.match(user_id):
        raise HTTPException(status_code=401, detail="missing or invalid user identity")
    return user_id
