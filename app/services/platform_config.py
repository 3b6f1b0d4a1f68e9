"""
平台配置服务：管理 system_config 表的读写。

提供平台 GCash 收款账户、收款码上传、OCR 凭证加密存储、配置状态查询等功能。
使用 Fernet 对称加密保护敏感凭证，密钥由 JWT_SECRET 通过 PBKDF2 派生。
"""

import base64
import logging
import os
import re
import uuid
from datetime import datetime
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.database import get_db
from app.services.qr_parser import QRParseError, parse_qrcode

logger = logging.getLogger(__name__)

# 允许的图片格式和最大文件大小
ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg"}
MAX_FILE_SIZE = 5 * 1024 * 1024  # 5MB

# 上传目录
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "data/uploads"))

# 菲律宾手机号格式（GCash 账号）
_ACCOUNT_NUMBER_RE = re.compile(r"^09\d{9}$")


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


def _get_fernet() -> Fernet:
    """从 JWT_SECRET 环境变量派生 Fernet 加密密钥。"""
    secret = os.getenv("JWT_SECRET", "default-secret-key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"proofcheck-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def _encrypt(plaintext: str) -> str:
    """加密明文字符串，返回密文。"""
    f = _get_fernet()
    return f.encrypt(plaintext.encode("utf-8")).decode("utf-8")


def _decrypt(ciphertext: str) -> str:
    """解密密文字符串，返回明文。"""
    f = _get_fernet()
    return f.decrypt(ciphertext.encode("utf-8")).decode("utf-8")


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        existing = db.execute(
            "SELECT id FROM system_config WHERE config_key = ?", (key,)
        ).fetchone()
        if existing:
            db.execute(
                "UPDATE system_config SET config_value = ?, updated_at = ? WHERE config_key = ?",
                (value, now, key),
            )
        else:
            db.execute(
                "INSERT INTO system_config (config_key, config_value, updated_at) VALUES (?, ?, ?)",
                (key, value, now),
            )
        db.commit()
    finally:
        db.close()


# ── 收款账户 ──────────────────────────────────────────────


def mask_account_number(number: str) -> str:
    """脱敏展示手机号：09171234567 → 0917****567。"""
    if not number or len(number) < 8:
        return number
    return number[:4] + "*" * (len(number) - 7) + number[-3:]


def save_receiving_account(account_name: str, account_number: str) -> dict:
    """
    保存平台 GCash 收款账户。

    Raises:
        PlatformConfigError: 名称为空或号码格式错误。
    """
    account_name = (account_name or "").strip()
    account_number = re.sub(r"[\s-]", "", account_number or "")
    if not account_name:
        raise PlatformConfigError("account name is required")
    if not _ACCOUNT_NUMBER_RE.match(account_number):
        raise PlatformConfigError("account number must be an 11-digit mobile number starting with 09")

    set_config("gcash_account_name", account_name)
    set_config("gcash_account_number", account_number)
    logger.info("收款账户已更新: %s", mask_account_number(account_number))
    return {"account_name": account_name, "account_number": account_number}


def get_receiving_account() -> dict | None:
    """
    获取当前收款账户：后台配置优先，其次环境变量。

    Returns:
        dict: {"account_name", "account_number"} 或 None（未配置）。
    """
    name = get_config("gcash_account_name") or os.getenv("GCASH_ACCOUNT_NAME")
    number = get_config("gcash_account_number") or os.getenv("GCASH_ACCOUNT_NUMBER")
    if not name or not number:
        return None
    return {"account_name": name, "account_number": number}


# ── 收款码上传 ────────────────────────────────────────────


def upload_qrcode(file_content: bytes, filename: str) -> dict:
    """
    上传收款码图片：校验格式和大小 → 保存至本地 → 解析二维码 → 保存配置。

    重新上传时自动删除旧图片。

    Returns:
        dict: {"qrcode_path": 本地路径, "qrcode_payload": 收款码载荷}

    Raises:
        PlatformConfigError: 文件格式不支持、大小超限、解析失败等。
    """
    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise PlatformConfigError("only PNG and JPG images are supported")

    if len(file_content) > MAX_FILE_SIZE:
        raise PlatformConfigError("file must not exceed 5MB")

    if len(file_content) == 0:
        raise PlatformConfigError("file is empty")

    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

    new_filename = f"qrcode_{uuid.uuid4().hex[:8]}{ext}"
    save_path = UPLOAD_DIR / new_filename
    save_path.write_bytes(file_content)

    try:
        payload = parse_qrcode(str(save_path))
    except QRParseError as e:
        # 解析失败，删除已保存的文件
        save_path.unlink(missing_ok=True)
        raise PlatformConfigError(str(e))

    # 删除旧图片（如果存在）
    old_path = get_config("qrcode_path")
    if old_path:
        old_file = Path(old_path)
        if old_file.exists():
            try:
                old_file.unlink()
            except OSError:
                logger.warning("删除旧收款码图片失败: %s", old_path)

    set_config("qrcode_path", str(save_path))
    set_config("qrcode_payload", payload)

    return {"qrcode_path": str(save_path), "qrcode_payload": payload}


# ── OCR 凭证 ──────────────────────────────────────────────


def save_ocr_credentials(api_url: str, api_key: str) -> dict:
    """
    保存 OCR 服务地址和 API Key（Key 加密存储）。

    Raises:
        PlatformConfigError: 参数为空或地址格式错误。
    """
    if not api_url or not api_key:
        raise PlatformConfigError("api_url and api_key are required")
    if not api_url.startswith(("http://", "https://")):
        raise PlatformConfigError("api_url must be an http(s) URL")

    set_config("ocr_api_url", api_url)
    set_config("ocr_api_key", _encrypt(api_key))
    return {"status": "configured"}


def get_ocr_credentials() -> dict | None:
    """
    获取解密后的 OCR 凭证。

    Returns:
        dict: {"api_url", "api_key"} 或 None（未配置或解密失败）。
    """
    api_url = get_config("ocr_api_url")
    encrypted_key = get_config("ocr_api_key")
    if not api_url or not encrypted_key:
        return None

    try:
        return {"api_url": api_url, "api_key": _decrypt(encrypted_key)}
    except InvalidToken:
        logger.error("解密 OCR 凭证失败")
        return None


# ── 状态查询 ──────────────────────────────────────────────


def get_settings_status() -> dict:
    """汇总收款账户、收款码、OCR 凭证的配置状态（不含明文密钥）。"""
    account = get_receiving_account()
    qrcode_payload = get_config("qrcode_payload")
    return {
        "receiving_account": {
            "configured": account is not None,
            "account_name": account["account_name"] if account else None,
            "account_number": mask_account_number(account["account_number"]) if account else None,
        },
        "qrcode": {
            "configured": bool(qrcode_payload),
            "qrcode_payload": qrcode_payload,
        },
        "ocr": {
            "configured": get_config("ocr_api_key") is not None,
            "api_url": get_config("ocr_api_url"),
        },
    }
