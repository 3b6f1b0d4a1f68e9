"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。金额统一使用整数最小货币单位（分）。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class PaymentOrder:
    order_id: str
    user_id: str
    amount: int
    purpose: str  # "topup" 或 "platform_fee"
    receiving_account_name: str
    receiving_account_number: str
    created_at: datetime
    expires_at: datetime
    linked_bid_id: Optional[str] = None
    status: str = "awaiting_upload"
    fulfilled: bool = False
    fulfilled_by: Optional[int] = None
    fulfilled_at: Optional[datetime] = None


@dataclass
class ImageFingerprint:
    exact_hash: str
    perceptual_hash: str
    width: int
    height: int
    has_exif: bool


@dataclass
class ExtractedProof:
    amount: Optional[int] = None
    reference_number: Optional[str] = None
    sender_name: Optional[str] = None
    receiver_name: Optional[str] = None
    transaction_time: Optional[str] = None
    confidence: float = 0.0
    has_success_indicator: bool = False
    is_gcash_receipt: bool = False
    raw_text: str = ""


@dataclass
class PaymentSubmission:
    id: int
    order_id: str
    user_id: str
    screenshot_ref: str
    status: str = "pending"
    fingerprint: Optional[ImageFingerprint] = None
    proof: Optional[ExtractedProof] = None
    fraud_flags: list = field(default_factory=list)
    fraud_score: int = 0
    validation_errors: list = field(default_factory=list)
    attempts: int = 0
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class FraudFlag:
    rule: str
    weight: int
    description: str
    hard_override: bool = False
    detail: dict = field(default_factory=dict)  # 命中依据，仅管理后台可见


@dataclass
class Decision:
    status: str
    score: int
    flags: list
    validation_errors: list = field(default_factory=list)


@dataclass
class WalletAccount:
    user_id: str
    balance: int
    account_created_at: datetime
