"""
风控配置：评分阈值、规则权重及各规则参数。

默认值来自环境变量，管理员可通过后台修改，修改结果以 JSON 存入
system_config 表（config_key = "risk_config"），读取时覆盖默认值。
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields

from app.services.platform_config import get_config, set_config

logger = logging.getLogger(__name__)

CONFIG_KEY = "risk_config"

DEFAULT_WEIGHTS = {
    "AMOUNT_MISMATCH": 40,
    "DUPLICATE_REFERENCE": 50,
    "DUPLICATE_IMAGE": 50,
    "SIMILAR_IMAGE": 30,
    "RECEIVER_MISMATCH": 25,
    "TIMESTAMP_EXPIRED": 20,
    "LOW_OCR_CONFIDENCE": 15,
    "SUSPICIOUS_DIMENSIONS": 10,
    "MISSING_EXIF": 5,
    "NEW_ACCOUNT_HIGH_VALUE": 25,
    "VELOCITY_EXCEEDED": 40,
}


class RiskConfigError(Exception):
    """风控配置校验失败。"""
    pass


@dataclass
class RiskConfig:
    approve_below: int = int(os.getenv("RISK_APPROVE_BELOW", "10"))
    reject_at: int = int(os.getenv("RISK_REJECT_AT", "70"))
    min_ocr_confidence: int = 60
    amount_tolerance: int = 1  # 分
    timestamp_grace_minutes: int = 5
    similar_hash_distance: int = 10
    similar_lookback_days: int = 30
    min_width: int = 300  # 像素
    max_width: int = 4000
    min_height: int = 400
    max_height: int = 6000
    new_account_days: int = 7
    high_value_amount: int = 500000  # 分，即 PHP 5,000
    velocity_window_minutes: int = 60
    velocity_max_submissions: int = 5
    max_attempts: int = int(os.getenv("VERIFY_MAX_ATTEMPTS", "3"))
    weights: dict = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    def weight_of(self, rule: str) -> int:
        return self.weights.get(rule, DEFAULT_WEIGHTS.get(rule, 0))


_INT_FIELDS = [f.name for f in fields(RiskConfig) if f.name != "weights"]


def _validate(config: RiskConfig) -> None:
    for name in _INT_FIELDS:
        value = getattr(config, name)
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise RiskConfigError(f"{name} must be a non-negative integer")
    if config.approve_below >= config.reject_at:
        raise RiskConfigError("approve_below must be lower than reject_at")
    if config.max_attempts < 1:
        raise RiskConfigError("max_attempts must be at least 1")
    if config.min_width >= config.max_width:
        raise RiskConfigError("min_width must be lower than max_width")
    if config.min_height >= config.max_height:
        raise RiskConfigError("min_height must be lower than max_height")
    for rule, weight in config.weights.items():
        if rule not in DEFAULT_WEIGHTS:
            raise RiskConfigError(f"unknown rule: {rule}")
        if not isinstance(weight, int) or isinstance(weight, bool) or weight < 0:
            raise RiskConfigError(f"weight of {rule} must be a non-negative integer")


def _apply(config: RiskConfig, changes: dict) -> RiskConfig:
    for key, value in changes.items():
        if key == "weights":
            if not isinstance(value, dict):
                raise RiskConfigError("weights must be an object")
            config.weights.update(value)
        elif key in _INT_FIELDS:
            setattr(config, key, value)
        else:
            raise RiskConfigError(f"unknown setting: {key}")
    return config


def load_risk_config() -> RiskConfig:
    """读取当前生效的风控配置（默认值 + 后台覆盖）。"""
    config = RiskConfig()
    raw = get_config(CONFIG_KEY)
    if not raw:
        return config
    try:
        stored = json.loads(raw)
        return _apply(config, stored)
    except (ValueError, RiskConfigError) as e:
        logger.error("风控配置解析失败，使用默认值: %s", e)
        return RiskConfig()


def update_risk_config(changes: dict) -> RiskConfig:
    """
    合并修改并持久化风控配置。

    Raises:
        RiskConfigError: 未知配置项、数值非法或阈值顺序错误。
    """
    config = _apply(load_risk_config(), changes)
    _validate(config)
    set_config(CONFIG_KEY, json.dumps(asdict(config)))
    logger.info("风控配置已更新: %s", sorted(changes))
    return config
