"""
风控规则引擎：固定顺序的规则注册表，每条规则是 RuleContext 上的纯函数，命中时返回依据（detail）。

规则只读上下文，不访问数据库；所需的历史数据由 history_store 预先收集。
权重取自风控配置（RiskConfig.weights），注册表中的 weight 为默认值。
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from app.models.schemas import (
    ExtractedProof,
    FraudFlag,
    ImageFingerprint,
    PaymentOrder,
    PaymentSubmission,
)
from app.services.history_store import HistorySnapshot
from app.services.ocr_extractor import parse_transaction_time
from app.services.risk_config import DEFAULT_WEIGHTS, RiskConfig

_NAME_STOPWORDS = {"THE", "AND", "OF", "INC", "LLC", "CORP"}


@dataclass
class RuleContext:
    order: PaymentOrder
    submission: PaymentSubmission
    fingerprint: ImageFingerprint
    proof: ExtractedProof
    history: HistorySnapshot
    config: RiskConfig
    now: datetime


@dataclass(frozen=True)
class FraudRule:
    name: str
    weight: int
    description: str
    hard_override: bool
    check: Callable[[RuleContext], dict | None]


# ── 姓名比对 ──────────────────────────────────────────────


def _name_words(name: str) -> list[str]:
    cleaned = re.sub(r"[^A-Z\s]", "", name.upper())
    return [w for w in cleaned.split() if w not in _NAME_STOPWORDS]


def names_match(found: str, expected: str) -> bool:
    """
    收款人姓名模糊比对：互相包含，或至少一半的有效单词相同。

    忽略大小写、标点及 THE / AND / OF / INC / LLC / CORP。
    """
    found_upper = found.upper().strip()
    expected_upper = (expected or "").upper().strip()
    if not expected_upper:
        return True
    if found_upper in expected_upper or expected_upper in found_upper:
        return True

    words_found = _name_words(found)
    words_expected = _name_words(expected)
    min_words = min(len(words_found), len(words_expected))
    if min_words == 0:
        return False
    matched = sum(1 for w in words_found if w in words_expected)
    return matched >= min_words * 0.5


# ── 规则判断 ──────────────────────────────────────────────
# 命中时返回该规则的依据（dict，可为空），未命中返回 None。


def _amount_mismatch(ctx: RuleContext) -> dict | None:
    if ctx.proof.amount is None:
        return None
    if abs(ctx.proof.amount - ctx.order.amount) <= ctx.config.amount_tolerance:
        return None
    return {
        "expected": ctx.order.amount,
        "found": ctx.proof.amount,
        "tolerance": ctx.config.amount_tolerance,
    }


def _duplicate_reference(ctx: RuleContext) -> dict | None:
    if not (ctx.proof.reference_number and ctx.history.duplicate_reference_ids):
        return None
    return {
        "reference_number": ctx.proof.reference_number,
        "previous_submission_ids": list(ctx.history.duplicate_reference_ids),
    }


def _duplicate_image(ctx: RuleContext) -> dict | None:
    if not ctx.history.duplicate_image_ids:
        return None
    return {"previous_submission_ids": list(ctx.history.duplicate_image_ids)}


def _similar_image(ctx: RuleContext) -> dict | None:
    similar = ctx.history.similar_image
    if similar is None or similar[1] > ctx.config.similar_hash_distance:
        return None
    return {
        "previous_submission_id": similar[0],
        "distance": similar[1],
        "threshold": ctx.config.similar_hash_distance,
    }


def _receiver_mismatch(ctx: RuleContext) -> dict | None:
    if not ctx.proof.receiver_name:
        return None
    if names_match(ctx.proof.receiver_name, ctx.order.receiving_account_name):
        return None
    return {"expected": ctx.order.receiving_account_name, "found": ctx.proof.receiver_name}


def _timestamp_expired(ctx: RuleContext) -> dict | None:
    detail = {
        "transaction_time": ctx.proof.transaction_time,
        "order_created_at": ctx.order.created_at.strftime("%Y-%m-%d %H:%M:%S"),
    }
    tx_time = parse_transaction_time(ctx.proof.transaction_time)
    if tx_time is None:
        return detail
    grace = timedelta(minutes=ctx.config.timestamp_grace_minutes)
    if tx_time < ctx.order.created_at - grace:
        return detail
    return None


def _low_ocr_confidence(ctx: RuleContext) -> dict | None:
    detail = {"confidence": ctx.proof.confidence, "min": ctx.config.min_ocr_confidence}
    if ctx.proof.amount is None or not ctx.proof.reference_number:
        missing = []
        if ctx.proof.amount is None:
            missing.append("amount")
        if not ctx.proof.reference_number:
            missing.append("reference_number")
        detail["missing"] = missing
        return detail
    if ctx.proof.confidence < ctx.config.min_ocr_confidence:
        return detail
    return None


def _suspicious_dimensions(ctx: RuleContext) -> dict | None:
    fp, cfg = ctx.fingerprint, ctx.config
    if cfg.min_width <= fp.width <= cfg.max_width and cfg.min_height <= fp.height <= cfg.max_height:
        return None
    return {"width": fp.width, "height": fp.height}


def _missing_exif(ctx: RuleContext) -> dict | None:
    return None if ctx.fingerprint.has_exif else {}


def _new_account_high_value(ctx: RuleContext) -> dict | None:
    if ctx.order.amount <= ctx.config.high_value_amount:
        return None
    created = ctx.history.account_created_at
    detail = {
        "amount": ctx.order.amount,
        "account_created_at": created.strftime("%Y-%m-%d %H:%M:%S") if created else None,
    }
    if created is None:
        return detail
    if ctx.now - created < timedelta(days=ctx.config.new_account_days):
        return detail
    return None


def _velocity_exceeded(ctx: RuleContext) -> dict | None:
    if ctx.history.recent_submissions <= ctx.config.velocity_max_submissions:
        return None
    return {
        "count": ctx.history.recent_submissions,
        "limit": ctx.config.velocity_max_submissions,
        "window_minutes": ctx.config.velocity_window_minutes,
    }


def _rule(name: str, description: str, check, hard_override: bool = False) -> FraudRule:
    return FraudRule(name, DEFAULT_WEIGHTS[name], description, hard_override, check)


RULES: tuple[FraudRule, ...] = (
    _rule("AMOUNT_MISMATCH", "Payment amount does not match the order amount", _amount_mismatch),
    _rule("DUPLICATE_REFERENCE", "This reference number has already been used", _duplicate_reference, True),
    _rule("DUPLICATE_IMAGE", "This screenshot has already been submitted", _duplicate_image, True),
    _rule("SIMILAR_IMAGE", "This screenshot is very similar to a previous submission", _similar_image),
    _rule("RECEIVER_MISMATCH", "Payment was not sent to the platform GCash account", _receiver_mismatch),
    _rule("TIMESTAMP_EXPIRED", "Transaction time is missing or earlier than the order", _timestamp_expired),
    _rule("LOW_OCR_CONFIDENCE", "Screenshot is unclear or missing required details", _low_ocr_confidence, True),
    _rule("SUSPICIOUS_DIMENSIONS", "Screenshot dimensions are unusual", _suspicious_dimensions),
    _rule("MISSING_EXIF", "Screenshot has no image metadata", _missing_exif),
    _rule("NEW_ACCOUNT_HIGH_VALUE", "High-value payment from a newly created account", _new_account_high_value),
    _rule("VELOCITY_EXCEEDED", "Too many payment submissions in a short period", _velocity_exceeded),
)

RULES_BY_NAME = {rule.name: rule for rule in RULES}


def make_flag(rule_name: str, config: RiskConfig, detail: dict | None = None) -> FraudFlag:
    """按规则名生成带当前权重的风险标记。"""
    rule = RULES_BY_NAME[rule_name]
    return FraudFlag(
        rule=rule.name,
        weight=config.weight_of(rule.name),
        description=rule.description,
        hard_override=rule.hard_override,
        detail=detail or {},
    )


def evaluate(ctx: RuleContext) -> list[FraudFlag]:
    """按注册表顺序执行全部规则，返回所有命中的风险标记（附命中依据）。"""
    flags = []
    for rule in RULES:
        detail = rule.check(ctx)
        if detail is not None:
            flags.append(make_flag(rule.name, ctx.config, detail))
    return flags
