"""
OCR 提取器：调用 OCR 引擎识别截图文字，并按 GCash 回单格式提取结构化字段。

- 金额：去除 PHP / ₱ / P 货币符号和千分位，Decimal 解析后转为整数分
- 参考号：多种格式依次匹配，去空格，数字串中 O→0、I/l→1
- 收款人 / 付款人姓名、交易时间文本
- 置信度：引擎置信度与字段提取完整度的平均值，范围 0-100

引擎返回失败或空文本时视为降级输入（全空字段，置信度 0），
引擎抛出异常或超时视为临时故障（OcrEngineError），由编排器重试。
"""

import logging
import os
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import NamedTuple, Protocol

import httpx

from app.models.schemas import ExtractedProof

logger = logging.getLogger(__name__)

OCR_API_URL = os.getenv("OCR_API_URL", "")
OCR_TIMEOUT_SECONDS = float(os.getenv("OCR_TIMEOUT_SECONDS", "15"))


class OcrEngineError(Exception):
    """OCR 引擎调用失败（网络、超时、服务端错误），属于可重试的临时故障。"""
    pass


class OcrText(NamedTuple):
    text: str
    confidence: float


class OcrEngine(Protocol):
    def recognize(self, image: bytes) -> OcrText: ...


# ── 回单模式 ──────────────────────────────────────────────

_REFERENCE_PATTERNS = [
    re.compile(r"Ref(?:erence)?\.?\s*(?:No\.?|Number|#)?:?\s*([A-Z0-9]{4}\s?[A-Z0-9]{8,12})", re.IGNORECASE),
    re.compile(r"(?:GCash|Transaction)\s*Ref(?:erence)?:?\s*([A-Z0-9 ]{12,20})", re.IGNORECASE),
    re.compile(r"(\d{4}\s\d{4}\s\d{4})"),
    re.compile(r"Ref(?:erence)?\s*(?:No\.?)?[\s:]*\n?\s*([A-Z0-9]{10,16})", re.IGNORECASE),
    re.compile(r"\b(\d{12,16})\b"),
]

_AMOUNT_PATTERNS = [
    re.compile(r"(?:PHP|₱)\s*([\d,]+\.?\d{0,2})", re.IGNORECASE),
    re.compile(r"Amount:?\s*(?:PHP|₱)?\s*([\d,]+\.?\d{0,2})", re.IGNORECASE),
    re.compile(r"You\s+(?:sent|paid)\s+(?:PHP|₱)?\s*([\d,]+\.?\d{0,2})", re.IGNORECASE),
    re.compile(r"Total:?\s*(?:PHP|₱)?\s*([\d,]+\.?\d{0,2})", re.IGNORECASE),
    re.compile(r"\bP\s*([\d,]+\.\d{2})\b"),
]

_SENDER_PATTERNS = [
    re.compile(r"\bFrom\b:?[ \t]*([A-Za-z \t.]+?)(?:\n|$|Phone)", re.IGNORECASE),
    re.compile(r"Sent\s+by:?[ \t]*([A-Za-z \t.]+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"Sender:?[ \t]*([A-Za-z \t.]+?)(?:\n|$)", re.IGNORECASE),
]

_RECEIVER_PATTERNS = [
    re.compile(r"Send\s+Money\s+to:?[ \t]*([A-Za-z \t.]+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"Received\s+by:?[ \t]*([A-Za-z \t.]+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"Recipient:?[ \t]*([A-Za-z \t.]+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"\bTo\b:?[ \t]*([A-Za-z \t.]+?)(?:\n|$|Phone)", re.IGNORECASE),
    re.compile(r"09\d{9}\s*\n?\s*([A-Za-z][A-Za-z \t.]+)"),
]

_TIMESTAMP_PATTERNS = [
    re.compile(r"(\d{1,2}/\d{1,2}/\d{2,4})\s*,?\s*(\d{1,2}:\d{2}\s*(?:AM|PM)?)", re.IGNORECASE),
    re.compile(
        r"((?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+\d{1,2},?\s+\d{4})"
        r"\s+(?:at\s+)?(\d{1,2}:\d{2}\s*(?:AM|PM)?)",
        re.IGNORECASE,
    ),
    re.compile(r"(\d{4}-\d{2}-\d{2})[ T](\d{2}:\d{2})"),
    re.compile(r"Date:?\s*(\d{1,2}[-/]\d{1,2}[-/]\d{4})", re.IGNORECASE),
    re.compile(r"((?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
    re.compile(r"(\d{1,2}/\d{1,2}/\d{4})"),
]

_SUCCESS_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"success(?:ful(?:ly)?)?", r"completed", r"sent\s+to", r"received",
        r"transaction\s+complete", r"money\s+sent", r"transfer\s+successful",
    )
]

_GCASH_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"g-?cash", r"globe\s+fintech", r"\bmynt\b")
]

_TIME_FORMATS = [
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%y %I:%M %p",
    "%m/%d/%Y %H:%M",
    "%B %d %Y %I:%M %p",
    "%b %d %Y %I:%M %p",
    "%B %d %Y %H:%M",
    "%b %d %Y %H:%M",
    "%Y-%m-%d %H:%M",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%B %d %Y",
    "%b %d %Y",
    "%Y-%m-%d",
]

# 各字段对提取完整度的贡献
_EXTRACTION_WEIGHTS = {
    "reference_number": 30,
    "amount": 30,
    "receiver_name": 15,
    "transaction_time": 10,
    "sender_name": 5,
    "has_success_indicator": 5,
    "is_gcash_receipt": 5,
}

_MIN_REFERENCE_LENGTH = 10
_MIN_NAME_LENGTH = 5


# ── 字段解析 ──────────────────────────────────────────────


def parse_amount(raw: str) -> int | None:
    """
    将金额文本转为整数分：去除货币符号、千分位和空白。

    "PHP 1,500.00" → 150000；无法解析或非正数返回 None。
    """
    if not raw:
        return None
    cleaned = re.sub(r"(?i)php|₱|\s|,", "", raw)
    cleaned = cleaned.lstrip("Pp")
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return int((value * 100).quantize(Decimal("1")))


def normalize_reference(raw: str | None) -> str | None:
    """参考号规范化：去空白、转大写；以数字为主时修正常见 OCR 误识别字符。"""
    if not raw:
        return None
    ref = re.sub(r"\s+", "", raw).upper()
    digits = sum(c.isdigit() for c in ref)
    if ref and digits / len(ref) >= 0.7:
        ref = ref.replace("O", "0").replace("I", "1").replace("L", "1")
    if len(ref) < _MIN_REFERENCE_LENGTH:
        return None
    return ref


def parse_transaction_time(text: str | None) -> datetime | None:
    """解析回单中的交易时间文本，无法解析返回 None。"""
    if not text:
        return None
    s = re.sub(r"\s+at\s+", " ", text, flags=re.IGNORECASE)
    s = re.sub(r"(\d)\s*(AM|PM)\b", r"\1 \2", s, flags=re.IGNORECASE)
    s = re.sub(r"[,.]", " ", s)
    s = re.sub(r"\s+", " ", s).strip()
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return None


def _first_match(patterns: list, text: str) -> re.Match | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match
    return None


def _extract_name(patterns: list, text: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1):
            name = re.sub(r"\s+", " ", match.group(1)).strip(" .")
            if len(name) >= _MIN_NAME_LENGTH or len(name.split()) >= 2:
                return name
    return None


def _extract_reference(text: str) -> str | None:
    for pattern in _REFERENCE_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            ref = normalize_reference(match.group(1))
            if ref:
                return ref
    return None


def _extract_amount(text: str) -> int | None:
    for pattern in _AMOUNT_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            amount = parse_amount(match.group(1))
            if amount is not None:
                return amount
    return None


def _extract_time(text: str) -> str | None:
    match = _first_match(_TIMESTAMP_PATTERNS, text)
    if not match:
        return None
    if match.lastindex and match.lastindex >= 2 and match.group(2):
        return f"{match.group(1)} {match.group(2)}".strip()
    return match.group(1).strip()


def extraction_score(proof: ExtractedProof) -> int:
    """按已提取字段计算提取完整度（0-100）。"""
    score = 0
    for attr, weight in _EXTRACTION_WEIGHTS.items():
        if getattr(proof, attr):
            score += weight
    return score


def parse_receipt_text(text: str, engine_confidence: float) -> ExtractedProof:
    """从 OCR 全文中提取回单字段并计算综合置信度。"""
    if not text or not text.strip():
        return ExtractedProof(confidence=0.0)

    proof = ExtractedProof(
        amount=_extract_amount(text),
        reference_number=_extract_reference(text),
        sender_name=_extract_name(_SENDER_PATTERNS, text),
        receiver_name=_extract_name(_RECEIVER_PATTERNS, text),
        transaction_time=_extract_time(text),
        has_success_indicator=any(p.search(text) for p in _SUCCESS_PATTERNS),
        is_gcash_receipt=any(p.search(text) for p in _GCASH_PATTERNS),
        raw_text=text,
    )

    # 引擎置信度可能是 0-1 或 0-100
    engine_score = engine_confidence * 100 if engine_confidence <= 1 else engine_confidence
    engine_score = min(max(engine_score, 0.0), 100.0)
    proof.confidence = round((engine_score + extraction_score(proof)) / 2, 1)
    return proof


# ── OCR 引擎 ──────────────────────────────────────────────


class HttpOcrEngine:
    """
    通过 HTTP 调用外部 OCR 服务。

    请求：multipart 上传截图；响应 JSON：{"text": str, "confidence": float}，
    识别失败时返回 {"success": false}。
    """

    def __init__(self, api_url: str, api_key: str | None = None, timeout: float = OCR_TIMEOUT_SECONDS):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout

    def recognize(self, image: bytes) -> OcrText:
        if not self.api_url:
            raise OcrEngineError("OCR engine is not configured")

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(
                    self.api_url,
                    files={"file": ("screenshot", image, "application/octet-stream")},
                    headers=headers,
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("OCR 引擎请求失败: %s", e)
            raise OcrEngineError(str(e)) from e

        if data.get("success") is False:
            logger.info("OCR 引擎未识别出文字: %s", data.get("error"))
            return OcrText("", 0.0)

        try:
            confidence = float(data.get("confidence") or 0)
        except (TypeError, ValueError):
            confidence = 0.0
        return OcrText(data.get("text") or "", confidence)


class OcrExtractor:
    """OCR 提取器：引擎识别 → 字段提取。"""

    def __init__(self, engine: OcrEngine):
        self.engine = engine

    def extract(self, image: bytes) -> ExtractedProof:
        """
        识别截图并提取结构化字段。

        Raises:
            OcrEngineError: 引擎调用失败（临时故障）。
        """
        result = self.engine.recognize(image)
        proof = parse_receipt_text(result.text, result.confidence)
        logger.info(
            "OCR 提取完成: amount=%s, ref=%s, confidence=%.1f",
            proof.amount, proof.reference_number, proof.confidence,
        )
        return proof


def build_default_extractor() -> OcrExtractor:
    """根据平台配置（加密存储的 OCR 凭证）或环境变量构建提取器。"""
    from app.services.platform_config import get_ocr_credentials

    creds = get_ocr_credentials()
    if creds:
        return OcrExtractor(HttpOcrEngine(creds["api_url"], creds.get("api_key")))
    return OcrExtractor(HttpOcrEngine(OCR_API_URL, os.getenv("OCR_API_KEY")))
