"""全局测试配置：确保所有测试在测试模式下运行，并提供截图 / OCR 测试工具。"""

import io
import os
import random
import tempfile
from datetime import datetime

import pytest

# 在任何模块导入之前设置 TESTING 环境变量，
# 防止 app.main 启动事件创建后台任务。
os.environ["TESTING"] = "1"

# 截图与收款码写入临时目录
os.environ.setdefault("SCREENSHOT_DIR", tempfile.mkdtemp(prefix="screenshots_"))
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="uploads_"))


def _render_screenshot(seed: int, size: tuple, exif: bool, fmt: str) -> bytes:
    """按随机种子生成 8x8 块状灰度图，放大到指定尺寸；不同种子的感知哈希差异明显。"""
    from PIL import Image

    rng = random.Random(seed)
    small = Image.new("L", (8, 8))
    small.putdata([rng.choice((30, 220)) for _ in range(64)])
    img = small.resize(size, Image.Resampling.NEAREST).convert("RGB")

    buf = io.BytesIO()
    if exif and fmt == "JPEG":
        meta = Image.Exif()
        meta[0x010F] = "TestPhone"  # Make
        meta[0x0110] = "Model X"    # Model
        img.save(buf, format=fmt, exif=meta.tobytes())
    else:
        img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def make_screenshot():
    """截图工厂：make_screenshot(seed=1, size=(720, 1280), exif=True, fmt="JPEG")。"""
    def _make(seed: int = 1, size: tuple = (720, 1280), exif: bool = True, fmt: str = "JPEG") -> bytes:
        return _render_screenshot(seed, size, exif, fmt)
    return _make


def build_receipt_text(
    amount: str = "1,000.00",
    reference: str = "1234567890123",
    receiver: str = "JUAN DELA CRUZ",
    when: datetime | None = None,
) -> str:
    """生成一份 GCash 转账成功回单的 OCR 文本。"""
    when = when or datetime.now()
    return "\n".join([
        "GCash",
        f"Send Money to: {receiver}",
        "09171234567",
        f"Amount: PHP {amount}",
        f"Ref No. {reference}",
        when.strftime("%b %d, %Y %I:%M %p"),
        "Transaction Successful",
    ])


@pytest.fixture
def receipt_text():
    return build_receipt_text


class FakeOcrEngine:
    """固定返回给定文本的 OCR 引擎；error 不为空时抛出该异常。"""

    def __init__(self, text: str = "", confidence: float = 0.95, error: Exception | None = None):
        self.text = text
        self.confidence = confidence
        self.error = error
        self.calls = 0

    def recognize(self, image: bytes):
        from app.services.ocr_extractor import OcrText

        self.calls += 1
        if self.error is not None:
            raise self.error
        return OcrText(self.text, self.confidence)


@pytest.fixture
def fake_engine():
    """OCR 引擎工厂：fake_engine(text, confidence=0.95, error=None)。"""
    return FakeOcrEngine
