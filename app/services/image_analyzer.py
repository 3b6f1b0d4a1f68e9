"""图片分析器：计算截图的精确哈希、感知哈希、尺寸和 EXIF 信息。"""

import hashlib
import io

from PIL import Image

from app.models.schemas import ImageFingerprint

# 平均哈希边长：8x8 = 64 位
HASH_SIZE = 8


class ImageAnalysisError(Exception):
    """图片无法解码（损坏、截断或非图片内容）。"""
    pass


def average_hash(img: Image.Image) -> str:
    """
    计算 64 位平均哈希（aHash），返回 16 位十六进制字符串。

    缩放为 8x8 灰度图，像素值大于均值的位置记为 1。
    """
    small = img.convert("L").resize((HASH_SIZE, HASH_SIZE), Image.Resampling.LANCZOS)
    pixels = list(small.tobytes())
    avg = sum(pixels) / len(pixels)

    value = 0
    for p in pixels:
        value = (value << 1) | (1 if p > avg else 0)
    return f"{value:016x}"


def hamming_distance(hash_a: str | None, hash_b: str | None) -> int:
    """计算两个感知哈希的汉明距离；任一为空时返回最大距离 64。"""
    if not hash_a or not hash_b or len(hash_a) != len(hash_b):
        return HASH_SIZE * HASH_SIZE
    return bin(int(hash_a, 16) ^ int(hash_b, 16)).count("1")


def analyze_image(data: bytes) -> ImageFingerprint:
    """
    解码截图并生成指纹。

    Args:
        data: 截图原始字节。

    Returns:
        ImageFingerprint（exact_hash 为原始字节的 SHA-256）。

    Raises:
        ImageAnalysisError: 内容为空或无法解码。
    """
    if not data:
        raise ImageAnalysisError("empty image")

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
        exif = img.getexif()
        fingerprint = ImageFingerprint(
            exact_hash=hashlib.sha256(data).hexdigest(),
            perceptual_hash=average_hash(img),
            width=img.width,
            height=img.height,
            has_exif=len(exif) > 0,
        )
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        raise ImageAnalysisError(f"unreadable image: {e}") from e

    return fingerprint
