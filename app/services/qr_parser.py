"""收款码解析器：解析 GCash 收款码图片，提取 QR Ph 收款载荷。"""

import re
from PIL import Image
from pyzbar.pyzbar import decode


class QRParseError(Exception):
    """收款码解析失败异常。"""
    pass


# GCash / QR Ph 收款码载荷模式（EMVCo 格式以 000201 开头）
_GCASH_PATTERNS = [
    re.compile(r"^000201"),
    re.compile(r"p2pqrpay", re.IGNORECASE),
    re.compile(r"gcash", re.IGNORECASE),
]


def parse_qrcode(image_path: str) -> str:
    """
    解析收款码图片，提取 GCash 收款载荷。

    使用 pyzbar 解码二维码，检查是否为 QR Ph / GCash 收款码。

    Args:
        image_path: 图片文件路径。

    Returns:
        收款码载荷字符串。

    Raises:
        QRParseError: 图片无法解析或不包含有效的 GCash 收款码。
    """
    try:
        img = Image.open(image_path)
    except Exception as e:
        raise QRParseError("unable to open image file") from e

    decoded_objects = decode(img)

    if not decoded_objects:
        raise QRParseError("no QR code found, please upload a clear GCash QR image")

    for obj in decoded_objects:
        data = obj.data.decode("utf-8", errors="ignore")
        for pattern in _GCASH_PATTERNS:
            if pattern.search(data):
                return data

    raise QRParseError("no QR code found, please upload a clear GCash QR image")
