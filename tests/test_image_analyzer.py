"""图片分析器单元测试。"""

import hashlib
import io

import pytest
from PIL import Image

from app.services.image_analyzer import (
    ImageAnalysisError,
    analyze_image,
    average_hash,
    hamming_distance,
)


class TestAnalyzeImage:
    """analyze_image 单元测试。"""

    def test_fingerprint_fields(self, make_screenshot):
        data = make_screenshot(seed=1, size=(720, 1280))
        fp = analyze_image(data)
        assert fp.exact_hash == hashlib.sha256(data).hexdigest()
        assert len(fp.perceptual_hash) == 16
        assert (fp.width, fp.height) == (720, 1280)

    def test_jpeg_with_exif(self, make_screenshot):
        fp = analyze_image(make_screenshot(exif=True))
        assert fp.has_exif is True

    def test_png_without_exif(self, make_screenshot):
        fp = analyze_image(make_screenshot(exif=False, fmt="PNG"))
        assert fp.has_exif is False

    def test_identical_bytes_same_hashes(self, make_screenshot):
        data = make_screenshot(seed=7)
        a = analyze_image(data)
        b = analyze_image(data)
        assert a.exact_hash == b.exact_hash
        assert a.perceptual_hash == b.perceptual_hash

    def test_reencoded_image_is_perceptually_similar(self, make_screenshot):
        """同一画面不同编码：精确哈希不同，感知哈希接近。"""
        a = analyze_image(make_screenshot(seed=3, fmt="JPEG"))
        b = analyze_image(make_screenshot(seed=3, fmt="PNG", exif=False))
        assert a.exact_hash != b.exact_hash
        assert hamming_distance(a.perceptual_hash, b.perceptual_hash) <= 10

    def test_different_images_are_far_apart(self, make_screenshot):
        a = analyze_image(make_screenshot(seed=1))
        b = analyze_image(make_screenshot(seed=2))
        assert hamming_distance(a.perceptual_hash, b.perceptual_hash) > 10

    def test_empty_bytes_raises(self):
        with pytest.raises(ImageAnalysisError):
            analyze_image(b"")

    def test_garbage_bytes_raises(self):
        with pytest.raises(ImageAnalysisError):
            analyze_image(b"definitely not an image")

    def test_truncated_image_raises(self, make_screenshot):
        data = make_screenshot(fmt="PNG", exif=False)
        with pytest.raises(ImageAnalysisError):
            analyze_image(data[: len(data) // 2])


class TestAverageHash:
    """average_hash / hamming_distance 单元测试。"""

    def test_uniform_image_hash_is_zero(self):
        img = Image.new("RGB", (100, 100), (128, 128, 128))
        assert average_hash(img) == "0" * 16

    def test_half_white_image(self):
        """上半黑、下半白：前 32 位为 0，后 32 位为 1。"""
        img = Image.new("L", (8, 8), 0)
        img.paste(255, (0, 4, 8, 8))
        assert average_hash(img) == "00000000ffffffff"

    def test_hamming_distance(self):
        assert hamming_distance("0000000000000000", "000000000000000f") == 4
        assert hamming_distance("ffffffffffffffff", "ffffffffffffffff") == 0

    def test_hamming_distance_missing_hash(self):
        assert hamming_distance(None, "0000000000000000") == 64
        assert hamming_distance("abc", "0000000000000000") == 64

    def test_average_hash_accepts_bytes_roundtrip(self):
        buf = io.BytesIO()
        Image.new("L", (8, 8), 0).save(buf, format="PNG")
        fp = analyze_image(buf.getvalue())
        assert fp.perceptual_hash == "0" * 16
