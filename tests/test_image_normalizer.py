"""
Tests for image_normalizer.py.

Covers:
  - pass-through of small JPEG/PNG/WebP (bytes, data URL, file handle)
  - re-encode to JPEG: oversize, unaccepted formats, alpha, orientation
  - resize bound and .jpg file name
  - decode fallback: Pillow fails → libheif; both fail → DecodeError
  - conversion failure on an accepted image falls back to the original
  - source and output size caps
"""
from __future__ import annotations

import io

import pytest
from PIL import Image, UnidentifiedImageError

import image_normalizer
from conftest import make_image
from errors import DecodeError, ErrorKind, PayloadTooLargeError, SourceTooLargeError
from image_normalizer import (
    CONVERSION_FAILED,
    NormalizedImage,
    NormalizerOptions,
    normalize_image,
    normalize_image_async,
)
from image_types import to_data_url

# Force every accepted image through the converter
CONVERT_ALL = NormalizerOptions(passthrough_bytes=1)


def dimensions(data: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as im:
        return im.size


# ── Pass-through ──────────────────────────────────────────────────────────────

class TestPassThrough:
    def test_small_jpeg_untouched(self, jpeg_bytes):
        out = normalize_image(jpeg_bytes, options=NormalizerOptions())
        assert out.data == jpeg_bytes
        assert out.mime_type == "image/jpeg"
        assert out.byte_size == len(jpeg_bytes)

    def test_small_png_keeps_type(self, png_bytes):
        out = normalize_image(png_bytes, filename="car.png", options=NormalizerOptions())
        assert out.data == png_bytes
        assert out.mime_type == "image/png"
        assert out.filename == "car.png"

    def test_webp(self):
        webp = make_image("WEBP")
        out = normalize_image(webp, options=NormalizerOptions())
        assert out.mime_type == "image/webp"
        assert out.data == webp

    def test_bytes_win_over_declared_type(self, png_bytes):
        out = normalize_image(png_bytes, declared_type="image/jpeg", options=NormalizerOptions())
        assert out.mime_type == "image/png"

    def test_jpg_alias_canonicalised(self, jpeg_bytes):
        out = normalize_image(jpeg_bytes, declared_type="image/jpg", options=NormalizerOptions())
        assert out.mime_type == "image/jpeg"

    def test_declared_type_alone_never_passes_through(self):
        # Unidentifiable bytes are decoded, whatever the browser claimed
        with pytest.raises(DecodeError):
            normalize_image(b"opaque", declared_type="image/jpeg", options=NormalizerOptions())

    def test_data_url_type_alone_never_passes_through(self):
        with pytest.raises(DecodeError):
            normalize_image(to_data_url(b"opaque", "image/png"), options=NormalizerOptions())

    def test_mislabelled_decodable_image_reencoded(self):
        # Bytes Pillow can read but the sniffer does not list
        bmp = make_image("BMP")
        out = normalize_image(bmp, declared_type="image/jpeg", options=NormalizerOptions())
        assert out.mime_type == "image/jpeg"
        assert out.data[:3] == b"\xff\xd8\xff"

    def test_data_url_source(self, png_bytes):
        out = normalize_image(to_data_url(png_bytes, "image/png"), options=NormalizerOptions())
        assert out.data == png_bytes
        assert out.mime_type == "image/png"

    def test_file_handle_source(self, tmp_path, jpeg_bytes):
        path = tmp_path / "photo.jpeg"
        path.write_bytes(jpeg_bytes)
        with open(path, "rb") as fh:
            out = normalize_image(fh, options=NormalizerOptions())
        assert out.data == jpeg_bytes
        assert out.filename == "photo.jpeg"


# ── Conversion ────────────────────────────────────────────────────────────────

class TestConversion:
    def test_oversize_jpeg_reencoded(self, jpeg_bytes):
        out = normalize_image(jpeg_bytes, filename="big.jpeg", options=CONVERT_ALL)
        assert out.mime_type == "image/jpeg"
        assert out.data[:3] == b"\xff\xd8\xff"
        assert out.filename == "big.jpg"

    def test_gif_converted_to_jpeg(self):
        gif = make_image("GIF", mode="P", color=3)
        out = normalize_image(gif, filename="anim.gif", options=NormalizerOptions())
        assert out.mime_type == "image/jpeg"
        assert out.filename == "anim.jpg"

    def test_rgba_png_flattened(self):
        png = make_image("PNG", mode="RGBA", color=(10, 200, 10, 128))
        out = normalize_image(png, options=CONVERT_ALL)
        with Image.open(io.BytesIO(out.data)) as im:
            assert im.mode == "RGB"

    def test_resized_to_max_width(self):
        big = make_image("PNG", size=(400, 300))
        opts = NormalizerOptions(max_width=100, passthrough_bytes=1)
        out = normalize_image(big, options=opts)
        assert dimensions(out.data) == (100, 75)

    def test_portrait_bounded_by_height(self):
        tall = make_image("PNG", size=(300, 600))
        opts = NormalizerOptions(max_width=200, passthrough_bytes=1)
        assert dimensions(normalize_image(tall, options=opts).data) == (100, 200)

    def test_small_image_not_upscaled(self, png_bytes):
        assert dimensions(normalize_image(png_bytes, options=CONVERT_ALL).data) == (64, 48)

    def test_exif_orientation_applied(self):
        exif = Image.Exif()
        exif[0x0112] = 6        # rotate 90° CW on display
        rotated = make_image("JPEG", size=(64, 48), exif=exif.tobytes())
        out = normalize_image(rotated, options=CONVERT_ALL)
        assert dimensions(out.data) == (48, 64)

    def test_no_extension_gets_jpg(self, png_bytes):
        out = normalize_image(png_bytes, filename="upload", options=CONVERT_ALL)
        assert out.filename == "upload.jpg"


# ── Decode fallback ───────────────────────────────────────────────────────────

class TestDecodeFallback:
    def test_libheif_used_when_pillow_fails(self, monkeypatch):
        def pillow_fails(raw):
            raise UnidentifiedImageError("cannot identify image file")

        calls = []

        def libheif_ok(raw):
            calls.append(raw)
            return Image.new("RGB", (20, 10), (0, 0, 255))

        monkeypatch.setattr(image_normalizer, "_open_with_pillow", pillow_fails)
        monkeypatch.setattr(image_normalizer, "_open_with_libheif", libheif_ok)

        heic = b"\x00\x00\x00\x18ftypheic" + b"\x00" * 64
        out = normalize_image(heic, filename="IMG_0001.HEIC", options=NormalizerOptions())
        assert calls == [heic]
        assert out.mime_type == "image/jpeg"
        assert out.filename == "IMG_0001.jpg"
        assert dimensions(out.data) == (20, 10)

    def test_both_decoders_fail_raises(self):
        with pytest.raises(DecodeError) as exc_info:
            normalize_image(b"definitely not an image", options=NormalizerOptions())
        assert exc_info.value.message == CONVERSION_FAILED
        assert exc_info.value.kind is ErrorKind.DECODE

    def test_undecodable_heic_raises(self):
        heic = b"\x00\x00\x00\x18ftypheic" + b"\x00" * 64
        with pytest.raises(DecodeError):
            normalize_image(heic, options=NormalizerOptions())

    def test_accepted_original_used_when_conversion_fails(self, monkeypatch, jpeg_bytes):
        def decode_fails(raw):
            raise DecodeError(CONVERSION_FAILED)

        monkeypatch.setattr(image_normalizer, "_decode", decode_fails)
        out = normalize_image(jpeg_bytes, options=CONVERT_ALL)
        assert out.data == jpeg_bytes
        assert out.mime_type == "image/jpeg"

    def test_bad_data_url_raises_decode_error(self):
        with pytest.raises(DecodeError, match="Failed to read"):
            normalize_image("data:image/png;base64,%%%", options=NormalizerOptions())


# ── Size caps ─────────────────────────────────────────────────────────────────

class TestSizeCaps:
    def test_source_over_cap_rejected(self, jpeg_bytes):
        opts = NormalizerOptions(max_source_bytes=100)
        with pytest.raises(SourceTooLargeError, match="less than 100 bytes"):
            normalize_image(jpeg_bytes, options=opts)

    def test_default_source_cap_message(self):
        opts = NormalizerOptions()
        with pytest.raises(SourceTooLargeError, match="less than 15 MB"):
            normalize_image(b"\x00" * (opts.max_source_bytes + 1), options=opts)

    def test_output_over_cap_raises(self):
        gif = make_image("GIF", size=(200, 200), mode="P", color=3)
        opts = NormalizerOptions(max_output_bytes=100)
        with pytest.raises(PayloadTooLargeError, match="Max 100 bytes"):
            normalize_image(gif, options=opts)

    def test_passthrough_never_exceeds_output_cap(self):
        # Under passthrough_bytes but over max_output_bytes → must be re-encoded
        opts = NormalizerOptions(passthrough_bytes=1000, max_output_bytes=500)
        assert image_normalizer._should_convert("image/png", 800, opts)
        assert not image_normalizer._should_convert("image/png", 400, opts)


# ── Misc ──────────────────────────────────────────────────────────────────────

class TestNormalizedImage:
    def test_rejects_unaccepted_mime(self):
        with pytest.raises(ValueError):
            NormalizedImage(b"GIF89a", "image/gif")


@pytest.mark.asyncio
class TestNormalizeAsync:
    async def test_runs_in_thread(self, png_bytes):
        out = await normalize_image_async(png_bytes, options=CONVERT_ALL)
        assert out.mime_type == "image/jpeg"
