"""
Image decoding and input-side transforms.

Reference images are shrunk and re-encoded before upload, and may be
cropped/rotated/colour-corrected by the reference editor. None of these
functions raise on bad pixels: a degraded preview is preferable to
aborting a whole batch.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
import math
from typing import Dict, Tuple, Union

import cv2
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)


# (max_width, max_height, quality) used when a reference image is attached.
REFERENCE_PRESETS: Dict[str, Tuple[int, int, float]] = {
    "BATCH": (800, 800, 0.7),
    "TYPOGRAPHY": (800, 800, 0.75),
    "ANGLES": (512, 512, 0.6),
    "ALBUM": (512, 512, 0.7),
}


@dataclass(frozen=True)
class EncodedImage:
    """A raster plus the compressed bytes it was decoded from, sent to the API as-is."""

    image: Image.Image
    data: bytes
    mime_type: str = "image/jpeg"

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size


ImageInput = Union[Image.Image, EncodedImage]


@dataclass(frozen=True)
class CropRect:
    x: int
    y: int
    width: int
    height: int


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode bytes into an RGBA raster. Raises ValueError on invalid data."""
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except Exception as exc:  # noqa: BLE001
        raise ValueError("Invalid image data") from exc
    return image.convert("RGBA")


def encode_image(image: Image.Image, fmt: str = "PNG", quality: float = 0.92) -> bytes:
    """Encode a raster; JPEG output is flattened onto black like a canvas export."""
    buf = BytesIO()
    if fmt.upper() in {"JPEG", "JPG"}:
        _flatten(image).save(buf, format="JPEG", quality=_jpeg_quality(quality))
    else:
        image.save(buf, format=fmt)
    return buf.getvalue()


def _flatten(image: Image.Image) -> Image.Image:
    rgba = image.convert("RGBA")
    background = Image.new("RGBA", rgba.size, (0, 0, 0, 255))
    return Image.alpha_composite(background, rgba).convert("RGB")


def _clamp_quality(quality: float) -> float:
    return max(0.0, min(1.0, float(quality)))


def _jpeg_quality(quality: float) -> int:
    return int(round(_clamp_quality(quality) * 100))


def _compute_resize_dims(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Shrink so both edges fit their bounds, preserving aspect ratio. Never upscales."""
    if width <= max_width and height <= max_height:
        return width, height
    max_width, max_height = max(1, max_width), max(1, max_height)
    # The tighter bound is hit exactly; the other edge truncates like a canvas size.
    if max_width / width <= max_height / height:
        return max_width, max(1, int(height * max_width / width))
    return max(1, int(width * max_height / height)), max_height


def encode_reference(
    image: Image.Image, max_width: int = 1024, max_height: int = 1024, quality: float = 0.9
) -> EncodedImage:
    """Bound an image to max_width x max_height and keep its lossy JPEG encoding."""
    width, height = image.size
    new_w, new_h = _compute_resize_dims(width, height, max_width, max_height)
    if (new_w, new_h) != (width, height):
        image = image.resize((new_w, new_h), Image.BILINEAR)
    jpeg = encode_image(image, fmt="JPEG", quality=quality)
    return EncodedImage(image=decode_image(jpeg), data=jpeg)


def resize_and_reencode_image(
    image: Image.Image, max_width: int = 1024, max_height: int = 1024, quality: float = 0.9
) -> Image.Image:
    """Bound an image to max_width x max_height and round-trip it through lossy JPEG."""
    return encode_reference(image, max_width, max_height, quality).image


def resize_and_reencode(
    image_bytes: bytes, max_width: int = 1024, max_height: int = 1024, quality: float = 0.9
) -> bytes:
    """
    Bytes-in/bytes-out variant used for uploads.

    When the source cannot be decoded the original bytes are returned as-is.
    """
    try:
        image = decode_image(image_bytes)
    except ValueError:
        logger.warning("resize: could not decode %d bytes, passing through", len(image_bytes))
        return image_bytes
    width, height = image.size
    new_w, new_h = _compute_resize_dims(width, height, max_width, max_height)
    if (new_w, new_h) != (width, height):
        image = image.resize((new_w, new_h), Image.BILINEAR)
    return encode_image(image, fmt="JPEG", quality=quality)


def prepare_reference(image: Image.Image, mode: str = "BATCH") -> EncodedImage:
    """
    Apply the per-mode reference preset.

    Raises KeyError for modes without a preset; callers send those images untouched.
    """
    max_w, max_h, quality = REFERENCE_PRESETS[mode.upper()]
    return encode_reference(image, max_w, max_h, quality)


def rotated_bounding_box(width: int, height: int, rotation_degrees: float) -> Tuple[int, int]:
    """Size of the axis-aligned box holding a width x height image rotated about its centre."""
    theta = math.radians(rotation_degrees)
    cos_t, sin_t = abs(math.cos(theta)), abs(math.sin(theta))
    bbox_w = cos_t * width + sin_t * height
    bbox_h = sin_t * width + cos_t * height
    # Absorb float noise such as cos(90deg) ~ 6e-17 before truncating.
    return max(1, int(bbox_w + 1e-6)), max(1, int(bbox_h + 1e-6))


def _rotate_into_bbox(rgba: np.ndarray, rotation_degrees: float) -> np.ndarray:
    height, width = rgba.shape[:2]
    bbox_w, bbox_h = rotated_bounding_box(width, height, rotation_degrees)
    if rotation_degrees % 90 == 0:
        # quarter turns are lossless; np.rot90 counts counter-clockwise turns
        return np.ascontiguousarray(np.rot90(rgba, k=-int(rotation_degrees // 90) % 4))
    # Screen coordinates have y pointing down, so a clockwise turn is a
    # negative angle for OpenCV. OpenCV puts pixel centres on integer
    # coordinates, hence the half-pixel shift of the pivot.
    matrix = cv2.getRotationMatrix2D(((width - 1) / 2.0, (height - 1) / 2.0), -rotation_degrees, 1.0)
    matrix[0, 2] += bbox_w / 2.0 - width / 2.0
    matrix[1, 2] += bbox_h / 2.0 - height / 2.0
    return cv2.warpAffine(
        rgba,
        matrix,
        (bbox_w, bbox_h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0, 0),
    )


def _extract_rect(buffer: np.ndarray, rect: CropRect) -> np.ndarray:
    """Copy rect out of buffer; parts falling outside stay transparent."""
    out_w, out_h = max(1, int(rect.width)), max(1, int(rect.height))
    out = np.zeros((out_h, out_w, 4), dtype=np.uint8)
    buf_h, buf_w = buffer.shape[:2]

    x0, y0 = int(rect.x), int(rect.y)
    src_x0, src_y0 = max(0, x0), max(0, y0)
    src_x1, src_y1 = min(buf_w, x0 + out_w), min(buf_h, y0 + out_h)
    if src_x1 <= src_x0 or src_y1 <= src_y0:
        return out
    dst_x0, dst_y0 = src_x0 - x0, src_y0 - y0
    out[dst_y0 : dst_y0 + (src_y1 - src_y0), dst_x0 : dst_x0 + (src_x1 - src_x0)] = buffer[
        src_y0:src_y1, src_x0:src_x1
    ]
    return out


def _brightness_contrast(rgba: np.ndarray, brightness_pct: float, contrast_pct: float) -> np.ndarray:
    """CSS-style brightness() then contrast(); 100 is identity for both."""
    if brightness_pct == 100 and contrast_pct == 100:
        return rgba
    rgb = rgba[..., :3].astype(np.float32)
    rgb = rgb * (brightness_pct / 100.0)
    rgb = (rgb - 127.5) * (contrast_pct / 100.0) + 127.5
    out = rgba.copy()
    out[..., :3] = np.clip(np.floor(rgb + 0.5), 0, 255).astype(np.uint8)
    return out


def crop_rotate_adjust(
    image: Image.Image,
    crop_rect: CropRect,
    rotation_degrees: float = 0.0,
    brightness_pct: float = 100.0,
    contrast_pct: float = 100.0,
) -> Image.Image:
    """
    Rotate about the centre into the rotated bounding box, cut `crop_rect`
    (bounding-box coordinates) out of it, then colour-correct the cut.

    The result is always crop_rect.width x crop_rect.height. Out-of-range
    rects are clamped rather than rejected.
    """
    try:
        rgba = np.array(image.convert("RGBA"), dtype=np.uint8)
        rotated = _rotate_into_bbox(rgba, rotation_degrees)
        cut = _extract_rect(rotated, crop_rect)
        adjusted = _brightness_contrast(cut, brightness_pct, contrast_pct)
        return Image.fromarray(adjusted, mode="RGBA")
    except Exception as exc:  # noqa: BLE001
        logger.warning("crop_rotate_adjust: failed (%s); returning source unchanged", exc)
        return image.copy()


def crop_rotate_adjust_bytes(
    image_bytes: bytes,
    crop_rect: CropRect,
    rotation_degrees: float = 0.0,
    brightness_pct: float = 100.0,
    contrast_pct: float = 100.0,
) -> bytes:
    """Editor export path: decode, transform, encode as JPEG."""
    try:
        image = decode_image(image_bytes)
    except ValueError:
        logger.warning("crop_rotate_adjust: could not decode input, passing through")
        return image_bytes
    out = crop_rotate_adjust(image, crop_rect, rotation_degrees, brightness_pct, contrast_pct)
    return encode_image(out, fmt="JPEG")
