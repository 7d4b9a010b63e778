"""Post-processing for generated images: luminance-keyed background removal."""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
from PIL import Image

from .preprocessing import decode_image, encode_image

logger = logging.getLogger(__name__)


# ITU-R BT.601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)

# Tolerance applied when a batch asks for transparent output.
DEFAULT_TOLERANCE = 12.0


def luminance_thresholds(tolerance: float) -> Tuple[float, float]:
    """(low, high) edges of the soft band; at or above high is fully keyed out."""
    return 255.0 - 1.5 * tolerance, 255.0 - 0.5 * tolerance


def _perceived_luminance(rgba: np.ndarray) -> np.ndarray:
    lum = rgba[..., :3].astype(np.float64) @ LUMA_WEIGHTS
    # weights sum to 1 only up to float error; keep pure white at exactly 255
    return np.round(lum, 6)


def _key_alpha(rgba: np.ndarray, tolerance: float) -> np.ndarray:
    """Return the new alpha channel for a luminance key."""
    low, high = luminance_thresholds(tolerance)
    lum = _perceived_luminance(rgba)
    alpha = rgba[..., 3].astype(np.float64)

    out = alpha.copy()
    band = (lum > low) & (lum < high)
    if np.any(band):
        factor = (lum[band] - low) / (high - low)
        # round half up, matching Math.round
        out[band] = np.floor(alpha[band] * (1.0 - factor) + 0.5)
    out[lum >= high] = 0.0
    return np.clip(out, 0, 255).astype(np.uint8)


def remove_background_by_luminance(image: Image.Image, tolerance: float = DEFAULT_TOLERANCE) -> Image.Image:
    """
    Key out near-white pixels with a soft alpha ramp.

    Pixels at or above the high threshold become transparent, pixels inside
    the band fade proportionally, darker pixels keep their alpha. Returns a
    new RGBA image; on failure the input is returned as an RGBA copy.
    """
    try:
        rgba = np.array(image.convert("RGBA"), dtype=np.uint8)
        alpha = _key_alpha(rgba, float(tolerance))
    except Exception as exc:  # noqa: BLE001
        logger.warning("remove_background: failed (%s); returning source unchanged", exc)
        return image.convert("RGBA")

    rgba = rgba.copy()
    rgba[..., 3] = alpha
    logger.debug(
        "remove_background: tolerance=%.1f transparent=%.2f%%",
        tolerance,
        100.0 * float(np.mean(alpha == 0)) if alpha.size else 0.0,
    )
    return Image.fromarray(rgba, mode="RGBA")


def remove_background_bytes(image_bytes: bytes, tolerance: float = DEFAULT_TOLERANCE) -> bytes:
    """Bytes variant; always emits PNG so transparency survives."""
    try:
        image = decode_image(image_bytes)
    except ValueError:
        logger.warning("remove_background: could not decode input, passing through")
        return image_bytes
    return encode_image(remove_background_by_luminance(image, tolerance), fmt="PNG")
