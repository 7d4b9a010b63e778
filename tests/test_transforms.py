from io import BytesIO

import numpy as np
from PIL import Image
import pytest

from genbatch_service.postprocessing import (
    luminance_thresholds,
    remove_background_by_luminance,
    remove_background_bytes,
)
from genbatch_service.preprocessing import (
    CropRect,
    crop_rotate_adjust,
    crop_rotate_adjust_bytes,
    encode_image,
    resize_and_reencode,
    resize_and_reencode_image,
    rotated_bounding_box,
)


def rgba_image(array):
    return Image.fromarray(np.asarray(array, dtype=np.uint8), mode="RGBA")


def png_bytes(size, color=(120, 60, 30, 255)):
    return encode_image(Image.new("RGBA", size, color), fmt="PNG")


# --- background removal ---------------------------------------------------


def test_thresholds():
    assert luminance_thresholds(20) == (225.0, 245.0)


def test_white_keyed_out_dark_kept():
    img = rgba_image([[[255, 255, 255, 255], [0, 0, 0, 255], [100, 150, 50, 200]]])
    out = np.array(remove_background_by_luminance(img, tolerance=20))
    assert out[0, 0, 3] == 0
    assert out[0, 1, 3] == 255
    assert out[0, 2, 3] == 200
    # colour channels are untouched
    assert out[0, 2, :3].tolist() == [100, 150, 50]


def test_soft_edge_band():
    # L = 230 with tolerance 20 -> factor 0.25 -> 255 * 0.75 = 191.25
    img = rgba_image([[[230, 230, 230, 255]]])
    out = np.array(remove_background_by_luminance(img, tolerance=20))
    assert out[0, 0, 3] == 191


def test_zero_tolerance_only_pure_white():
    img = rgba_image([[[255, 255, 255, 255], [254, 254, 254, 255]]])
    out = np.array(remove_background_by_luminance(img, tolerance=0))
    assert out[0, 0, 3] == 0
    assert out[0, 1, 3] == 255


@pytest.mark.parametrize("tolerance", [0, 5, 12, 20, 60, 170])
def test_transparent_pixels_stay_transparent(rng, tolerance):
    pixels = rng.integers(0, 256, size=(6, 5, 4), dtype=np.uint8)
    pixels[..., 3] = 0
    out = np.array(remove_background_by_luminance(rgba_image(pixels), tolerance))
    assert np.all(out[..., 3] == 0)


def test_removal_does_not_mutate_input():
    img = rgba_image([[[255, 255, 255, 255]]])
    out = remove_background_by_luminance(img, 12)
    assert out is not img
    assert img.getpixel((0, 0))[3] == 255


def test_remove_background_bytes_emits_png_and_passes_through_garbage():
    out = remove_background_bytes(png_bytes((3, 3), (255, 255, 255, 255)))
    decoded = Image.open(BytesIO(out))
    assert decoded.format == "PNG"
    assert decoded.mode == "RGBA"
    assert remove_background_bytes(b"not an image") == b"not an image"


# --- resize ----------------------------------------------------------------


@pytest.mark.parametrize(
    "size,bounds,expected",
    [
        ((2000, 1000), (1024, 1024), (1024, 512)),
        ((1000, 2000), (800, 800), (400, 800)),
        ((500, 300), (1024, 1024), (500, 300)),
        ((800, 700), (1000, 500), (571, 500)),
    ],
)
def test_resize_dimensions(size, bounds, expected):
    out = resize_and_reencode(png_bytes(size), bounds[0], bounds[1], 0.7)
    decoded = Image.open(BytesIO(out))
    assert decoded.format == "JPEG"
    assert decoded.size == expected
    assert decoded.size[0] <= size[0] and decoded.size[1] <= size[1]


def test_resize_quality_is_clamped():
    out = resize_and_reencode(png_bytes((40, 20)), 16, 16, quality=7.5)
    assert Image.open(BytesIO(out)).size == (16, 8)
    out = resize_and_reencode(png_bytes((40, 20)), 16, 16, quality=-3)
    assert Image.open(BytesIO(out)).size == (16, 8)


def test_resize_undecodable_returns_original():
    assert resize_and_reencode(b"\x00\x01garbage", 10, 10) == b"\x00\x01garbage"


def test_resize_image_variant_returns_rgba_raster():
    out = resize_and_reencode_image(Image.new("RGB", (300, 100), (1, 2, 3)), 150, 150)
    assert out.size == (150, 50)
    assert out.mode == "RGBA"


# --- crop / rotate / adjust --------------------------------------------------


def test_identity_transform(rng):
    pixels = rng.integers(0, 256, size=(5, 7, 4), dtype=np.uint8)
    out = crop_rotate_adjust(rgba_image(pixels), CropRect(0, 0, 7, 5), 0, 100, 100)
    assert np.array_equal(np.array(out), pixels)


def test_bounding_box():
    assert rotated_bounding_box(4, 2, 0) == (4, 2)
    assert rotated_bounding_box(4, 2, 90) == (2, 4)
    assert rotated_bounding_box(10, 10, 45) == (14, 14)


def test_quarter_turn_is_clockwise(rng):
    pixels = rng.integers(0, 256, size=(2, 4, 4), dtype=np.uint8)
    out = crop_rotate_adjust(rgba_image(pixels), CropRect(0, 0, 2, 4), 90)
    assert np.array_equal(np.array(out), np.rot90(pixels, k=-1))


def test_arbitrary_rotation_fills_corners_transparent():
    img = Image.new("RGBA", (10, 10), (200, 100, 50, 255))
    out = np.array(crop_rotate_adjust(img, CropRect(0, 0, 14, 14), 45))
    assert out.shape == (14, 14, 4)
    assert out[0, 0, 3] == 0
    assert out[7, 7, 3] == 255


def test_output_matches_crop_rect_and_clamps_out_of_range():
    img = Image.new("RGBA", (4, 4), (10, 20, 30, 255))
    out = np.array(crop_rotate_adjust(img, CropRect(2, 2, 5, 3)))
    assert out.shape == (3, 5, 4)
    assert out[0, 0].tolist() == [10, 20, 30, 255]
    assert out[0, 4, 3] == 0
    assert out[2, 1, 3] == 0


def test_brightness_and_contrast():
    img = Image.new("RGBA", (2, 2), (200, 150, 100, 255))
    bright = np.array(crop_rotate_adjust(img, CropRect(0, 0, 2, 2), brightness_pct=50))
    assert bright[0, 0].tolist() == [100, 75, 50, 255]
    contrast = np.array(crop_rotate_adjust(img, CropRect(0, 0, 2, 2), contrast_pct=200))
    # (v - 127.5) * 2 + 127.5
    assert contrast[0, 0].tolist() == [255, 173, 73, 255]


def test_adjustment_only_touches_crop():
    img = Image.new("RGBA", (6, 6), (100, 100, 100, 255))
    out = crop_rotate_adjust(img, CropRect(1, 1, 2, 2), brightness_pct=200)
    assert out.size == (2, 2)
    assert img.getpixel((0, 0)) == (100, 100, 100, 255)


def test_crop_bytes_passthrough_on_garbage():
    assert crop_rotate_adjust_bytes(b"nope", CropRect(0, 0, 1, 1)) == b"nope"
    out = crop_rotate_adjust_bytes(png_bytes((8, 8)), CropRect(0, 0, 4, 4), 0, 120, 90)
    assert Image.open(BytesIO(out)).size == (4, 4)
