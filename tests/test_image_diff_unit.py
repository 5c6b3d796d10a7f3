from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from comparison.errors import AlgorithmError
from comparison.image_diff import (
    compute_ssim,
    decode_image,
    difference_regions,
    hash_similarity,
    hash_to_hex,
    image_difference_score,
    perceptual_hash,
    rotation_invariant_similarity,
)


def _asymmetric_image(size: int = 64) -> np.ndarray:
    img = np.zeros((size, size, 3), dtype=np.uint8)
    img[: size // 2, : size // 4] = 255
    img[size - 8:, size - 24:size - 8] = (200, 40, 40)
    return img


def _noise_image(seed: int = 7, shape=(48, 64, 3)) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=shape, dtype=np.uint8)


def test_identical_images_have_zero_difference():
    img = _noise_image()

    assert image_difference_score(img, img.copy()) == pytest.approx(0.0, abs=1e-9)


def test_ssim_of_identical_grayscale_is_one():
    gray = _noise_image(shape=(32, 32))

    assert compute_ssim(gray, gray) == pytest.approx(1.0)


def test_ssim_rejects_shape_mismatch():
    with pytest.raises(AlgorithmError):
        compute_ssim(np.zeros((8, 8)), np.zeros((8, 16)))


def test_different_images_score_above_zero():
    score = image_difference_score(_noise_image(1), _noise_image(2))

    assert 0.0 < score <= 1.0


def test_different_sizes_are_compared():
    base = _noise_image(3, shape=(40, 40, 3))
    compare = np.array(Image.fromarray(base).resize((60, 50)))

    score = image_difference_score(base, compare)

    assert 0.0 <= score <= 1.0


def test_failure_reports_maximum_difference():
    assert image_difference_score(np.zeros((0, 0, 3), dtype=np.uint8), _noise_image()) == 1.0


def test_rotated_image_is_recognised():
    img = _asymmetric_image()

    similarity, rotation = rotation_invariant_similarity(img, np.rot90(img))

    assert similarity == pytest.approx(1.0)
    assert rotation == 90


def test_unrotated_image_reports_zero_rotation():
    img = _asymmetric_image()

    similarity, rotation = rotation_invariant_similarity(img, img.copy())

    assert similarity == pytest.approx(1.0)
    assert rotation == 0


def test_perceptual_hash_is_64_bits_and_stable():
    img = _asymmetric_image()

    value = perceptual_hash(img)

    assert value is not None
    assert 0 <= value < 2 ** 64
    assert perceptual_hash(img.copy()) == value
    assert len(hash_to_hex(value)) == 16


def test_oversized_image_has_no_hash(monkeypatch):
    from config.settings import settings

    monkeypatch.setattr(settings, "hash_max_pixels", 100)

    assert perceptual_hash(_asymmetric_image()) is None


def test_missing_hash_is_neutral():
    assert hash_similarity(None, 123) == 0.5
    assert hash_similarity(5, 5) == 1.0
    assert hash_similarity(0, 2 ** 64 - 1) == 0.0


def test_difference_regions_locate_change():
    base = np.full((100, 100, 3), 255, dtype=np.uint8)
    compare = base.copy()
    compare[20:40, 50:80] = 0

    regions = difference_regions(base, compare)

    assert len(regions) == 1
    region = regions[0]
    assert region.x == pytest.approx(50, abs=2)
    assert region.y == pytest.approx(20, abs=2)
    assert region.width == pytest.approx(30, abs=3)
    assert region.height == pytest.approx(20, abs=3)


def test_difference_regions_are_capped():
    base = np.full((100, 100), 255, dtype=np.uint8)
    compare = base.copy()
    for k in range(5):
        compare[5 + k * 18:15 + k * 18, 10:20] = 0

    regions = difference_regions(base, compare, max_regions=3)

    assert len(regions) == 3


def test_decode_image_round_trip_and_errors():
    buffer = io.BytesIO()
    Image.fromarray(_asymmetric_image()).save(buffer, format="PNG")

    decoded = decode_image(buffer.getvalue())

    assert decoded.shape[:2] == (64, 64)
    with pytest.raises(AlgorithmError):
        decode_image(b"not an image")
