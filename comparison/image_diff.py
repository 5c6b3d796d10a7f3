"""Raster image similarity: windowed SSIM, perceptual hashing and change regions."""
from __future__ import annotations

import io
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image

from comparison.errors import AlgorithmError
from config.settings import settings
from utils.logging import logger

ImageLike = Union[np.ndarray, Image.Image]

NEUTRAL_HASH_SIMILARITY = 0.5
_HASH_BITS = 64
_DYNAMIC_RANGE = 255.0


@dataclass(frozen=True)
class DifferenceRegion:
    """Changed area in pixel coordinates of the base image."""

    x: int
    y: int
    width: int
    height: int
    score: float


# =============================================================================
# Conversion helpers
# =============================================================================

def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes (PNG, JPEG, ...) into an RGB array."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return np.asarray(img.convert("RGB"))
    except Exception as exc:
        raise AlgorithmError(f"Cannot decode image data ({len(data)} bytes): {exc}") from exc


def to_array(image: ImageLike) -> np.ndarray:
    """Return a uint8 array that is either HxW (gray) or HxWx3 (RGB)."""
    if isinstance(image, Image.Image):
        mode = "L" if image.mode in ("1", "L") else "RGB"
        return np.asarray(image.convert(mode))

    arr = np.asarray(image)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.ndim == 3 and arr.shape[2] == 1:
        arr = arr[:, :, 0]
    elif arr.ndim == 3 and arr.shape[2] == 4:
        arr = arr[:, :, :3]
    if arr.ndim not in (2, 3):
        raise AlgorithmError(f"Unsupported image shape {arr.shape}")
    return arr


def to_grayscale(arr: np.ndarray) -> np.ndarray:
    if arr.ndim == 2:
        return arr
    return cv2.cvtColor(np.ascontiguousarray(arr), cv2.COLOR_RGB2GRAY)


def to_rgb(arr: np.ndarray) -> np.ndarray:
    if arr.ndim == 3:
        return arr
    return np.stack([arr, arr, arr], axis=2)


# =============================================================================
# SSIM and pixel distance
# =============================================================================

def _windows(gray: np.ndarray, window: int) -> np.ndarray:
    """Non-overlapping window x window blocks as rows; a too-small image is one block."""
    h, w = gray.shape
    if h < window or w < window:
        return gray.reshape(1, -1)
    hh, ww = (h // window) * window, (w // window) * window
    cropped = gray[:hh, :ww]
    blocks = cropped.reshape(hh // window, window, ww // window, window).swapaxes(1, 2)
    return blocks.reshape(-1, window * window)


def compute_ssim(
    gray_a: np.ndarray,
    gray_b: np.ndarray,
    window: Optional[int] = None,
    k1: Optional[float] = None,
    k2: Optional[float] = None,
) -> float:
    """
    Mean SSIM over non-overlapping windows of two equally sized grayscale images.

    Returns:
        Similarity in [-1, 1]; 1 means identical
    """
    window = window or settings.ssim_window_size
    k1 = settings.ssim_k1 if k1 is None else k1
    k2 = settings.ssim_k2 if k2 is None else k2
    if gray_a.shape != gray_b.shape:
        raise AlgorithmError(f"SSIM needs equal shapes, got {gray_a.shape} and {gray_b.shape}")

    c1 = (k1 * _DYNAMIC_RANGE) ** 2
    c2 = (k2 * _DYNAMIC_RANGE) ** 2

    a = _windows(gray_a.astype(np.float64), window)
    b = _windows(gray_b.astype(np.float64), window)
    n = a.shape[1]
    ddof = 1 if n > 1 else 0

    mu_a = a.mean(axis=1)
    mu_b = b.mean(axis=1)
    var_a = a.var(axis=1, ddof=ddof)
    var_b = b.var(axis=1, ddof=ddof)
    cov = ((a - mu_a[:, None]) * (b - mu_b[:, None])).sum(axis=1) / (n - ddof)

    numerator = (2 * mu_a * mu_b + c1) * (2 * cov + c2)
    denominator = (mu_a ** 2 + mu_b ** 2 + c1) * (var_a + var_b + c2)
    ssim = float(np.mean(numerator / denominator))
    if not math.isfinite(ssim):
        raise AlgorithmError("SSIM produced a non-finite value")
    return ssim


def pixel_difference(
    arr_a: np.ndarray,
    arr_b: np.ndarray,
    threshold: Optional[float] = None,
) -> float:
    """Share of overlapping pixels whose normalised RGB distance exceeds ``threshold``."""
    threshold = settings.pixel_color_distance_threshold if threshold is None else threshold
    h = min(arr_a.shape[0], arr_b.shape[0])
    w = min(arr_a.shape[1], arr_b.shape[1])
    if h == 0 or w == 0:
        return 1.0

    a = to_rgb(arr_a)[:h, :w].astype(np.float32)
    b = to_rgb(arr_b)[:h, :w].astype(np.float32)
    distance = np.sqrt(np.sum((a - b) ** 2, axis=2)) / _DYNAMIC_RANGE / math.sqrt(3.0)
    return float(np.count_nonzero(distance > threshold)) / float(h * w)


def image_difference_score(base: ImageLike, compare: ImageLike) -> float:
    """
    Difference between two images in [0, 1]; 0 means identical.

    SSIM similarity ``s`` maps to ``1 - (s + 1) / 2``. For images of different size
    the compare image is resized for SSIM and the result is blended with the
    pixel distance ratio over the overlapping area. Any failure returns 1.0.
    """
    try:
        arr_a = to_array(base)
        arr_b = to_array(compare)
        if arr_a.size == 0 or arr_b.size == 0:
            raise AlgorithmError("Empty image")

        gray_a = to_grayscale(arr_a)
        gray_b = to_grayscale(arr_b)
        same_size = gray_a.shape == gray_b.shape
        if not same_size:
            gray_b = cv2.resize(gray_b, (gray_a.shape[1], gray_a.shape[0]), interpolation=cv2.INTER_AREA)

        similarity = compute_ssim(gray_a, gray_b)
        difference = 1.0 - (similarity + 1.0) / 2.0
        if not same_size:
            weight = settings.ssim_blend_weight
            difference = weight * difference + (1.0 - weight) * pixel_difference(arr_a, arr_b)
        return max(0.0, min(1.0, difference))
    except Exception as exc:
        logger.warning("Image difference failed, reporting maximum difference: %s", exc)
        return 1.0


# =============================================================================
# Perceptual hash
# =============================================================================

def perceptual_hash(image: ImageLike) -> Optional[int]:
    """
    64-bit average hash, most significant bit first.

    32x32 resize, grayscale, light median denoise, 8x8 downscale, then one bit
    per cell set when the cell is brighter than the 8x8 mean. Returns None for
    images above ``hash_max_pixels``.
    """
    arr = to_array(image)
    pixels = arr.shape[0] * arr.shape[1]
    if pixels == 0:
        raise AlgorithmError("Cannot hash an empty image")
    if pixels > settings.hash_max_pixels:
        logger.debug("Skipping perceptual hash for %d pixel image", pixels)
        return None

    small = cv2.resize(np.ascontiguousarray(arr), (32, 32), interpolation=cv2.INTER_AREA)
    gray = to_grayscale(small)
    if pixels <= settings.median_blur_max_pixels:
        gray = cv2.medianBlur(gray, 3)
    cells = cv2.resize(gray, (8, 8), interpolation=cv2.INTER_AREA).astype(np.float64)
    mean = cells.mean()

    value = 0
    for bit in (cells > mean).flatten():
        value = (value << 1) | int(bit)
    return value


def hash_to_hex(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:016x}"


def hash_similarity(hash_a: Optional[int], hash_b: Optional[int]) -> float:
    """1 - hamming/64; a missing hash gives the neutral 0.5."""
    if hash_a is None or hash_b is None:
        return NEUTRAL_HASH_SIMILARITY
    distance = bin(hash_a ^ hash_b).count("1")
    return 1.0 - distance / float(_HASH_BITS)


def rotation_invariant_similarity(
    base: ImageLike,
    compare: ImageLike,
    base_hash: Optional[int] = None,
) -> Tuple[float, int]:
    """
    Best hash similarity over the compare image rotated 0/90/180/270 degrees clockwise.

    Returns:
        (similarity, rotation_degrees)
    """
    try:
        if base_hash is None:
            base_hash = perceptual_hash(base)
        if base_hash is None:
            return NEUTRAL_HASH_SIMILARITY, 0

        arr_b = to_array(compare)
        best_similarity, best_rotation = -1.0, 0
        for quarter_turns in range(4):
            rotated = np.rot90(arr_b, k=-quarter_turns)
            similarity = hash_similarity(base_hash, perceptual_hash(rotated))
            if similarity > best_similarity:
                best_similarity, best_rotation = similarity, quarter_turns * 90
        return best_similarity, best_rotation
    except Exception as exc:
        logger.warning("Rotation-invariant hash comparison failed: %s", exc)
        return 0.0, 0


# =============================================================================
# Spatial difference regions
# =============================================================================

def difference_regions(
    base: ImageLike,
    compare: ImageLike,
    threshold: Optional[int] = None,
    max_regions: Optional[int] = None,
) -> List[DifferenceRegion]:
    """
    Bounding boxes of changed areas between two renderings of a page.

    The compare image is resized to the base size, the absolute grayscale
    difference is thresholded and cleaned with a morphological close/open, and
    external contours become regions (largest first).
    """
    threshold = settings.visual_diff_pixel_threshold if threshold is None else threshold
    max_regions = settings.max_visual_regions if max_regions is None else max_regions

    try:
        gray_a = to_grayscale(to_array(base))
        gray_b = to_grayscale(to_array(compare))
        if gray_a.size == 0 or gray_b.size == 0:
            raise AlgorithmError("Empty image")
        if gray_a.shape != gray_b.shape:
            gray_b = cv2.resize(gray_b, (gray_a.shape[1], gray_a.shape[0]), interpolation=cv2.INTER_AREA)

        diff = cv2.absdiff(gray_a, gray_b)
        _, mask = cv2.threshold(diff, threshold, 255, cv2.THRESH_BINARY)

        kernel = np.ones((3, 3), np.uint8)
        mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel)
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel)

        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    except Exception as exc:
        logger.warning("Difference region detection failed, reporting the whole image: %s", exc)
        width, height = _image_size(base)
        return [DifferenceRegion(0, 0, width, height, 1.0)]

    regions: List[DifferenceRegion] = []
    for contour in contours:
        x, y, w, h = cv2.boundingRect(contour)
        if w == 0 or h == 0:
            continue
        changed = float(np.count_nonzero(mask[y:y + h, x:x + w])) / float(w * h)
        regions.append(DifferenceRegion(int(x), int(y), int(w), int(h), changed))

    regions.sort(key=lambda r: r.width * r.height, reverse=True)
    if len(regions) > max_regions:
        logger.debug("Keeping %d of %d difference regions", max_regions, len(regions))
        regions = regions[:max_regions]
    return regions


def _image_size(image: ImageLike) -> Tuple[int, int]:
    if isinstance(image, Image.Image):
        width, height = image.size
    else:
        shape = np.shape(image)
        height, width = (shape[0], shape[1]) if len(shape) >= 2 else (1, 1)
    return max(1, int(width)), max(1, int(height))
