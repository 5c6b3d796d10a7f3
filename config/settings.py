"""Configuration management for comparison thresholds, concurrency and rendering settings."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Page alignment
    page_similarity_threshold: float = Field(
        default=0.5,
        description="Minimum fingerprint similarity (0.0-1.0) for two pages to be considered the same page",
    )
    page_lookahead_window: int = Field(
        default=10,
        description="Number of pages searched ahead on each side when index-aligned pages do not match",
    )
    page_text_weight: float = Field(
        default=0.7,
        description="Weight of text similarity when blending text and visual page similarity",
    )

    # Text comparison
    default_text_method: str = Field(
        default="smart",
        description="Text comparison method: 'exact' (lines), 'smart'/'word' (words), 'character'",
    )
    text_lookahead_window: int = Field(
        default=10,
        description="Tokens searched ahead in each stream to resynchronise after a mismatch",
    )
    text_max_modified_span: int = Field(
        default=5,
        description="Maximum number of tokens collapsed into a single 'modified' span",
    )
    character_diff_max_cells: int = Field(
        default=4_000_000,
        description="Largest LCS table (len(a) * len(b)) allowed for character diffs before falling back to words",
    )
    text_min_magnitude: float = Field(
        default=0.0,
        description="Minimum magnitude for a text difference to be reported",
    )

    # Image comparison
    ssim_window_size: int = Field(default=8, description="SSIM window size in pixels (non-overlapping)")
    ssim_k1: float = Field(default=0.01, description="SSIM luminance stabilising constant factor")
    ssim_k2: float = Field(default=0.03, description="SSIM contrast stabilising constant factor")
    ssim_blend_weight: float = Field(
        default=0.7,
        description="Weight of the SSIM difference when blended with the pixel difference for mismatched sizes",
    )
    pixel_color_distance_threshold: float = Field(
        default=0.1,
        description="Normalised RGB distance above which a pixel counts as different",
    )
    median_blur_max_pixels: int = Field(
        default=1_000_000,
        description="Images larger than this skip the median denoise step of the perceptual hash",
    )
    hash_max_pixels: int = Field(
        default=5_000_000,
        description="Images larger than this are not hashed; hash similarity is reported as neutral 0.5",
    )
    rotation_match_threshold: float = Field(
        default=0.9,
        description="Hash similarity above which two images are considered the same image (possibly rotated)",
    )
    image_difference_threshold: float = Field(
        default=0.05,
        description="Minimum image difference score for a matched image to be reported as modified",
    )
    visual_diff_pixel_threshold: int = Field(
        default=30,
        description="Grayscale difference threshold for visual region detection (0-255)",
    )
    max_visual_regions: int = Field(
        default=20,
        description="Maximum number of visual difference regions reported per page",
    )

    # Font and style comparison
    font_similarity_threshold: float = Field(
        default=0.75,
        description="Matched/total font ratio below which a page is considered to have font differences",
    )
    font_size_change_threshold_pt: float = Field(
        default=1.0,
        description="Minimum font size difference in points to detect as change",
    )
    color_difference_threshold: int = Field(
        default=10,
        description="RGB color difference threshold for detecting color changes",
    )
    style_min_magnitude: float = Field(
        default=0.0,
        description="Minimum magnitude for a style difference to be reported",
    )

    # Rendering
    render_dpi: int = Field(default=150, description="DPI for page rendering")
    reduced_render_dpi: int = Field(default=72, description="DPI used by the first render fallback")

    # Concurrency, retry and timeouts
    max_workers: int = Field(default=4, description="Upper bound on page worker threads")
    batch_deadline_seconds: float = Field(
        default=300.0,
        description="Aggregate deadline for all page tasks of one comparison",
    )
    per_attempt_timeout_seconds: float = Field(
        default=60.0,
        description="Timeout for a single extraction attempt",
    )
    max_attempts: int = Field(default=3, description="Attempts per page before substituting a placeholder")
    retry_backoff_seconds: float = Field(
        default=0.05,
        description="Base delay before a retry; doubled on each further attempt",
    )

    # Sampling for large documents
    sampling_page_threshold: int = Field(
        default=100,
        description="Documents with more pages than this are sampled unless exhaustive processing is requested",
    )
    sampling_edge_pages: int = Field(default=5, description="Leading and trailing pages always compared when sampling")
    sampling_stride: int = Field(default=10, description="Every Nth page is compared when sampling")

    # Performance
    seconds_per_page_target: float = Field(default=3.0, description="Performance target: <3s per page")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "PDFCOMPARE_"
        extra = "ignore"


def get_settings() -> Settings:
    """Return a cached settings instance."""
    return _get_settings()


@lru_cache()
def _get_settings() -> Settings:
    return Settings()


settings = get_settings()
