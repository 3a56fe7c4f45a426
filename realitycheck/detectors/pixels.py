"""
Pixel statistics over small RGBA buffers.

Every function takes a uint8 array shaped (height, width, 4) as produced by
``to_rgba_pixels``; the alpha channel is ignored. Inputs are expected to be
down-sampled (64x64) so each call stays in the low milliseconds.
"""
import asyncio
import logging
import numpy as np
from typing import Optional

from realitycheck.schemas import PhotorealismResult, DetectionQuality
from realitycheck.scoring_config import ScoringConfig

logger = logging.getLogger(__name__)

PREFILTER_SIZE = ScoringConfig.PREFILTER["SIZE"]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _rgb(data: np.ndarray) -> np.ndarray:
    return np.asarray(data)[..., :3].astype(np.float64)


def _luminance_avg(data: np.ndarray) -> np.ndarray:
    """Unweighted channel mean, 0-255."""
    return _rgb(data).mean(axis=-1)


def _saturation(rgb01: np.ndarray) -> np.ndarray:
    """HSV saturation per pixel; black pixels have zero saturation."""
    mx = rgb01.max(axis=-1)
    mn = rgb01.min(axis=-1)
    sat = np.zeros_like(mx)
    nz = mx > 0
    sat[nz] = (mx[nz] - mn[nz]) / mx[nz]
    return sat


def is_empty(data: Optional[np.ndarray]) -> bool:
    return data is None or np.asarray(data).size == 0


def count_unique_colors(data: np.ndarray) -> int:
    """Distinct colors after quantizing each channel to 5 bits."""
    if is_empty(data):
        return 0
    q = (np.asarray(data)[..., :3].astype(np.uint32) >> 3) & 0x1F
    packed = (q[..., 0] << 10) | (q[..., 1] << 5) | q[..., 2]
    return int(np.unique(packed).size)


def compute_channel_entropy(data: np.ndarray, channel: int) -> float:
    """Shannon entropy (bits) of one channel over a 32-bin histogram."""
    if is_empty(data):
        return 0.0
    values = np.asarray(data)[..., channel].astype(np.uint8).ravel() >> 3
    hist = np.bincount(values, minlength=32).astype(np.float64)
    p = hist / float(values.size)
    p = p[p > 0]
    return float(-(p * np.log2(p)).sum())


def compute_edge_complexity(data: np.ndarray) -> float:
    """Mean first-order gradient magnitude of luminance (right and down neighbours)."""
    if is_empty(data):
        return 0.0
    lum = _luminance_avg(data)
    h, w = lum.shape
    if h < 2 or w < 2:
        return 0.0
    base = lum[:-1, :-1]
    gx = lum[:-1, 1:] - base
    gy = lum[1:, :-1] - base
    return float(np.sqrt(gx * gx + gy * gy).mean())


def compute_block_variance(data: np.ndarray, block: int = 4) -> float:
    """Mean luminance variance inside each block x block tile (edge tiles may be partial)."""
    if is_empty(data):
        return 0.0
    lum = _luminance_avg(data)
    h, w = lum.shape
    variances = []
    for by in range(0, h, block):
        for bx in range(0, w, block):
            tile = lum[by:by + block, bx:bx + block]
            if tile.size:
                variances.append(tile.var())
    return float(np.mean(variances)) if variances else 0.0


def compute_saturation_variance(data: np.ndarray) -> float:
    if is_empty(data):
        return 0.0
    sat = _saturation(_rgb(data) / 255.0)
    return float(sat.var())


def compute_visual_ai_score(data: Optional[np.ndarray]) -> float:
    """
    Stylistic score for generative output, 0-1 (higher = more likely AI):
      uniform saturation (vivid but low-variance colour)  x 0.70
      channel variance uniformity                         x 0.10
      mean luminance near mid-grey                        x 0.20
    Greyscale content has zero saturation and so no uniform-saturation credit.
    """
    if is_empty(data):
        return 0.0
    cfg = ScoringConfig.VISUAL

    rgb8 = _rgb(data).reshape(-1, 3)
    rgb01 = rgb8 / 255.0

    sat = _saturation(rgb01)
    mean_sat = float(sat.mean())
    sat_var = max(0.0, float(sat.var()))
    mean_lum = float((rgb01 @ np.array([0.299, 0.587, 0.114])).mean())

    channel_var = rgb8.var(axis=0)
    var_mean = float(channel_var.mean())
    if var_mean > 0:
        spread = float(np.abs(channel_var - var_mean).sum())
        channel_uniformity = _clamp(1 - spread / (3 * var_mean))
    else:
        channel_uniformity = 1.0

    raw_uniform_sat = max(0.0, mean_sat - sat_var * cfg["SAT_VARIANCE_PENALTY"])
    uniform_sat_score = _clamp((raw_uniform_sat - cfg["UNIFORM_SAT_OFFSET"]) / cfg["UNIFORM_SAT_RANGE"])

    lum_score = max(0.0, 1 - abs(mean_lum - cfg["LUMINANCE_CENTER"]) * cfg["LUMINANCE_FALLOFF"])

    return (
        uniform_sat_score * cfg["UNIFORM_SAT_WEIGHT"]
        + channel_uniformity * cfg["CHANNEL_UNIFORMITY_WEIGHT"]
        + lum_score * cfg["LUMINANCE_WEIGHT"]
    )


# ---- Photorealism pre-filter tiers (higher = more photorealistic) ----

def score_low_tier(data: np.ndarray) -> float:
    cfg = ScoringConfig.PREFILTER
    unique_colors = count_unique_colors(data)
    entropy = sum(compute_channel_entropy(data, c) for c in range(3)) / 3
    edges = compute_edge_complexity(data)

    color_score = _clamp((unique_colors - cfg["COLOR_OFFSET"]) / cfg["COLOR_RANGE"])
    entropy_score = _clamp((entropy - cfg["ENTROPY_OFFSET"]) / cfg["ENTROPY_RANGE"])
    edge_score = _clamp((edges - cfg["EDGE_OFFSET"]) / cfg["EDGE_RANGE"])

    return (
        color_score * cfg["COLOR_WEIGHT"]
        + entropy_score * cfg["ENTROPY_WEIGHT"]
        + edge_score * cfg["EDGE_WEIGHT"]
    )


def score_medium_tier(data: np.ndarray) -> float:
    cfg = ScoringConfig.PREFILTER
    base = score_low_tier(data)
    noise_score = _clamp((compute_block_variance(data) - cfg["NOISE_OFFSET"]) / cfg["NOISE_RANGE"])
    sat_score = _clamp((compute_saturation_variance(data) - cfg["SAT_VAR_OFFSET"]) / cfg["SAT_VAR_RANGE"])
    return base * cfg["BASE_WEIGHT"] + noise_score * cfg["NOISE_WEIGHT"] + sat_score * cfg["SATURATION_WEIGHT"]


def score_high_tier(data: np.ndarray, model_score: Optional[float] = None) -> float:
    """Blend with the model when it produced a score; otherwise exactly the medium tier."""
    medium = score_medium_tier(data)
    if model_score is None:
        return medium
    cfg = ScoringConfig.PREFILTER
    return medium * cfg["MEDIUM_BLEND"] + model_score * cfg["MODEL_BLEND"]


def evaluate_photorealism(
    data: Optional[np.ndarray],
    quality: DetectionQuality = "medium",
    model_score: Optional[float] = None,
) -> PhotorealismResult:
    """Synchronous pre-filter; no pixels means we cannot judge, so never skip."""
    if is_empty(data):
        return PhotorealismResult(is_photorealistic=True, score=0.5)

    if quality == "high":
        score = score_high_tier(data, model_score)
    elif quality == "medium":
        score = score_medium_tier(data)
    else:
        score = score_low_tier(data)

    return PhotorealismResult(
        is_photorealistic=score >= ScoringConfig.PREFILTER["SKIP_THRESHOLD"],
        score=score,
    )


async def run_photorealism_pre_filter(
    data: Optional[np.ndarray],
    quality: DetectionQuality = "medium",
    registry=None,
    model_score: Optional[float] = None,
) -> PhotorealismResult:
    """
    Async pre-filter. At high quality the registry's model is consulted unless a
    score was already computed; the statistics run in the default executor.
    """
    if is_empty(data):
        return PhotorealismResult(is_photorealistic=True, score=0.5)

    if quality == "high" and model_score is None and registry is not None and registry.is_model_available():
        h, w = np.asarray(data).shape[:2]
        model_score = await registry.run_model_score(data, w, h)

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, evaluate_photorealism, data, quality, model_score)
