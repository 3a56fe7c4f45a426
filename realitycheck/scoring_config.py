"""
Scoring weights and thresholds for the detectors.
These are empirically tuned; change them only together with the regression tests.
"""

class ScoringConfig:
    # --- URL / dimension heuristics (images) ---
    LOCAL = {
        "CDN_MATCH": 0.70,
        "POWER_OF_TWO": 0.20,
        "AI_ASPECT_RATIO": 0.10,
        "DIVISIBLE_BY_64": 0.10,
        "ASPECT_TOLERANCE": 0.02,
    }

    # Common generator aspect ratios (w / h)
    AI_ASPECT_RATIOS = (1.0, 4 / 3, 3 / 4, 16 / 9, 9 / 16, 3 / 2, 2 / 3)

    # --- Visual AI score ---
    VISUAL = {
        "UNIFORM_SAT_WEIGHT": 0.70,
        "CHANNEL_UNIFORMITY_WEIGHT": 0.10,
        "LUMINANCE_WEIGHT": 0.20,
        "SAT_VARIANCE_PENALTY": 3.0,
        "UNIFORM_SAT_OFFSET": 0.15,
        "UNIFORM_SAT_RANGE": 0.25,
        "LUMINANCE_CENTER": 0.50,
        "LUMINANCE_FALLOFF": 3.2,
    }

    # Visual score discount per quality tier (low tier ignores pixels)
    VISUAL_WEIGHT = {
        "medium": 0.75,
        "high": 0.85,
    }

    # --- Photorealism pre-filter ---
    PREFILTER = {
        "SIZE": 64,
        "SKIP_THRESHOLD": 0.20,
        # low tier
        "COLOR_WEIGHT": 0.40,
        "ENTROPY_WEIGHT": 0.40,
        "EDGE_WEIGHT": 0.20,
        "COLOR_OFFSET": 50.0,
        "COLOR_RANGE": 350.0,
        "ENTROPY_OFFSET": 2.0,
        "ENTROPY_RANGE": 2.5,
        "EDGE_OFFSET": 3.0,
        "EDGE_RANGE": 17.0,
        # medium tier
        "BASE_WEIGHT": 0.70,
        "NOISE_WEIGHT": 0.15,
        "SATURATION_WEIGHT": 0.15,
        "NOISE_OFFSET": 20.0,
        "NOISE_RANGE": 180.0,
        "SAT_VAR_OFFSET": 0.03,
        "SAT_VAR_RANGE": 0.03,
        # high tier
        "MEDIUM_BLEND": 0.30,
        "MODEL_BLEND": 0.70,
    }

    # --- Provenance (EXIF / C2PA) ---
    PROVENANCE = {
        "CAMERA_HARDWARE": 0.0,
        "AI_SOFTWARE": 0.90,
        "NEUTRAL": 0.25,
        "BLEND_WEIGHT": 0.15,
        "C2PA_PRESENT": -0.30,
    }

    # --- Remote escalation ---
    REMOTE = {
        "LOCAL_BLEND": 0.30,
        "REMOTE_BLEND": 0.70,
        "CONFIDENT_EXTREME": 0.95,
        "IMAGE_RATE_PER_MIN": 60,
        "PAYLOAD_MAX_DIM": 128,
        "PAYLOAD_JPEG_QUALITY": 70,
    }

    # --- Video ---
    VIDEO = {
        "URL_MATCH": 0.70,
        "URL_LOCK_SCORE": 0.95,
        "FRAME_COUNT": 5,
        "MIN_FRAME_SPACING_S": 0.25,
        "FRAME_SIZE": 64,
        "STATIC_DIFF": 3.0,
        "STATIC_SCORE": 0.25,
        "DIFF_VARIANCE_SCALE": 500.0,
        "INCONSISTENCY_MAX": 0.25,
        "TEMPORAL_MAX": 0.30,
        "VISUAL_WEIGHT": 0.35,
        "COMPOSITE_LOCK": 0.75,
        "AI_LOCK_SCORE": 0.95,
        "HUMAN_LOCK_SCORE": 0.05,
        "MODEL_AI_EXTREME": 0.75,
        "MODEL_HUMAN_EXTREME": 0.25,
        "MODEL_BLEND": 0.40,
        "COMPOSITE_BLEND": 0.60,
        "BLEND_CAP": 0.75,
        "LOW_QUALITY_MAX_DIM": 192,
    }

    # Remote calls per minute for video, by quality tier
    VIDEO_RATE_PER_MIN = {
        "low": 5,
        "medium": 15,
        "high": 30,
    }

    # --- Decision thresholds ---
    THRESHOLDS = {
        "IMAGE_LOCAL": 0.25,
        "VIDEO_LOCAL": 0.45,
        "REMOTE": 0.35,
        # Confidence bands
        "CONFIDENCE_LOW": 0.40,
        "CONFIDENCE_HIGH": 0.70,
    }
