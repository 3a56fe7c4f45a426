from typing import Optional

from realitycheck.schemas import ExifSummary
from realitycheck.scoring_config import ScoringConfig

# Generator names that show up in the EXIF Software tag
AI_SOFTWARE_PATTERNS = [
    "stable diffusion",
    "dall-e",
    "dall·e",
    "midjourney",
    "novelai",
    "invokeai",
    "automatic1111",
    "comfyui",
    "diffusers",
    "firefly",
    "imagen",
]


def is_ai_software(software: Optional[str]) -> bool:
    s = (software or "").lower()
    return any(p in s for p in AI_SOFTWARE_PATTERNS)


def get_exif_ai_score(exif: Optional[ExifSummary]) -> float:
    """
    Provenance signal from EXIF (higher = more likely generated).
    Camera make/model is a human-origin signal and wins over everything else.
    Missing or uninformative metadata stays neutral.
    """
    if exif is None:
        return ScoringConfig.PROVENANCE["NEUTRAL"]

    if exif.has_camera_hardware:
        return ScoringConfig.PROVENANCE["CAMERA_HARDWARE"]

    if is_ai_software(exif.software):
        return ScoringConfig.PROVENANCE["AI_SOFTWARE"]

    return ScoringConfig.PROVENANCE["NEUTRAL"]


def describe_exif(exif: Optional[ExifSummary]) -> str:
    if exif is None:
        return "no EXIF"
    if exif.has_camera_hardware:
        return f"camera {exif.make or ''} {exif.model or ''}".strip()
    if exif.software:
        return f"software {exif.software}"
    return "EXIF without camera or software"
