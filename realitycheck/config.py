import os
import logging
from typing import Optional

from pydantic import BaseModel

from realitycheck.schemas import DetectorOptions, DetectionQuality

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_ENDPOINT = "https://api.realitycheck.ai/v1/classify"

_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    remote_enabled: bool = False
    detection_quality: DetectionQuality = "medium"
    remote_endpoint: str = DEFAULT_REMOTE_ENDPOINT
    remote_api_key: Optional[str] = None
    remote_timeout: float = 30.0
    cache_capacity: int = 500
    local_model: Optional[str] = None
    runpod_api_key: Optional[str] = None
    log_level: str = "INFO"

    def detector_options(self, **overrides) -> DetectorOptions:
        """Default per-call options for detectors built from these settings."""
        values = {
            "remote_enabled": self.remote_enabled,
            "detection_quality": self.detection_quality,
            "remote_endpoint": self.remote_endpoint,
            "remote_api_key": self.remote_api_key,
        }
        values.update(overrides)
        return DetectorOptions(**values)


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def get_settings() -> Settings:
    """Read settings from the environment (call load_dotenv() first to pick up .env)."""
    quality = os.getenv("REALITYCHECK_DETECTION_QUALITY", "medium").strip().lower()
    if quality not in ("low", "medium", "high"):
        logger.warning(f"[CONFIG] Unknown detection quality '{quality}', using medium")
        quality = "medium"

    return Settings(
        remote_enabled=_env_flag("REALITYCHECK_REMOTE_ENABLED"),
        detection_quality=quality,
        remote_endpoint=os.getenv("REALITYCHECK_REMOTE_ENDPOINT") or DEFAULT_REMOTE_ENDPOINT,
        remote_api_key=os.getenv("REALITYCHECK_REMOTE_API_KEY") or None,
        remote_timeout=float(os.getenv("REALITYCHECK_REMOTE_TIMEOUT", "30")),
        cache_capacity=int(os.getenv("REALITYCHECK_CACHE_CAPACITY", "500")),
        local_model=os.getenv("REALITYCHECK_LOCAL_MODEL") or None,
        runpod_api_key=os.getenv("RUNPOD_API_KEY") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
