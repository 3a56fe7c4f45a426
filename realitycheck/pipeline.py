import logging
from typing import Any, Dict, Optional, Protocol

from realitycheck.detectors.core import ImageDetector
from realitycheck.detectors.model_registry import ModelRegistry
from realitycheck.detectors.text import TextDetector
from realitycheck.detectors.video import VideoDetector
from realitycheck.schemas import DetectionResult, DetectorOptions

logger = logging.getLogger(__name__)


class UnsupportedContentTypeError(ValueError):
    pass


class Detector(Protocol):
    content_type: str

    async def detect(self, content: Any, options: DetectorOptions) -> DetectionResult:
        ...


class DetectionPipeline:
    """Routes content to the detector registered for its type. No scoring of its own."""

    def __init__(
        self,
        text_detector: Optional[Detector] = None,
        image_detector: Optional[Detector] = None,
        video_detector: Optional[Detector] = None,
        registry: Optional[ModelRegistry] = None,
        cache_capacity: int = 500,
    ):
        self.registry = registry or ModelRegistry()
        self.detectors: Dict[str, Detector] = {
            "text": text_detector or TextDetector(),
            "image": image_detector or ImageDetector(self.registry, cache_capacity),
            "video": video_detector or VideoDetector(self.registry, cache_capacity),
        }

    def register_detector(self, detector: Detector):
        """Swap in a detector for its content type."""
        content_type = getattr(detector, "content_type", None)
        if content_type not in self.detectors:
            raise UnsupportedContentTypeError(f"Unsupported content type: {content_type!r}")
        logger.info(f"[PIPELINE] Registered {type(detector).__name__} for {content_type}")
        self.detectors[content_type] = detector

    def get_detector(self, content_type: str) -> Detector:
        detector = self.detectors.get(content_type)
        if detector is None:
            raise UnsupportedContentTypeError(f"Unsupported content type: {content_type!r}")
        return detector

    async def analyze(self, content_type: str, content: Any, options: Optional[DetectorOptions] = None) -> DetectionResult:
        detector = self.get_detector(content_type)
        return await detector.detect(content, options or DetectorOptions())

    async def analyze_text(self, text: str, options: Optional[DetectorOptions] = None) -> DetectionResult:
        return await self.analyze("text", text, options)

    async def analyze_image(self, content: Any, options: Optional[DetectorOptions] = None) -> DetectionResult:
        return await self.analyze("image", content, options)

    async def analyze_video(self, content: Any, options: Optional[DetectorOptions] = None) -> DetectionResult:
        return await self.analyze("video", content, options)
