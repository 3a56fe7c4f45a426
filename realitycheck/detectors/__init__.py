from realitycheck.detectors.core import ImageDetector, ImageHandle
from realitycheck.detectors.model_registry import ModelRegistry
from realitycheck.detectors.text import TextDetector
from realitycheck.detectors.video import VideoDetector, VideoElement

__all__ = ["ImageDetector", "ImageHandle", "ModelRegistry", "TextDetector", "VideoDetector", "VideoElement"]
