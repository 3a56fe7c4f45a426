"""Detection pipeline estimating whether images, videos or text were machine-generated."""

from realitycheck.pipeline import DetectionPipeline, UnsupportedContentTypeError
from realitycheck.schemas import DetectionResult, DetectorOptions

__version__ = "0.4.0"

__all__ = ["DetectionPipeline", "UnsupportedContentTypeError", "DetectionResult", "DetectorOptions"]
