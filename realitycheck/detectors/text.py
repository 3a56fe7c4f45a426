import logging
from typing import Optional

from realitycheck.detectors.utils import log_decision
from realitycheck.schemas import DetectionResult, DetectorOptions

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5


class TextDetector:
    """
    Neutral placeholder: text carries no local signal yet, so every input gets
    the same uncertain verdict. Callers filter out short snippets before this.
    """

    content_type = "text"

    async def detect(self, content: str, options: Optional[DetectorOptions] = None) -> DetectionResult:
        result = DetectionResult.from_score(
            "text",
            NEUTRAL_SCORE,
            threshold=1.0,
            is_ai_generated=False,
            source="local",
            decision_stage="initial",
            details="uncertain: no local text heuristics available",
        )
        return log_decision(result, "local")
