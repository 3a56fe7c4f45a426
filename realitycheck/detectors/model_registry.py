import math
import logging
from typing import Optional, Protocol, Any

logger = logging.getLogger(__name__)


class ModelRunner(Protocol):
    async def run(self, pixels: Any, width: int, height: int) -> float:
        ...


class ModelRegistry:
    """
    Holds at most one local inference runner.

    Owned by the composition root and handed to detectors. Scores are clamped
    here rather than by runners; a failing runner yields None so callers can
    tell "could not score" apart from a confident 0.
    """

    def __init__(self, runner: Optional[ModelRunner] = None):
        self._runner = runner

    def register_model(self, runner: ModelRunner):
        if self._runner is not None and self._runner is not runner:
            logger.info(f"[MODEL] Replacing runner {type(self._runner).__name__} with {type(runner).__name__}")
        self._runner = runner

    def clear(self):
        self._runner = None

    def get(self) -> Optional[ModelRunner]:
        return self._runner

    def is_model_available(self) -> bool:
        return self._runner is not None

    async def run_model_score(self, pixels: Any, width: int, height: int) -> Optional[float]:
        # A replacement during the await completes with the runner captured here.
        runner = self._runner
        if runner is None:
            return None
        try:
            raw = await runner.run(pixels, width, height)
            score = float(raw)
        except Exception as e:
            logger.warning(f"[MODEL] Runner {type(runner).__name__} failed: {e}")
            return None
        if math.isnan(score):
            logger.warning(f"[MODEL] Runner {type(runner).__name__} returned NaN")
            return None
        return max(0.0, min(1.0, score))
