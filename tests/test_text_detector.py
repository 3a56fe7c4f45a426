import pytest

from realitycheck.detectors.text import TextDetector
from realitycheck.schemas import DetectorOptions


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "hello", "x" * 5000])
async def test_text_is_always_uncertain(text):
    result = await TextDetector().detect(text, DetectorOptions(remote_enabled=True))
    assert result.content_type == "text"
    assert result.score == 0.5
    assert result.is_ai_generated is False
    assert result.confidence == "medium"
    assert result.source == "local"
    assert result.details.startswith("uncertain")
