import pytest

from realitycheck import DetectionPipeline, UnsupportedContentTypeError
from realitycheck.config import get_settings
from realitycheck.detectors.core import ImageDetector
from realitycheck.detectors.model_registry import ModelRegistry
from realitycheck.schemas import DetectionResult, DetectorOptions


class StubDetector:
    content_type = "image"

    def __init__(self):
        self.calls = []

    async def detect(self, content, options):
        self.calls.append((content, options))
        return DetectionResult.from_score("image", 0.99, 0.25, details="stub")


@pytest.mark.asyncio
async def test_text_routes_to_neutral_detector():
    result = await DetectionPipeline().analyze_text("Some paragraph of prose.")
    assert result.content_type == "text"
    assert result.score == 0.5


@pytest.mark.asyncio
async def test_image_routes_to_image_detector():
    result = await DetectionPipeline().analyze_image("https://cdn.midjourney.com/x/grid.png")
    assert result.content_type == "image"
    assert result.is_ai_generated
    assert result.score >= 0.7


@pytest.mark.asyncio
async def test_video_routes_to_video_detector():
    result = await DetectionPipeline().analyze("video", "https://cdn.runwayml.com/gen3/clip.mp4")
    assert result.content_type == "video"
    assert result.score == pytest.approx(0.95)


@pytest.mark.asyncio
async def test_register_detector_swaps_implementation():
    pipeline = DetectionPipeline()
    stub = StubDetector()
    pipeline.register_detector(stub)

    options = DetectorOptions(detection_quality="low")
    result = await pipeline.analyze_image("anything", options)

    assert result.details == "stub"
    assert stub.calls == [("anything", options)]


@pytest.mark.asyncio
async def test_default_options_are_supplied():
    pipeline = DetectionPipeline()
    stub = StubDetector()
    pipeline.register_detector(stub)
    await pipeline.analyze_image("anything")
    assert stub.calls[0][1] == DetectorOptions()


@pytest.mark.asyncio
async def test_unknown_content_type_is_rejected():
    pipeline = DetectionPipeline()
    with pytest.raises(UnsupportedContentTypeError):
        await pipeline.analyze("audio", b"RIFF")

    class AudioDetector:
        content_type = "audio"

    with pytest.raises(UnsupportedContentTypeError):
        pipeline.register_detector(AudioDetector())


def test_detectors_share_the_registry():
    registry = ModelRegistry()
    pipeline = DetectionPipeline(registry=registry)
    assert pipeline.get_detector("image").registry is registry
    assert pipeline.get_detector("video").registry is registry


def test_custom_detector_in_constructor():
    image_detector = ImageDetector(cache_capacity=3)
    pipeline = DetectionPipeline(image_detector=image_detector)
    assert pipeline.get_detector("image") is image_detector


# --- settings ---

def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("REALITYCHECK_REMOTE_ENABLED", "true")
    monkeypatch.setenv("REALITYCHECK_DETECTION_QUALITY", "HIGH")
    monkeypatch.setenv("REALITYCHECK_CACHE_CAPACITY", "42")
    monkeypatch.setenv("REALITYCHECK_REMOTE_ENDPOINT", "runpod://abc")

    settings = get_settings()

    assert settings.remote_enabled is True
    assert settings.detection_quality == "high"
    assert settings.cache_capacity == 42
    options = settings.detector_options(detection_quality="low")
    assert options.detection_quality == "low"
    assert options.remote_endpoint == "runpod://abc"
    assert options.remote_enabled is True


def test_unknown_quality_falls_back_to_medium(monkeypatch):
    monkeypatch.setenv("REALITYCHECK_DETECTION_QUALITY", "ultra")
    monkeypatch.delenv("REALITYCHECK_REMOTE_ENABLED", raising=False)
    settings = get_settings()
    assert settings.detection_quality == "medium"
    assert settings.remote_enabled is False


@pytest.mark.asyncio
async def test_end_to_end_image_verdicts():
    pipeline = DetectionPipeline()
    options = DetectorOptions(remote_enabled=False, detection_quality="medium")

    flagged = await pipeline.analyze_image("https://midjourney.com/test.png", options)
    assert flagged.content_type == "image"
    assert flagged.source == "local"
    assert flagged.is_ai_generated
    assert flagged.score >= 0.7

    ordinary = await pipeline.analyze_image("https://example.com/ordinary-photo.jpg", options)
    assert ordinary.score == 0
    assert not ordinary.is_ai_generated
