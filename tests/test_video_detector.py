import asyncio
import cv2
import numpy as np
import pytest
from unittest.mock import AsyncMock

from realitycheck.detectors.model_registry import ModelRegistry
from realitycheck.detectors.video import (
    VideoDetector,
    VideoElement,
    compute_temporal_score,
    ml_frame_size,
    sample_times,
)
from realitycheck.schemas import DetectorOptions

CLIP_URL = "https://example.com/clip.mp4"


class FakeCapture:
    """In-memory cv2.VideoCapture stand-in: 3s at 10 fps, 64x48, brightness tracks position."""

    def __init__(self, log=None, position_ms=1200.0, fail_reads=False):
        self.log = log if log is not None else []
        self.position_ms = position_ms
        self.fail_reads = fail_reads
        self.released = False

    def get(self, prop):
        return {
            cv2.CAP_PROP_FPS: 10.0,
            cv2.CAP_PROP_FRAME_COUNT: 30.0,
            cv2.CAP_PROP_FRAME_WIDTH: 64.0,
            cv2.CAP_PROP_FRAME_HEIGHT: 48.0,
            cv2.CAP_PROP_POS_MSEC: self.position_ms,
        }.get(prop, 0.0)

    def set(self, prop, value):
        if prop == cv2.CAP_PROP_POS_MSEC:
            self.position_ms = value
            self.log.append(("seek", round(value)))
        return True

    def read(self):
        if self.fail_reads:
            raise RuntimeError("decoder error")
        self.log.append(("read", round(self.position_ms)))
        level = int(60 + self.position_ms / 20)
        return True, np.full((48, 64, 3), level, dtype=np.uint8)

    def isOpened(self):
        return True

    def release(self):
        self.released = True


class FixedRunner:
    def __init__(self, value):
        self.value = value

    async def run(self, pixels, width, height):
        return self.value


def expected_sequence(restore_ms=1200):
    seq = []
    for ms in (500, 1000, 1500, 2000, 2500):
        seq += [("seek", ms), ("read", ms)]
    seq.append(("seek", restore_ms))
    return seq


# --- sampling helpers ---

def test_sample_times_spacing():
    assert sample_times(3.0) == pytest.approx([0.5, 1.0, 1.5, 2.0, 2.5])
    assert sample_times(0.6) == pytest.approx([0.25, 0.5])
    assert sample_times(0) == []
    assert sample_times(float("nan")) == []


def test_ml_frame_size_by_quality():
    assert ml_frame_size(1920, 1080, "high") == (1920, 1080)
    assert ml_frame_size(1920, 1080, "medium") == (960, 540)
    assert ml_frame_size(1920, 1080, "low") == (192, 108)
    assert ml_frame_size(100, 50, "low") == (100, 50)


def test_static_frames_score_as_static():
    frames = [np.full((8, 8, 3), 100, dtype=np.uint8) for _ in range(4)]
    assert compute_temporal_score(frames) == pytest.approx(0.25)
    assert compute_temporal_score(frames[:1]) == 0.0


# --- capture serialization ---

@pytest.mark.asyncio
async def test_capture_sequences_never_interleave_across_detectors():
    log = []
    element = VideoElement(CLIP_URL, capture=FakeCapture(log))

    await asyncio.gather(
        VideoDetector().detect(element),
        VideoDetector().detect(element),
    )

    assert log == expected_sequence() * 2
    assert element.current_time == pytest.approx(1.2)


@pytest.mark.asyncio
async def test_concurrent_calls_on_one_detector_share_a_capture():
    log = []
    element = VideoElement(CLIP_URL, capture=FakeCapture(log))
    detector = VideoDetector()

    a, b = await asyncio.gather(detector.detect(element), detector.detect(element))

    assert a is b
    assert log == expected_sequence()


@pytest.mark.asyncio
async def test_position_restored_after_capture_failure():
    capture = FakeCapture(fail_reads=True)
    element = VideoElement(CLIP_URL, capture=capture)

    result = await VideoDetector().detect(element)

    assert result.score == 0.0
    assert result.decision_stage == "initial"
    assert capture.position_ms == pytest.approx(1200.0)


# --- verdicts ---

@pytest.mark.asyncio
async def test_ai_video_url_short_circuits():
    result = await VideoDetector().detect("https://sora.openai.com/v/abc.mp4")
    assert result.score == pytest.approx(0.95)
    assert result.is_ai_generated
    assert result.decision_stage == "initial"
    assert result.heuristic_scores == {"metadataUrl": 0.7}


@pytest.mark.asyncio
async def test_confident_ai_model_locks_and_skips_remote():
    remote = AsyncMock(return_value={"score": 0.1, "label": "human"})
    detector = VideoDetector(ModelRegistry(FixedRunner(0.9)))
    element = VideoElement(CLIP_URL, capture=FakeCapture())

    result = await detector.detect(element, DetectorOptions(remote_enabled=True, remote_classify=remote))

    assert result.score == pytest.approx(0.95)
    assert result.decision_stage == "local_ml"
    assert result.local_model_score == pytest.approx(0.9)
    remote.assert_not_called()


@pytest.mark.asyncio
async def test_confident_human_model_locks_low():
    detector = VideoDetector(ModelRegistry(FixedRunner(0.1)))
    element = VideoElement(CLIP_URL, capture=FakeCapture())

    result = await detector.detect(element)

    assert result.score == pytest.approx(0.05)
    assert not result.is_ai_generated
    assert result.confidence == "low"


@pytest.mark.asyncio
async def test_inconclusive_model_blends_then_escalates():
    remote = AsyncMock(return_value={"score": 0.8, "label": "ai"})
    detector = VideoDetector(ModelRegistry(FixedRunner(0.5)))
    element = VideoElement(CLIP_URL, capture=FakeCapture())

    result = await detector.detect(element, DetectorOptions(remote_enabled=True, remote_classify=remote))

    scores = result.heuristic_scores
    composite = min(1.0, min(0.3, scores["temporal"]) + scores["visual"] * 0.35)
    blended = min(0.75, composite * 0.6 + 0.5 * 0.4)
    assert result.score == pytest.approx(blended * 0.3 + 0.8 * 0.7)
    assert result.source == "remote"
    assert result.decision_stage == "remote_ml"

    remote.assert_awaited_once()
    endpoint, api_key, content_type, payload = remote.call_args[0]
    assert content_type == "video"
    assert payload.video_url == CLIP_URL
    assert len(payload.frames) == 5
    assert all(f.startswith("data:image/jpeg;base64,") for f in payload.frames)


@pytest.mark.asyncio
async def test_without_model_composite_is_the_score():
    element = VideoElement(CLIP_URL, capture=FakeCapture())
    result = await VideoDetector().detect(element)

    scores = result.heuristic_scores
    assert "localMl" not in scores
    assert result.local_model_score is None
    assert result.score == pytest.approx(min(0.3, scores["temporal"]) + scores["visual"] * 0.35)
    assert "Temporal Analysis" in result.details


@pytest.mark.asyncio
async def test_unsupported_input_raises():
    with pytest.raises(TypeError):
        await VideoDetector().detect(42)
