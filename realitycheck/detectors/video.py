import re
import asyncio
import logging
import weakref
import cv2
import numpy as np
from dataclasses import dataclass, field
from PIL import Image
from typing import List, Optional, Tuple, Union

from realitycheck.config import DEFAULT_REMOTE_ENDPOINT
from realitycheck.detectors.model_registry import ModelRegistry
from realitycheck.detectors.pixels import compute_visual_ai_score
from realitycheck.detectors.utils import InFlightCache, RateLimiter, hash_data_url, hash_url, log_decision
from realitycheck.remote_client import encode_image_data_url, parse_classification
from realitycheck.schemas import DetectionQuality, DetectionResult, DetectorOptions, RemoteClassification, VideoFramesPayload
from realitycheck.scoring_config import ScoringConfig

logger = logging.getLogger(__name__)

AI_VIDEO_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"sora\.openai",
        r"runwayml",
        r"pika\.art",
        r"kaiber\.ai",
        r"d-id\.com",
        r"heygen\.com",
        r"synthesia\.io",
        r"deep[-]?fake",
        r"gen[-]?2",
    ]
]

# Frames kept for remote payloads are capped at this size
_PAYLOAD_FRAME_DIM = 256

# One capture lock per element, shared by every detector instance.
_capture_locks: "weakref.WeakKeyDictionary[VideoElement, asyncio.Lock]" = weakref.WeakKeyDictionary()


def matches_ai_video_url(src: str) -> bool:
    return any(p.search(src or "") for p in AI_VIDEO_PATTERNS)


class VideoElement:
    """
    Seekable video surface. Wraps cv2.VideoCapture by default; any object with
    the same get/set/read/isOpened/release methods works as a backend.
    """

    def __init__(self, src: str = "", capture=None):
        self.src = src
        self.capture = capture if capture is not None else cv2.VideoCapture(src)

    @property
    def fps(self) -> float:
        return float(self.capture.get(cv2.CAP_PROP_FPS) or 0.0)

    @property
    def duration(self) -> float:
        fps = self.fps
        frames = float(self.capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0)
        if fps <= 0 or frames <= 0:
            return 0.0
        return frames / fps

    @property
    def width(self) -> int:
        return int(self.capture.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)

    @property
    def height(self) -> int:
        return int(self.capture.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)

    @property
    def current_time(self) -> float:
        return float(self.capture.get(cv2.CAP_PROP_POS_MSEC) or 0.0) / 1000.0

    def is_opened(self) -> bool:
        return bool(self.capture.isOpened())

    def seek(self, t: float):
        # Stay just inside the stream so the next read returns a frame
        t = max(0.0, min(t, max(0.0, self.duration - 0.05)))
        self.capture.set(cv2.CAP_PROP_POS_MSEC, t * 1000.0)

    def read_frame(self) -> Optional[np.ndarray]:
        """Next frame as RGB uint8, or None."""
        ok, frame = self.capture.read()
        if not ok or frame is None:
            return None
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def release(self):
        self.capture.release()


def get_capture_lock(element: VideoElement) -> asyncio.Lock:
    lock = _capture_locks.get(element)
    if lock is None:
        lock = asyncio.Lock()
        _capture_locks[element] = lock
    return lock


def sample_times(duration: float) -> List[float]:
    """Evenly spaced sample points, skipping the very start and end."""
    cfg = ScoringConfig.VIDEO
    if not np.isfinite(duration) or duration <= 0:
        return []
    step = max(cfg["MIN_FRAME_SPACING_S"], duration / (cfg["FRAME_COUNT"] + 1))
    times = []
    for i in range(1, cfg["FRAME_COUNT"] + 1):
        t = step * i
        if t >= duration:
            break
        times.append(t)
    return times


async def capture_frames(element: VideoElement) -> List[np.ndarray]:
    """
    Seek to each sample point and grab a frame, then restore the play position.
    Capture sequences on one element never interleave: a second caller waits
    for the first sequence to finish.
    """
    loop = asyncio.get_running_loop()
    async with get_capture_lock(element):
        if element.width <= 0 or element.height <= 0:
            return []
        times = sample_times(element.duration)
        if not times:
            return []

        saved_time = element.current_time
        frames = []
        try:
            for t in times:
                await loop.run_in_executor(None, element.seek, t)
                frame = await loop.run_in_executor(None, element.read_frame)
                if frame is not None:
                    frames.append(frame)
        finally:
            await loop.run_in_executor(None, element.seek, saved_time)

    logger.info(f"[VIDEO] Captured {len(frames)}/{len(times)} frames from {element.src or 'element'}")
    return frames


def ml_frame_size(width: int, height: int, quality: DetectionQuality) -> Tuple[int, int]:
    if quality == "high":
        return width, height
    if quality == "medium":
        return max(1, round(width / 2)), max(1, round(height / 2))
    scale = min(1.0, ScoringConfig.VIDEO["LOW_QUALITY_MAX_DIM"] / max(width, height))
    return max(1, round(width * scale)), max(1, round(height * scale))


def _luminance(frame: np.ndarray) -> np.ndarray:
    rgb = frame[..., :3].astype(np.float64)
    return rgb[..., 0] * 0.299 + rgb[..., 1] * 0.587 + rgb[..., 2] * 0.114


def mean_frame_difference(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.abs(_luminance(a) - _luminance(b)).mean())


def compute_temporal_score(small_frames: List[np.ndarray]) -> float:
    """
    Near-static footage and jerky motion both point at generated video:
    static (mean diff < 3 luminance units) adds 0.25, diff variance adds up to 0.25.
    """
    cfg = ScoringConfig.VIDEO
    if len(small_frames) < 2:
        return 0.0
    diffs = np.array([mean_frame_difference(small_frames[i - 1], small_frames[i]) for i in range(1, len(small_frames))])
    mean_diff = float(diffs.mean())
    diff_var = float(diffs.var())
    static_score = cfg["STATIC_SCORE"] if mean_diff < cfg["STATIC_DIFF"] else 0.0
    inconsistency = min(cfg["INCONSISTENCY_MAX"], diff_var / cfg["DIFF_VARIANCE_SCALE"])
    return static_score + inconsistency


@dataclass
class FrameAnalysis:
    temporal_score: float = 0.0
    visual_score: float = 0.0
    ml_frames: List[np.ndarray] = field(default_factory=list)
    payload_frames: List[np.ndarray] = field(default_factory=list)


def analyze_frames(frames: List[np.ndarray], quality: DetectionQuality) -> FrameAnalysis:
    """CPU-bound part of frame analysis (run in the executor)."""
    size = ScoringConfig.VIDEO["FRAME_SIZE"]
    small = [cv2.resize(f, (size, size), interpolation=cv2.INTER_AREA) for f in frames]

    payload_frames = []
    for f in frames:
        h, w = f.shape[:2]
        scale = min(1.0, _PAYLOAD_FRAME_DIM / max(h, w))
        payload_frames.append(cv2.resize(f, (max(1, int(w * scale)), max(1, int(h * scale))), interpolation=cv2.INTER_AREA))

    if len(small) < 2:
        return FrameAnalysis(payload_frames=payload_frames)

    h, w = frames[0].shape[:2]
    mw, mh = ml_frame_size(w, h, quality)
    ml_frames = [f if (f.shape[1], f.shape[0]) == (mw, mh) else cv2.resize(f, (mw, mh), interpolation=cv2.INTER_AREA) for f in frames]

    visual_scores = [compute_visual_ai_score(f) for f in small]
    return FrameAnalysis(
        temporal_score=compute_temporal_score(small),
        visual_score=float(np.mean(visual_scores)),
        ml_frames=ml_frames,
        payload_frames=payload_frames,
    )


def format_heuristic_step(label: str, value: Optional[float], threshold: float) -> str:
    if value is None:
        return f"{label} = n/a"
    verdict = "AI" if value >= threshold else "Not AI"
    return f"{label} = {value:.2f} : threshold ({threshold:.2f}) => {verdict}"


VideoInput = Union[VideoElement, str, None]


class VideoDetector:
    content_type = "video"

    def __init__(self, registry: Optional[ModelRegistry] = None, cache_capacity: int = 500):
        self.registry = registry or ModelRegistry()
        self.cache = InFlightCache(capacity=cache_capacity)
        self.rate_limiters = {q: RateLimiter(n, 60.0) for q, n in ScoringConfig.VIDEO_RATE_PER_MIN.items()}

    def fingerprint(self, element: Optional[VideoElement], src: str) -> str:
        if src:
            return hash_url(src)
        if element is not None:
            return f"element:{id(element)}"
        return hash_url("")

    async def detect(self, content: VideoInput, options: Optional[DetectorOptions] = None) -> DetectionResult:
        options = options or DetectorOptions()
        if isinstance(content, VideoElement):
            element, src = content, content.src or ""
        elif isinstance(content, str) or content is None:
            element, src = None, content or ""
        else:
            raise TypeError(f"Unsupported video input: {type(content).__name__}")
        key = self.fingerprint(element, src)
        return await self.cache.get_or_compute(key, lambda: self._analyze(element, src, options))

    async def _analyze(self, element: Optional[VideoElement], src: str, options: DetectorOptions) -> DetectionResult:
        cfg = ScoringConfig.VIDEO
        quality = options.detection_quality
        threshold = ScoringConfig.THRESHOLDS["VIDEO_LOCAL"]

        # 1. URL heuristics
        url_score = cfg["URL_MATCH"] if matches_ai_video_url(src) else 0.0
        scores = {"metadataUrl": url_score}
        if url_score >= cfg["URL_MATCH"]:
            result = DetectionResult.from_score(
                "video",
                cfg["URL_LOCK_SCORE"],
                threshold,
                heuristic_scores=scores,
                details=f"Initial heuristics (URL) flagged obvious AI ({url_score:.2f})",
            )
            return log_decision(result, "url")

        final_score = url_score
        stage = "initial"
        locked = False
        model_score = None
        analysis = FrameAnalysis()
        details = f"Initial heuristics score: {url_score:.2f}"

        # 2. Multi-frame temporal / visual / model analysis
        if element is not None:
            try:
                frames = await capture_frames(element)
                loop = asyncio.get_running_loop()
                analysis = await loop.run_in_executor(None, analyze_frames, frames, quality)
            except Exception as e:
                logger.warning(f"[VIDEO] Frame analysis failed, keeping URL score: {e}")
                analysis = FrameAnalysis()

            if analysis.ml_frames:
                scores["temporal"] = analysis.temporal_score
                scores["visual"] = analysis.visual_score
                model_score = await self._model_score(analysis.ml_frames)

                temporal_boost = min(cfg["TEMPORAL_MAX"], analysis.temporal_score)
                visual_boost = analysis.visual_score * cfg["VISUAL_WEIGHT"]
                composite = min(1.0, url_score + temporal_boost + visual_boost)
                final_score = composite
                details = f"Initial+temporal+visual score: {composite:.2f}"

                if composite >= cfg["COMPOSITE_LOCK"]:
                    final_score = cfg["AI_LOCK_SCORE"]
                    locked = True
                    details = f"Initial heuristics independently flagged AI ({composite:.2f})"

                if model_score is not None:
                    scores["localMl"] = model_score
                    if model_score >= cfg["MODEL_AI_EXTREME"]:
                        final_score = cfg["AI_LOCK_SCORE"]
                        locked = True
                    elif model_score <= cfg["MODEL_HUMAN_EXTREME"]:
                        if not locked:
                            final_score = cfg["HUMAN_LOCK_SCORE"]
                            locked = True
                    elif not locked:
                        final_score = min(
                            cfg["BLEND_CAP"],
                            composite * cfg["COMPOSITE_BLEND"] + model_score * cfg["MODEL_BLEND"],
                        )
                    stage = "local_ml"
                    verdict = "AI generated" if model_score >= 0.5 else "Not AI generated"
                    details = f"Local ML frame verdict: {verdict} ({model_score:.2f}), temporal={analysis.temporal_score:.2f}"

        # 3. Remote escalation for inconclusive verdicts
        source = "local"
        if options.remote_enabled and options.remote_classify is not None and not locked:
            remote = await self._classify_remote(src, analysis, options)
            if remote is not None:
                scores["remote"] = remote.score
                final_score = final_score * ScoringConfig.REMOTE["LOCAL_BLEND"] + remote.score * ScoringConfig.REMOTE["REMOTE_BLEND"]
                source = "remote"
                stage = "remote_ml"
                threshold = ScoringConfig.THRESHOLDS["REMOTE"]
                details = f"Remote ML score: {remote.score:.2f} (blended {final_score:.2f})"

        summary = " | ".join([
            format_heuristic_step("CDN Score", scores.get("metadataUrl"), cfg["URL_MATCH"]),
            format_heuristic_step("Temporal Analysis", scores.get("temporal"), 0.2),
            format_heuristic_step("Visual Score", scores.get("visual"), 0.35),
            format_heuristic_step("Local ML Score", scores.get("localMl"), cfg["MODEL_AI_EXTREME"]),
            format_heuristic_step("Remote ML Score", scores.get("remote"), 0.5),
        ])

        result = DetectionResult.from_score(
            "video",
            final_score,
            threshold,
            source=source,
            decision_stage=stage,
            local_model_score=model_score,
            heuristic_scores=scores,
            details=f"{details} | {summary}",
        )
        return log_decision(result, source)

    async def _model_score(self, ml_frames: List[np.ndarray]) -> Optional[float]:
        if not self.registry.is_model_available():
            return None
        results = await asyncio.gather(*[
            self.registry.run_model_score(f, f.shape[1], f.shape[0]) for f in ml_frames
        ])
        usable = [s for s in results if s is not None]
        if not usable:
            return None
        return float(np.mean(usable))

    async def _classify_remote(self, src: str, analysis: FrameAnalysis, options: DetectorOptions) -> Optional[RemoteClassification]:
        if not analysis.payload_frames and not src:
            return None
        limiter = self.rate_limiters[options.detection_quality]
        if not limiter.consume():
            logger.info("[REMOTE] Video rate limit reached, keeping local verdict")
            return None
        try:
            frames = [encode_image_data_url(Image.fromarray(f), _PAYLOAD_FRAME_DIM, 70) for f in analysis.payload_frames]
            frames = [f for f in frames if f]
            payload = VideoFramesPayload(
                frames=frames,
                frame_hashes=[hash_data_url(f) for f in frames],
                video_url=src or None,
            )
            endpoint = options.remote_endpoint or DEFAULT_REMOTE_ENDPOINT
            raw = await options.remote_classify(endpoint, options.remote_api_key or "", "video", payload)
            result = parse_classification(raw)
            if result.label == "error":
                raise RuntimeError("remote classifier returned an error label")
            return result
        except Exception as e:
            limiter.return_token()
            logger.warning(f"[REMOTE] Video classification failed: {e}")
            return None
