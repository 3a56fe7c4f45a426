import io
import re
import asyncio
import logging
from dataclasses import dataclass
from PIL import Image
from typing import Optional, Union

from realitycheck.c2pa_reader import detect_c2pa
from realitycheck.config import DEFAULT_REMOTE_ENDPOINT
from realitycheck.detectors.metadata import get_exif_ai_score, describe_exif
from realitycheck.detectors.model_registry import ModelRegistry
from realitycheck.detectors.pixels import PREFILTER_SIZE, compute_visual_ai_score, run_photorealism_pre_filter
from realitycheck.detectors.utils import (
    InFlightCache,
    RateLimiter,
    decode_data_url,
    fingerprint_source,
    hash_data_url,
    hash_image,
    log_decision,
    read_exif_summary,
    to_rgba_pixels,
)
from realitycheck.remote_client import encode_image_data_url, parse_classification
from realitycheck.schemas import DetectionQuality, DetectionResult, DetectorOptions, ImagePayload, RemoteClassification
from realitycheck.scoring_config import ScoringConfig

logger = logging.getLogger(__name__)

# Hosts and path fragments of known image generators
AI_CDN_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"midjourney",
        r"dalle[_-]?(2|3)?",
        r"stability\.ai",
        r"runwayml",
        r"novelai",
        r"civitai",
        r"dreamstudio",
        r"images\.openai\.com",
        r"cdn\.leonardo\.ai",
        r"firefly\.adobe\.com",
    ]
]

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)


@dataclass
class ImageHandle:
    """A loaded image plus where it came from."""
    src: str = ""
    image: Optional[Image.Image] = None
    natural_width: int = 0
    natural_height: int = 0
    raw_bytes: Optional[bytes] = None

    @classmethod
    def from_image(cls, image: Image.Image, src: str = "") -> "ImageHandle":
        w, h = image.size
        return cls(src=src, image=image, natural_width=w, natural_height=h)

    @classmethod
    def from_bytes(cls, data: bytes, src: str = "") -> "ImageHandle":
        img = Image.open(io.BytesIO(data))
        img.load()
        return cls(src=src, image=img, natural_width=img.width, natural_height=img.height, raw_bytes=data)


ImageInput = Union[ImageHandle, Image.Image, str, None]


def matches_ai_cdn(src: str) -> bool:
    return any(p.search(src or "") for p in AI_CDN_PATTERNS)


def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def is_ai_aspect_ratio(w: int, h: int) -> bool:
    if w <= 0 or h <= 0:
        return False
    ratio = w / h
    tol = ScoringConfig.LOCAL["ASPECT_TOLERANCE"]
    return any(abs(ratio - r) < tol for r in ScoringConfig.AI_ASPECT_RATIOS)


def compute_local_image_score(src: str, width: int, height: int) -> float:
    """URL and dimension heuristics, 0-1."""
    cfg = ScoringConfig.LOCAL
    score = 0.0
    if matches_ai_cdn(src):
        score += cfg["CDN_MATCH"]

    if is_power_of_two(width) and is_power_of_two(height):
        score += cfg["POWER_OF_TWO"]
    elif is_ai_aspect_ratio(width, height):
        score += cfg["AI_ASPECT_RATIO"]

    if width > 0 and width % 64 == 0 and height % 64 == 0:
        score += cfg["DIVISIBLE_BY_64"]

    return min(1.0, score)


def combine_scores(local_score: float, visual_score: Optional[float], quality: DetectionQuality) -> float:
    """Either signal may dominate; the visual score is discounted by quality tier."""
    weight = ScoringConfig.VISUAL_WEIGHT.get(quality)
    if visual_score is None or weight is None:
        return local_score
    return max(local_score, visual_score * weight)


def blend_remote(local_score: float, remote_score: float) -> float:
    cfg = ScoringConfig.REMOTE
    return local_score * cfg["LOCAL_BLEND"] + remote_score * cfg["REMOTE_BLEND"]


def _to_handle(content: ImageInput) -> ImageHandle:
    if isinstance(content, ImageHandle):
        return content
    if isinstance(content, Image.Image):
        return ImageHandle.from_image(content)
    if isinstance(content, str):
        return ImageHandle(src=content)
    if content is None:
        return ImageHandle()
    raise TypeError(f"Unsupported image input: {type(content).__name__}")


class ImageDetector:
    content_type = "image"

    def __init__(self, registry: Optional[ModelRegistry] = None, cache_capacity: int = 500):
        self.registry = registry or ModelRegistry()
        self.cache = InFlightCache(capacity=cache_capacity)
        self.rate_limiter = RateLimiter(ScoringConfig.REMOTE["IMAGE_RATE_PER_MIN"], 60.0)

    def fingerprint(self, handle: ImageHandle) -> str:
        if handle.src:
            return fingerprint_source(handle.src)
        if handle.image is not None:
            try:
                return hash_image(handle.image)
            except (OSError, ValueError) as e:
                logger.warning(f"[IMAGE] Could not read image data for fingerprint: {e}")
                w, h = handle.image.size
                return f"img:{w}x{h}:unreadable"
        return fingerprint_source("")

    async def detect(self, content: ImageInput, options: Optional[DetectorOptions] = None) -> DetectionResult:
        options = options or DetectorOptions()
        handle = _to_handle(content)
        key = self.fingerprint(handle)
        return await self.cache.get_or_compute(key, lambda: self._analyze(handle, options))

    async def _analyze(self, handle: ImageHandle, options: DetectorOptions) -> DetectionResult:
        quality = options.detection_quality
        threshold = ScoringConfig.THRESHOLDS["IMAGE_LOCAL"]
        loop = asyncio.get_running_loop()
        scores = {}

        width = handle.natural_width or (handle.image.width if handle.image is not None else 0)
        height = handle.natural_height or (handle.image.height if handle.image is not None else 0)

        pixels = None
        if handle.image is not None:
            try:
                pixels = await loop.run_in_executor(None, to_rgba_pixels, handle.image, PREFILTER_SIZE)
            except (OSError, ValueError) as e:
                logger.warning(f"[IMAGE] Could not decode pixels, skipping pixel heuristics: {e}")

        model_score = None
        if pixels is not None and quality == "high" and self.registry.is_model_available():
            model_score = await self.registry.run_model_score(pixels, PREFILTER_SIZE, PREFILTER_SIZE)

        # 1. Photorealism pre-filter
        pre_filter = await run_photorealism_pre_filter(pixels, quality, model_score=model_score)
        if pixels is not None:
            scores["preFilter"] = pre_filter.score
        if not pre_filter.is_photorealistic:
            result = DetectionResult.from_score(
                "image",
                0.0,
                threshold,
                local_model_score=model_score,
                heuristic_scores=scores,
                skipped_by_pre_filter=True,
                details=f"Pre-filter score {pre_filter.score:.2f} below threshold, not photorealistic",
            )
            return log_decision(result, "pre-filter")

        # 2. URL / dimension heuristics, combined with the visual score
        local_score = compute_local_image_score(handle.src, width, height)
        scores["cdn"] = local_score
        visual_score = None
        if pixels is not None and quality != "low":
            visual_score = await loop.run_in_executor(None, compute_visual_ai_score, pixels)
            scores["visual"] = visual_score
        combined = combine_scores(local_score, visual_score, quality)

        stage = "initial"
        if model_score is not None:
            scores["localMl"] = model_score
            combined = max(combined, model_score)
            stage = "local_ml"

        # 3. Provenance (EXIF + C2PA) when the original bytes are reachable
        notes = []
        data = await self._provenance_bytes(handle, options)
        if data:
            exif = await loop.run_in_executor(None, read_exif_summary, data)
            exif_score = get_exif_ai_score(exif)
            scores["provenance"] = exif_score
            notes.append(describe_exif(exif))
            if exif_score > 0:
                blend = ScoringConfig.PROVENANCE["BLEND_WEIGHT"]
                combined = min(1.0, combined * (1 - blend) + exif_score * blend)

            c2pa = await loop.run_in_executor(None, detect_c2pa, data)
            if c2pa.presence == "present":
                scores["c2pa"] = c2pa.score_adjustment
                notes.append("content credentials present")
                combined = max(0.0, combined + c2pa.score_adjustment)

        # 4. Remote escalation
        final_score = combined
        source = "local"
        if (
            options.remote_enabled
            and options.remote_classify is not None
            and combined < ScoringConfig.REMOTE["CONFIDENT_EXTREME"]
        ):
            remote = await self._classify_remote(handle, options)
            if remote is not None:
                scores["remote"] = remote.score
                final_score = blend_remote(combined, remote.score)
                source = "remote"
                stage = "remote_ml"
                threshold = ScoringConfig.THRESHOLDS["REMOTE"]

        details = f"Local {combined:.2f} (cdn {local_score:.2f}"
        if visual_score is not None:
            details += f", visual {visual_score:.2f}"
        details += ")"
        if notes:
            details += "; " + ", ".join(notes)

        result = DetectionResult.from_score(
            "image",
            final_score,
            threshold,
            source=source,
            decision_stage=stage,
            local_model_score=model_score,
            heuristic_scores=scores,
            details=details,
        )
        return log_decision(result, source)

    async def _provenance_bytes(self, handle: ImageHandle, options: DetectorOptions) -> Optional[bytes]:
        if handle.raw_bytes:
            return handle.raw_bytes
        src = handle.src
        if src.startswith("data:"):
            return decode_data_url(src)
        if _HTTP_URL.match(src) and options.fetch_bytes is not None:
            try:
                data_url = await options.fetch_bytes(src)
            except Exception as e:
                logger.warning(f"[FETCH] Byte fetch failed for {src}: {e}")
                return None
            return decode_data_url(data_url) if data_url else None
        return None

    async def _classify_remote(self, handle: ImageHandle, options: DetectorOptions) -> Optional[RemoteClassification]:
        if handle.image is None and not handle.src:
            return None
        if not self.rate_limiter.consume():
            logger.info("[REMOTE] Image rate limit reached, keeping local verdict")
            return None
        try:
            data_url = None
            if handle.image is not None:
                loop = asyncio.get_running_loop()
                data_url = await loop.run_in_executor(
                    None,
                    encode_image_data_url,
                    handle.image,
                    ScoringConfig.REMOTE["PAYLOAD_MAX_DIM"],
                    ScoringConfig.REMOTE["PAYLOAD_JPEG_QUALITY"],
                )
            payload = ImagePayload(
                image_hash=hash_data_url(data_url or handle.src),
                image_data_url=data_url,
                # Vision adapters can fetch the URL themselves when no pixels are available
                image_url=None if data_url else (handle.src or None),
            )
            endpoint = options.remote_endpoint or DEFAULT_REMOTE_ENDPOINT
            raw = await options.remote_classify(endpoint, options.remote_api_key or "", "image", payload)
            result = parse_classification(raw)
            if result.label == "error":
                raise RuntimeError("remote classifier returned an error label")
            return result
        except Exception as e:
            self.rate_limiter.return_token()
            logger.warning(f"[REMOTE] Image classification failed: {e}")
            return None
