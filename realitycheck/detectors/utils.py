import io
import time
import zlib
import base64
import asyncio
import logging
import numpy as np
from collections import OrderedDict
from urllib.parse import unquote_to_bytes
from PIL import Image
from PIL.ExifTags import TAGS, GPSTAGS
from typing import Any, Awaitable, Callable, Optional

from realitycheck.schemas import ExifSummary

logger = logging.getLogger(__name__)

_EXIF_IFD = 0x8769
_GPS_IFD = 0x8825


class InFlightCache:
    """
    LRU result cache that doubles as an in-flight request table.

    Each key maps either to a pending task or to its completed result. The first
    caller for a key starts the computation; later callers await the same task,
    so at most one computation per key is ever running. Completed entries are
    the very object every caller receives. Failed or cancelled computations are
    dropped so the next call starts afresh. Only completed entries are evicted.
    """

    def __init__(self, capacity: int = 500):
        self.cache = OrderedDict()
        self.capacity = capacity

    def __len__(self):
        return len(self.cache)

    def __contains__(self, key):
        return key in self.cache

    def get(self, key):
        """Completed result for key, or None (pending entries are not results)."""
        entry = self.cache.get(key)
        if entry is None or isinstance(entry, asyncio.Future):
            return None
        self.cache.move_to_end(key)
        return entry

    def is_pending(self, key) -> bool:
        return isinstance(self.cache.get(key), asyncio.Future)

    def clear(self):
        self.cache.clear()

    async def get_or_compute(self, key, factory: Callable[[], Awaitable[Any]]):
        entry = self.cache.get(key)
        if entry is not None:
            self.cache.move_to_end(key)
            if not isinstance(entry, asyncio.Future):
                logger.debug(f"[CACHE] Hit {key}")
                return entry
            logger.debug(f"[CACHE] Joining in-flight computation {key}")
            return await asyncio.shield(entry)

        task = asyncio.ensure_future(factory())
        self.cache[key] = task
        # Registered before any waiter so the table is settled when waiters resume.
        task.add_done_callback(lambda t: self._settle(key, t))
        return await asyncio.shield(task)

    def _settle(self, key, task: asyncio.Future):
        if self.cache.get(key) is not task:
            return
        if task.cancelled():
            logger.warning(f"[CACHE] Computation for {key} was cancelled")
            del self.cache[key]
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"[CACHE] Computation for {key} failed: {error}")
            del self.cache[key]
            return
        self.cache[key] = task.result()
        self._evict()

    def _evict(self):
        if len(self.cache) <= self.capacity:
            return
        for key in list(self.cache.keys()):
            if len(self.cache) <= self.capacity:
                break
            if not isinstance(self.cache[key], asyncio.Future):
                del self.cache[key]


class RateLimiter:
    """Token bucket: max_tokens per window, refilled continuously."""

    def __init__(self, max_tokens: int, window_s: float = 60.0):
        self.max_tokens = float(max_tokens)
        self.tokens = float(max_tokens)
        self.refill_per_s = float(max_tokens) / window_s
        self.last_refill = time.monotonic()

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_per_s)
        self.last_refill = now

    def consume(self) -> bool:
        self._refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    def return_token(self):
        self.tokens = min(self.max_tokens, self.tokens + 1)


# ---- Fingerprints ----
# Fast, non-cryptographic. Equal fingerprints are treated as identical content.

def hash_string(value: str) -> str:
    return format(zlib.crc32(value.encode("utf-8", errors="ignore")) & 0xFFFFFFFF, "08x")


def hash_bytes(data: bytes) -> str:
    return format(zlib.crc32(data or b"") & 0xFFFFFFFF, "08x")


def hash_url(url: str) -> str:
    return hash_string(url or "")


def hash_data_url(data_url: str) -> str:
    """Only the first 256 characters (header plus leading payload) are hashed."""
    return hash_string((data_url or "")[:256])


def hash_image(image: Image.Image) -> str:
    """Hash a 32x32 grayscale thumbnail together with the original size."""
    w, h = image.size
    if w <= 0 or h <= 0:
        return f"img:{w}x{h}:empty"
    thumb = image.copy()
    thumb.thumbnail((32, 32))
    thumb = thumb.convert("L")
    digest = zlib.crc32(np.array(thumb).tobytes()) & 0xFFFFFFFF
    return f"img:{w}x{h}:{digest:08x}"


def fingerprint_source(src: str) -> str:
    if src.startswith("data:"):
        return hash_data_url(src)
    return hash_url(src)


# ---- Data URLs ----

def decode_data_url(data_url: str) -> Optional[bytes]:
    """Decode a data: URL into raw bytes; None if it is not a usable data URL."""
    if not data_url or not data_url.startswith("data:"):
        return None
    header, sep, payload = data_url.partition(",")
    if not sep:
        return None
    try:
        if header.endswith(";base64"):
            return base64.b64decode(payload, validate=False)
        return unquote_to_bytes(payload)
    except (ValueError, TypeError) as e:
        logger.debug(f"[DATA_URL] Could not decode data URL: {e}")
        return None


def bytes_to_data_url(data: bytes, mime: str = "application/octet-stream") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def guess_image_mime(data: bytes) -> Optional[str]:
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[4:12] in (b"ftypavif", b"ftypheic", b"ftypmif1"):
        return "image/avif" if data[8:12] == b"avif" else "image/heic"
    return None


# ---- Pixels ----

def to_rgba_pixels(image: Image.Image, size: int = 64) -> Optional[np.ndarray]:
    """Downscale to a size x size RGBA buffer (H, W, 4) uint8. None for empty images."""
    w, h = image.size
    if w <= 0 or h <= 0:
        return None
    # Point sampling keeps the per-pixel noise and edges the pre-filter measures.
    small = image.convert("RGBA").resize((size, size), Image.NEAREST)
    return np.asarray(small, dtype=np.uint8)


# ---- EXIF ----

def _clean_str(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    value = str(value).strip("\x00 ").strip()
    return value or None


def _as_float(value) -> Optional[float]:
    if isinstance(value, (tuple, list)):
        value = value[0] if value else None
    try:
        return float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None


def read_exif_summary(data: bytes) -> Optional[ExifSummary]:
    """
    Extract camera/software provenance from raw image bytes.
    Returns None when the bytes carry no EXIF block at all (or cannot be decoded).
    """
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as img:
            exif = img.getexif()
            if not exif:
                return None
            base = {TAGS.get(tag, tag): value for tag, value in exif.items()}
            sub = {TAGS.get(tag, tag): value for tag, value in exif.get_ifd(_EXIF_IFD).items()}
            gps = {GPSTAGS.get(tag, tag): value for tag, value in exif.get_ifd(_GPS_IFD).items()}
    except Exception as e:
        logger.debug(f"[EXIF] Unreadable image bytes: {e}")
        return None

    make = _clean_str(base.get("Make"))
    model = _clean_str(base.get("Model"))
    return ExifSummary(
        has_camera_hardware=bool(make or model),
        make=make,
        model=model,
        software=_clean_str(base.get("Software")),
        exposure_time=_as_float(sub.get("ExposureTime")),
        f_number=_as_float(sub.get("FNumber")),
        iso=_as_float(sub.get("ISOSpeedRatings")),
        lens_model=_clean_str(sub.get("LensModel")),
        has_gps="GPSLatitude" in gps,
    )


def log_decision(result, source: str):
    """Log the final verdict before returning it."""
    logger.info(
        f"[DECISION] {result.content_type} | AI={result.is_ai_generated} ({result.score:.2f}, {result.confidence}) "
        f"| Stage: {result.decision_stage} | Source: {source} | Scores: {dict(result.heuristic_scores)}"
    )
    return result
