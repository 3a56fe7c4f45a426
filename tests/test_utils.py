import io
import asyncio
import base64
import numpy as np
import pytest
from PIL import Image

from realitycheck.detectors.utils import (
    InFlightCache,
    RateLimiter,
    decode_data_url,
    hash_data_url,
    hash_image,
    hash_url,
    read_exif_summary,
    to_rgba_pixels,
)


def _jpeg_with_exif(tags: dict) -> bytes:
    img = Image.new("RGB", (16, 16), (90, 120, 150))
    exif = Image.Exif()
    for tag, value in tags.items():
        exif[tag] = value
    buf = io.BytesIO()
    img.save(buf, format="JPEG", exif=exif.tobytes())
    return buf.getvalue()


# --- InFlightCache ---

@pytest.mark.asyncio
async def test_concurrent_callers_share_one_computation():
    cache = InFlightCache(capacity=10)
    calls = []
    gate = asyncio.Event()

    async def compute():
        calls.append(1)
        await gate.wait()
        return object()

    first = asyncio.ensure_future(cache.get_or_compute("k", compute))
    second = asyncio.ensure_future(cache.get_or_compute("k", compute))
    await asyncio.sleep(0)
    assert cache.is_pending("k")

    gate.set()
    a, b = await asyncio.gather(first, second)

    assert len(calls) == 1
    assert a is b
    assert cache.get("k") is a
    assert not cache.is_pending("k")


@pytest.mark.asyncio
async def test_completed_entry_is_returned_without_recomputing():
    cache = InFlightCache()
    calls = []

    async def compute():
        calls.append(1)
        return {"score": 0.3}

    a = await cache.get_or_compute("k", compute)
    b = await cache.get_or_compute("k", compute)
    assert a is b
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_failed_computation_is_dropped_and_retried():
    cache = InFlightCache()
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("boom")
        return "ok"

    with pytest.raises(RuntimeError):
        await cache.get_or_compute("k", flaky)
    assert "k" not in cache

    assert await cache.get_or_compute("k", flaky) == "ok"
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_lru_eviction_skips_pending_entries():
    cache = InFlightCache(capacity=2)
    gate = asyncio.Event()

    async def slow():
        await gate.wait()
        return "slow"

    async def value(v):
        return v

    pending = asyncio.ensure_future(cache.get_or_compute("pending", slow))
    await asyncio.sleep(0)
    await cache.get_or_compute("a", lambda: value("a"))
    await cache.get_or_compute("b", lambda: value("b"))

    # "a" is the oldest completed entry; the pending one survives
    assert "pending" in cache
    assert "a" not in cache
    assert cache.get("b") == "b"

    gate.set()
    assert await pending == "slow"
    assert len(cache) <= 2


@pytest.mark.asyncio
async def test_get_refreshes_recency():
    cache = InFlightCache(capacity=2)

    async def value(v):
        return v

    await cache.get_or_compute("a", lambda: value(1))
    await cache.get_or_compute("b", lambda: value(2))
    assert cache.get("a") == 1
    await cache.get_or_compute("c", lambda: value(3))
    assert "a" in cache
    assert "b" not in cache


# --- RateLimiter ---

def test_rate_limiter_exhausts_and_returns_tokens():
    limiter = RateLimiter(2, 60.0)
    assert limiter.consume()
    assert limiter.consume()
    assert not limiter.consume()

    limiter.return_token()
    assert limiter.consume()


def test_rate_limiter_never_exceeds_capacity():
    limiter = RateLimiter(3, 60.0)
    limiter.return_token()
    limiter.return_token()
    assert limiter.tokens == 3


# --- Fingerprints ---

def test_hash_data_url_only_uses_prefix():
    prefix = "data:image/png;base64," + "A" * 300
    assert hash_data_url(prefix + "B") == hash_data_url(prefix + "C")


def test_hash_url_is_stable():
    assert hash_url("https://example.com/a.png") == hash_url("https://example.com/a.png")
    assert hash_url("https://example.com/a.png") != hash_url("https://example.com/b.png")


def test_hash_image_handles_empty_and_differs_by_content():
    assert hash_image(Image.new("RGB", (0, 0))).endswith("empty")
    red = Image.new("RGB", (40, 40), (255, 0, 0))
    split = Image.new("RGB", (40, 40), (0, 0, 0))
    split.paste((255, 255, 255), (0, 0, 20, 40))
    assert hash_image(red) == hash_image(red.copy())
    assert hash_image(red) != hash_image(split)


# --- Data URLs / pixels ---

def test_decode_data_url_variants():
    payload = base64.b64encode(b"\x00\x01hello").decode()
    assert decode_data_url(f"data:application/octet-stream;base64,{payload}") == b"\x00\x01hello"
    assert decode_data_url("data:text/plain,hi%20there") == b"hi there"
    assert decode_data_url("https://example.com/a.png") is None
    assert decode_data_url("data:no-comma") is None
    assert decode_data_url("") is None


def test_to_rgba_pixels_shape_and_empty():
    pixels = to_rgba_pixels(Image.new("RGB", (300, 120), (10, 20, 30)), 64)
    assert pixels.shape == (64, 64, 4)
    assert pixels[0, 0, 0] == 10
    assert to_rgba_pixels(Image.new("RGB", (0, 0))) is None


def test_to_rgba_pixels_keeps_noise_of_large_images():
    rng = np.random.default_rng(3)
    noise = Image.fromarray(rng.integers(0, 256, size=(400, 400, 3), dtype=np.uint8))
    pixels = to_rgba_pixels(noise, 64)
    # uniform noise has a std of about 74; averaging filters pull it far lower
    assert pixels[..., :3].std() > 60


# --- EXIF ---

def test_read_exif_summary_camera_hardware():
    data = _jpeg_with_exif({0x010F: "Canon", 0x0110: "EOS R5"})
    summary = read_exif_summary(data)
    assert summary is not None
    assert summary.has_camera_hardware
    assert summary.make == "Canon"
    assert summary.model == "EOS R5"


def test_read_exif_summary_software_only():
    data = _jpeg_with_exif({0x0131: "ComfyUI"})
    summary = read_exif_summary(data)
    assert summary is not None
    assert not summary.has_camera_hardware
    assert summary.software == "ComfyUI"


def test_read_exif_summary_without_exif():
    buf = io.BytesIO()
    Image.new("RGB", (8, 8)).save(buf, format="PNG")
    assert read_exif_summary(buf.getvalue()) is None
    assert read_exif_summary(b"not an image at all") is None
    assert read_exif_summary(b"") is None
