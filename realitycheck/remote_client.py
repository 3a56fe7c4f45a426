import io
import time
import base64
import asyncio
import logging
import httpx
import runpod
from PIL import Image
from typing import Any, Dict, Optional, Tuple, Union

from realitycheck.detectors.utils import bytes_to_data_url
from realitycheck.schemas import (
    ContentType,
    ImagePayload,
    RemoteClassification,
    TextPayload,
    VideoFramesPayload,
)

logger = logging.getLogger(__name__)

Payload = Union[ImagePayload, VideoFramesPayload, TextPayload]

RUNPOD_SCHEME = "runpod://"

# Adapters reused across calls, keyed by (endpoint, api_key)
_ADAPTER_CACHE: Dict[Tuple[str, str], Any] = {}


def encode_image_data_url(image: Image.Image, max_size: int = 128, quality: int = 70) -> Optional[str]:
    """Downscale and JPEG-encode an image for a remote payload."""
    try:
        img = image.copy()
        if max(img.size) > max_size:
            img.thumbnail((max_size, max_size))
        if img.mode != "RGB":
            img = img.convert("RGB")
        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=quality)
        encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
        return f"data:image/jpeg;base64,{encoded}"
    except Exception as e:
        logger.error(f"[REMOTE] Image encoding failed: {e}")
        return None


def parse_classification(data: Any) -> RemoteClassification:
    """Validate a remote response body; raises on anything malformed."""
    if isinstance(data, RemoteClassification):
        return data
    if not isinstance(data, dict):
        raise ValueError(f"Unexpected remote response: {data!r}")
    return RemoteClassification.model_validate({"score": data.get("score"), "label": data.get("label")})


def _request_body(content_type: ContentType, payload: Payload) -> dict:
    body = payload.model_dump(exclude_none=True, exclude={"kind"})
    body["content_type"] = content_type
    return body


async def poll_job(job, timeout=30):
    """Tight async polling loop (200ms sweet spot)."""
    start = time.monotonic()
    await asyncio.sleep(0.1)

    while True:
        status_raw = job.status()

        # Handles both string and dict responses
        if isinstance(status_raw, dict):
            status = status_raw.get("status")
        else:
            status = status_raw

        if status == "COMPLETED":
            if isinstance(status_raw, dict) and "output" in status_raw:
                return status_raw["output"]
            return job.output()

        if status in ("FAILED", "CANCELLED", "TIMED_OUT"):
            error_details = status_raw if isinstance(status_raw, dict) else status
            raise RuntimeError(f"RunPod job {status}: {error_details}")

        if time.monotonic() - start > timeout:
            raise TimeoutError(f"Classification timed out after {timeout}s")

        await asyncio.sleep(0.2)


class RunPodAdapter:
    """Remote classifier hosted as a RunPod serverless endpoint."""

    def __init__(self, endpoint_id: str, api_key: str = "", timeout: float = 30.0):
        self.endpoint_id = endpoint_id
        self.api_key = api_key
        self.timeout = timeout
        self._endpoint = None

    def get_endpoint(self):
        """Retrieve or initialize the RunPod endpoint (cached)."""
        if self._endpoint is None:
            if self.api_key:
                runpod.api_key = self.api_key
            self._endpoint = runpod.Endpoint(self.endpoint_id)
        return self._endpoint

    async def classify(self, content_type: ContentType, payload: Payload) -> RemoteClassification:
        endpoint = self.get_endpoint()
        logger.info(f"[RUNPOD] Submitting {content_type} classification job")
        job = endpoint.run({"task": "classify", **_request_body(content_type, payload)})
        output = await poll_job(job, timeout=self.timeout)
        # Some workers nest the verdict under "results"
        if isinstance(output, dict) and isinstance(output.get("results"), dict):
            output = output["results"]
        return parse_classification(output)


class GenericHttpAdapter:
    """JSON POST to any endpoint answering {score, label}."""

    def __init__(self, endpoint: str, api_key: str = "", timeout: float = 30.0):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def classify(self, content_type: ContentType, payload: Payload) -> RemoteClassification:
        headers = {"X-RealityCheck-Request": "1"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        client = await self._get_client()
        response = await client.post(self.endpoint, json=_request_body(content_type, payload), headers=headers)
        response.raise_for_status()
        return parse_classification(response.json())


def create_remote_adapter(endpoint: str, api_key: str = "", timeout: float = 30.0):
    """runpod://<endpoint-id> selects RunPod; anything else is treated as an HTTP URL."""
    if endpoint.startswith(RUNPOD_SCHEME):
        return RunPodAdapter(endpoint[len(RUNPOD_SCHEME):], api_key, timeout)
    return GenericHttpAdapter(endpoint, api_key, timeout)


def get_remote_adapter(endpoint: str, api_key: str = "", timeout: float = 30.0):
    key = (endpoint, api_key or "")
    adapter = _ADAPTER_CACHE.get(key)
    if adapter is None:
        adapter = create_remote_adapter(endpoint, api_key or "", timeout)
        _ADAPTER_CACHE[key] = adapter
    return adapter


def make_remote_classify(timeout: float = 30.0, default_api_key: str = ""):
    """
    Build the remote_classify capability for DetectorOptions.
    Each call carries its own timeout; a timeout surfaces as an exception
    and detectors treat it like any other remote failure.
    """
    async def remote_classify(endpoint: str, api_key: str, content_type: ContentType, payload: Payload) -> RemoteClassification:
        adapter = get_remote_adapter(endpoint, api_key or default_api_key, timeout)
        return await asyncio.wait_for(adapter.classify(content_type, payload), timeout=timeout)

    return remote_classify


async def fetch_bytes_as_data_url(url: str, timeout: float = 10.0) -> Optional[str]:
    """Default fetch_bytes capability: GET the URL and return it as a data URL (None on failure)."""
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout), follow_redirects=True) as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"[FETCH] Could not fetch {url}: {e}")
        return None
    mime = response.headers.get("content-type", "application/octet-stream").split(";")[0].strip()
    return bytes_to_data_url(response.content, mime)


async def close_adapters():
    for adapter in list(_ADAPTER_CACHE.values()):
        close = getattr(adapter, "close", None)
        if close is not None:
            await close()
    _ADAPTER_CACHE.clear()
