import os
import asyncio
import tempfile
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import cv2
from dotenv import load_dotenv
from fastapi import FastAPI, UploadFile, File, Form, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load environment variables at the very beginning
load_dotenv()

from realitycheck.config import get_settings, Settings
from realitycheck.detectors.core import ImageHandle
from realitycheck.detectors.model_registry import ModelRegistry
from realitycheck.detectors.utils import decode_data_url, hash_bytes
from realitycheck.detectors.video import VideoElement
from realitycheck.pipeline import DetectionPipeline
from realitycheck.remote_client import close_adapters, fetch_bytes_as_data_url, make_remote_classify
from realitycheck.schemas import DetectionResult, DetectorOptions, TextRequest

settings = get_settings()

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

VALID_QUALITIES = {"low", "medium", "high"}


def build_registry(settings: Settings) -> ModelRegistry:
    registry = ModelRegistry()
    if settings.local_model:
        from realitycheck.detectors.transformers_runner import TransformersModelRunner
        registry.register_model(TransformersModelRunner(settings.local_model))
        logger.info(f"[STARTUP] Local model runner registered: {settings.local_model}")
    return registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    app.state.settings = settings
    app.state.registry = build_registry(settings)
    app.state.pipeline = DetectionPipeline(registry=app.state.registry, cache_capacity=settings.cache_capacity)
    app.state.remote_classify = make_remote_classify(settings.remote_timeout, settings.remote_api_key or "")
    logger.info(f"[STARTUP] Pipeline ready (quality={settings.detection_quality}, remote={settings.remote_enabled})")
    yield
    await close_adapters()
    app.state.registry.clear()
    logger.info("[SHUTDOWN] Pipeline stopped")


app = FastAPI(title="RealityCheck Detection API", lifespan=lifespan)

# ---- CORS ----
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _options(remote_enabled: Optional[bool], detection_quality: Optional[str]) -> DetectorOptions:
    if detection_quality is not None and detection_quality not in VALID_QUALITIES:
        raise HTTPException(status_code=422, detail=f"Unsupported detection quality: {detection_quality}")
    overrides = {
        "fetch_bytes": fetch_bytes_as_data_url,
        "remote_classify": app.state.remote_classify,
    }
    if remote_enabled is not None:
        overrides["remote_enabled"] = remote_enabled
    if detection_quality is not None:
        overrides["detection_quality"] = detection_quality
    return app.state.settings.detector_options(**overrides)


# ---- Healthcheck ----
@app.get("/health")
async def health():
    return {"status": "healthy", "model_available": app.state.registry.is_model_available()}


@app.post("/analyze/text", response_model=DetectionResult)
async def analyze_text(body: TextRequest):
    options = _options(body.remote_enabled, body.detection_quality)
    return await app.state.pipeline.analyze_text(body.text, options)


@app.post("/analyze/image", response_model=DetectionResult)
async def analyze_image(
    file: Optional[UploadFile] = File(None),
    url: Optional[str] = Form(None),
    remote_enabled: Optional[bool] = Form(None),
    detection_quality: Optional[str] = Form(None),
):
    options = _options(remote_enabled, detection_quality)
    start_time = time.time()

    if file is not None:
        content = await file.read()
        logger.info(f"[REQUEST] Image upload: {file.filename} | Size: {len(content)} bytes")
        try:
            target = ImageHandle.from_bytes(content, src=f"upload:{hash_bytes(content)}")
        except Exception as e:
            raise HTTPException(status_code=400, detail=f"Unreadable image: {e}")
    elif url:
        logger.info(f"[REQUEST] Image URL: {url}")
        target = url
        # Load pixels when the bytes are reachable; otherwise the URL alone is scored
        data = decode_data_url(await fetch_bytes_as_data_url(url) or "")
        if data:
            try:
                target = ImageHandle.from_bytes(data, src=url)
            except Exception as e:
                logger.warning(f"[REQUEST] Fetched bytes are not an image, scoring URL only: {e}")
    else:
        raise HTTPException(status_code=400, detail="Provide an image file or url")

    result = await app.state.pipeline.analyze_image(target, options)
    logger.info(f"[REQUEST] Image analyzed in {time.time() - start_time:.2f}s")
    return result


@app.post("/analyze/video", response_model=DetectionResult)
async def analyze_video(
    file: Optional[UploadFile] = File(None),
    url: Optional[str] = Form(None),
    remote_enabled: Optional[bool] = Form(None),
    detection_quality: Optional[str] = Form(None),
):
    options = _options(remote_enabled, detection_quality)

    if file is None:
        if not url:
            raise HTTPException(status_code=400, detail="Provide a video file or url")
        logger.info(f"[REQUEST] Video URL: {url}")
        loop = asyncio.get_running_loop()
        capture = await loop.run_in_executor(None, cv2.VideoCapture, url)
        element = VideoElement(url, capture=capture)
        try:
            return await app.state.pipeline.analyze_video(element, options)
        finally:
            element.release()

    content = await file.read()
    suffix = os.path.splitext(file.filename or "")[1].lower() or ".mp4"
    logger.info(f"[REQUEST] Video upload: {file.filename} | Size: {len(content)} bytes")

    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp_file:
        tmp_file.write(content)
        temp_path = tmp_file.name

    loop = asyncio.get_running_loop()
    capture = await loop.run_in_executor(None, cv2.VideoCapture, temp_path)
    element = VideoElement(src=f"upload:{hash_bytes(content)}", capture=capture)
    try:
        return await app.state.pipeline.analyze_video(element, options)
    finally:
        element.release()
        if os.path.exists(temp_path):
            os.remove(temp_path)
