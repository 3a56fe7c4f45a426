import asyncio
import logging
import threading
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "Organika/sdxl-detector"


def softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - logits.max(axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return exp / exp.sum(axis=-1, keepdims=True)


def get_ai_label_index(id2label: dict) -> int:
    """Index of the label that means 'generated' (falls back to 0)."""
    for idx, label in id2label.items():
        if any(k in str(label).lower() for k in ["ai", "fake", "generated", "artificial"]):
            return int(idx)
    return 0


class TransformersModelRunner:
    """
    Hugging Face image classifier used as the local model runner.
    Weights load lazily on first use; inference runs in the default executor.
    """

    def __init__(self, model_id: str = DEFAULT_MODEL_ID, device: str = None):
        self.model_id = model_id
        self.device = device
        self.processor = None
        self.model = None
        self.ai_idx = 0
        self._load_lock = threading.Lock()

    def load_model(self):
        with self._load_lock:
            if self.model is not None:
                return
            import torch
            from transformers import AutoImageProcessor, AutoModelForImageClassification

            if self.device is None:
                self.device = "cuda" if torch.cuda.is_available() else "cpu"
            logger.info(f"[MODEL] Loading {self.model_id} on {self.device}")
            self.processor = AutoImageProcessor.from_pretrained(self.model_id)
            self.model = AutoModelForImageClassification.from_pretrained(self.model_id).to(self.device).eval()
            self.ai_idx = get_ai_label_index(self.model.config.id2label)

    def _predict(self, pixels, width: int, height: int) -> float:
        import torch

        self.load_model()
        arr = np.asarray(pixels, dtype=np.uint8)
        if arr.ndim == 1:
            arr = arr.reshape(height, width, -1)
        img = Image.fromarray(arr[..., :3], "RGB")

        inputs = self.processor(images=img, return_tensors="pt")
        inputs = {k: v.to(self.device) for k, v in inputs.items()}
        with torch.no_grad():
            logits = self.model(**inputs).logits
        probs = softmax(logits.float().cpu().numpy())
        return float(probs[0, self.ai_idx])

    async def run(self, pixels, width: int, height: int) -> float:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._predict, pixels, width, height)
