import io
import json
import logging
import c2pa
from typing import Optional, Dict, Any, Literal

from pydantic import BaseModel

from realitycheck.scoring_config import ScoringConfig
from realitycheck.detectors.utils import guess_image_mime

logger = logging.getLogger(__name__)


class C2PAResult(BaseModel):
    presence: Literal["present", "absent", "unknown"]
    score_adjustment: float = 0.0
    issuer: Optional[str] = None


def get_c2pa_manifest(data: bytes, mime: str) -> Optional[Dict[str, Any]]:
    """
    Reads C2PA manifest data from in-memory media bytes.
    Returns the active manifest or the first manifest found.
    """
    try:
        with c2pa.Reader(mime, io.BytesIO(data)) as reader:
            manifest_store = json.loads(reader.json())
    except Exception as e:
        # The reader raises when no manifest is embedded
        logger.debug(f"[C2PA] No readable manifest: {e}")
        return None

    manifests = manifest_store.get("manifests", {}) or {}
    active_label = manifest_store.get("active_manifest")
    if active_label and active_label in manifests:
        return manifests[active_label]
    if manifests:
        return manifests[next(iter(manifests))]
    return None


def detect_c2pa(data: Optional[bytes]) -> C2PAResult:
    """
    Content Credentials are an authenticity signal: when present, the AI score is
    lowered. Absence is neutral since most real photos carry none.
    """
    if not data or len(data) < 12:
        return C2PAResult(presence="unknown")

    mime = guess_image_mime(data)
    if mime is None:
        return C2PAResult(presence="unknown")

    manifest = get_c2pa_manifest(data, mime)
    if manifest is None:
        return C2PAResult(presence="absent")

    issuer = (manifest.get("signature_info") or {}).get("issuer")
    logger.info(f"[C2PA] Content credentials found (issuer: {issuer})")
    return C2PAResult(
        presence="present",
        score_adjustment=ScoringConfig.PROVENANCE["C2PA_PRESENT"],
        issuer=issuer,
    )
