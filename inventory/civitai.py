"""CivitaiClient: best-effort model identification by content hash."""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import requests

from .config import Architecture

logger = logging.getLogger(__name__)

CIVITAI_API_BASE = "https://civitai.com/api/v1"

# CivitAI base model names mapped onto detected architectures
BASE_MODEL_MAP = {
    "SD 1.4": Architecture.SD15,
    "SD 1.5": Architecture.SD15,
    "SD 1.5 LCM": Architecture.SD15,
    "SD 1.5 Hyper": Architecture.SD15,
    "SDXL 0.9": Architecture.SDXL,
    "SDXL 1.0": Architecture.SDXL,
    "SDXL 1.0 LCM": Architecture.SDXL,
    "SDXL Distilled": Architecture.SDXL,
    "SDXL Hyper": Architecture.SDXL,
    "SDXL Lightning": Architecture.SDXL,
    "SDXL Turbo": Architecture.SDXL,
    "Illustrious": Architecture.SDXL,
    "Pony": Architecture.PONY,
    "SD 3": Architecture.SD3,
    "SD 3.5": Architecture.SD3,
    "SD 3.5 Large": Architecture.SD3,
    "SD 3.5 Large Turbo": Architecture.SD3,
    "SD 3.5 Medium": Architecture.SD3,
    "Flux.1 S": Architecture.FLUX,
    "Flux.1 D": Architecture.FLUX,
    "SVD": Architecture.SVD,
    "SVD XT": Architecture.SVD,
    "Wan Video": Architecture.WAN,
    "Wan Video 2.1 T2V": Architecture.WAN,
    "Wan Video 2.1 I2V": Architecture.WAN,
}


def map_base_model(base_model: Optional[str]) -> str:
    """Translate a CivitAI baseModel string into an architecture id."""
    if not base_model:
        return Architecture.UNKNOWN
    if base_model in BASE_MODEL_MAP:
        return BASE_MODEL_MAP[base_model]
    lower = base_model.lower()
    if "flux" in lower:
        return Architecture.FLUX
    if "pony" in lower:
        return Architecture.PONY
    if "sdxl" in lower or "xl" in lower:
        return Architecture.SDXL
    if "sd3" in lower or "sd 3" in lower:
        return Architecture.SD3
    if "wan" in lower:
        return Architecture.WAN
    if "sd 1" in lower or "sd1" in lower:
        return Architecture.SD15
    return Architecture.UNKNOWN


class CivitaiClient:
    def __init__(self, api_key: Optional[str] = None, base_url: str = CIVITAI_API_BASE,
                 timeout: int = 15, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key or os.environ.get("CIVITAI_API_KEY")
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def get(self, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        return self.session.get(url, headers=self._headers(), timeout=self.timeout, **kwargs)

    def get_json(self, path: str) -> Dict[str, Any]:
        """GET a path and return parsed JSON, or a dict with an `error` key.

        Callers keep going on failure: lookups only enrich catalog rows.
        """
        try:
            r = self.get(path)
            if r.status_code != 200:
                return {"error": f"HTTP {r.status_code}", "status_code": r.status_code}
            try:
                return r.json()
            except ValueError:
                return {"error": "invalid JSON", "status_code": r.status_code}
        except requests.RequestException as e:
            return {"error": str(e)}

    def lookup_by_hash(self, sha256: str) -> Optional[Dict[str, Any]]:
        """Identify a model file by its full SHA-256.

        Returns a normalised dict (model_id, version_id, name, base_model,
        architecture, download_url, trained_words), or None when the hash is
        unknown or the service is unreachable.
        """
        if not sha256:
            return None
        data = self.get_json(f"/model-versions/by-hash/{sha256.upper()}")
        if "error" in data:
            if data.get("status_code") != 404:
                logger.warning(f"⚠️ CivitAI lookup failed for {sha256[:12]}: {data['error']}")
            return None

        model = data.get("model") or {}
        files = data.get("files") or []
        primary = next((f for f in files if f.get("primary")), files[0] if files else {})
        base_model = data.get("baseModel")
        return {
            "model_id": data.get("modelId"),
            "version_id": data.get("id"),
            "name": model.get("name") or data.get("name"),
            "version_name": data.get("name"),
            "base_model": base_model,
            "architecture": map_base_model(base_model),
            "download_url": primary.get("downloadUrl") or data.get("downloadUrl"),
            "trained_words": data.get("trainedWords") or [],
        }

    def model_page_url(self, model_id: int, version_id: Optional[int] = None) -> str:
        url = f"https://civitai.com/models/{model_id}"
        if version_id:
            url = f"{url}?modelVersionId={version_id}"
        return url
