import requests

from inventory.civitai import CivitaiClient, map_base_model
from inventory.config import Architecture


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON object could be decoded")
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, headers=None, timeout=None, **kwargs):
        self.calls.append((url, headers))
        if self.error:
            raise self.error
        return self.response


VERSION = {
    "id": 128713,
    "modelId": 101055,
    "name": "v1.0 VAE fix",
    "baseModel": "SDXL 1.0",
    "trainedWords": ["masterpiece"],
    "model": {"name": "SD XL", "type": "Checkpoint"},
    "files": [
        {"name": "sdxl.yaml", "primary": False, "downloadUrl": "https://civitai.com/api/download/models/1?type=Config"},
        {"name": "sd_xl_base_1.0.safetensors", "primary": True,
         "downloadUrl": "https://civitai.com/api/download/models/128713"},
    ],
}


def test_lookup_by_hash_maps_version():
    session = FakeSession(FakeResponse(payload=VERSION))
    client = CivitaiClient(api_key="secret", session=session)
    info = client.lookup_by_hash("abcdef")

    assert info == {
        "model_id": 101055,
        "version_id": 128713,
        "name": "SD XL",
        "version_name": "v1.0 VAE fix",
        "base_model": "SDXL 1.0",
        "architecture": Architecture.SDXL,
        "download_url": "https://civitai.com/api/download/models/128713",
        "trained_words": ["masterpiece"],
    }
    url, headers = session.calls[0]
    assert url == "https://civitai.com/api/v1/model-versions/by-hash/ABCDEF"
    assert headers["Authorization"] == "Bearer secret"


def test_unknown_hash_returns_none():
    client = CivitaiClient(api_key="", session=FakeSession(FakeResponse(status_code=404)))
    assert client.lookup_by_hash("abcdef") is None


def test_network_failure_returns_none():
    client = CivitaiClient(session=FakeSession(error=requests.ConnectionError("offline")))
    assert client.lookup_by_hash("abcdef") is None
    assert client.lookup_by_hash("") is None


def test_get_json_reports_invalid_payload():
    client = CivitaiClient(session=FakeSession(FakeResponse(payload=None)))
    assert client.get_json("/models/1")["error"] == "invalid JSON"


def test_no_authorization_header_without_key(monkeypatch):
    monkeypatch.delenv("CIVITAI_API_KEY", raising=False)
    session = FakeSession(FakeResponse(payload={}))
    CivitaiClient(session=session).get_json("/models/1")
    assert "Authorization" not in session.calls[0][1]


def test_map_base_model():
    assert map_base_model("SD 1.5") == Architecture.SD15
    assert map_base_model("Pony") == Architecture.PONY
    assert map_base_model("Flux.1 Kontext") == Architecture.FLUX
    assert map_base_model("NoobAI XL") == Architecture.SDXL
    assert map_base_model("Hunyuan Video") == Architecture.UNKNOWN
    assert map_base_model(None) == Architecture.UNKNOWN


def test_model_page_url():
    client = CivitaiClient(session=FakeSession())
    assert client.model_page_url(5, 7) == "https://civitai.com/models/5?modelVersionId=7"
