"""
Tests for the Hugging Face Space clients, with gradio_client replaced by fakes.
"""

import asyncio
from pathlib import Path

import pytest

from rivel_backend import generation
from rivel_backend.generation import GenerationError, detect_image, extract_image_url, generate_for_request
from rivel_backend.models import GenerateRequest


class FakeClient:
    """Records constructor and predict arguments like gradio_client.Client."""

    instances = []
    output = None
    error = None

    def __init__(self, space_id, hf_token=None, verbose=True):
        self.space_id = space_id
        self.hf_token = hf_token
        self.calls = []
        FakeClient.instances.append(self)

    def predict(self, *args, api_name=None, **kwargs):
        self.calls.append((args, api_name, kwargs))
        if FakeClient.error is not None:
            raise FakeClient.error
        return FakeClient.output


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.instances = []
    FakeClient.output = None
    FakeClient.error = None
    monkeypatch.setattr(generation, "Client", FakeClient)
    return FakeClient


class TestExtractImageUrl:
    def test_shapes(self):
        assert extract_image_url("https://x/y.png") == "https://x/y.png"
        assert extract_image_url({"url": "https://x/u.png", "path": "/tmp/p.png"}) == "https://x/u.png"
        assert extract_image_url({"path": "/tmp/p.png"}) == "/tmp/p.png"
        assert extract_image_url({"url": None}) is None
        assert extract_image_url(None) is None


class TestGenerate:
    """Tests for the prompt-to-image client."""

    def test_payload_and_result(self, fake_client):
        """Parameters are sent by name and the [meta, image] pair is unpacked."""
        fake_client.output = [{"seed": 42}, {"url": "https://space/file=out.webp"}]
        request = GenerateRequest(prompt=" castle ", negative_prompt="blurry", steps="30", seed=42)

        out = asyncio.run(generate_for_request(request, space_id="owner/space", hf_token="tok", endpoint="/generate"))

        assert out == {
            "endpoint_used": "/generate",
            "meta": {"seed": 42},
            "image_url": "https://space/file=out.webp",
            "raw_image": None,
        }
        client = fake_client.instances[0]
        assert client.space_id == "owner/space"
        assert client.hf_token == "tok"
        _, api_name, kwargs = client.calls[0]
        assert api_name == "/generate"
        assert kwargs == {"prompt": "castle", "negative_prompt": "blurry", "steps": 30, "guidance": 7.5, "seed": 42}

    def test_unrecognised_image_is_kept_raw(self, fake_client):
        fake_client.output = [None, 12345]
        out = asyncio.run(generate_for_request(GenerateRequest(prompt="x"), space_id="owner/space"))
        assert out["image_url"] is None
        assert out["raw_image"] == 12345

    def test_empty_token_is_not_sent(self, fake_client):
        fake_client.output = []
        asyncio.run(generate_for_request(GenerateRequest(prompt="x"), space_id="owner/space", hf_token=""))
        assert fake_client.instances[0].hf_token is None

    def test_prediction_failure(self, fake_client):
        """Remote errors surface as GenerationError."""
        fake_client.error = ValueError("queue full")
        with pytest.raises(GenerationError, match="queue full"):
            asyncio.run(generate_for_request(GenerateRequest(prompt="x"), space_id="owner/space"))

    def test_connection_failure(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionError("space not found")

        monkeypatch.setattr(generation, "Client", refuse)
        with pytest.raises(GenerationError, match="Could not connect"):
            asyncio.run(generate_for_request(GenerateRequest(prompt="x"), space_id="owner/missing"))


class TestDetect:
    """Tests for the detector client."""

    def test_uploads_temporary_file(self, fake_client, monkeypatch):
        """The image is written to a temp file for the upload and removed afterwards."""
        seen = {}

        def fake_handle_file(path):
            seen["path"] = path
            seen["bytes"] = Path(path).read_bytes()
            return {"path": path}

        monkeypatch.setattr(generation, "handle_file", fake_handle_file)
        fake_client.output = [{"label": "artificial", "confidence": 0.97}]

        out = asyncio.run(detect_image(space_id="owner/detector", image_bytes=b"img", mime="image/jpeg"))

        assert out == {"space": "owner/detector", "result": {"label": "artificial", "confidence": 0.97}}
        assert seen["bytes"] == b"img"
        assert not Path(seen["path"]).exists()
        args, api_name, _ = fake_client.instances[0].calls[0]
        assert api_name == "/predict"
        assert args == ({"path": seen["path"]},)

    def test_failure(self, fake_client, monkeypatch):
        monkeypatch.setattr(generation, "handle_file", lambda path: path)
        fake_client.error = RuntimeError("detector crashed")
        with pytest.raises(GenerationError, match="detector crashed"):
            asyncio.run(detect_image(space_id="owner/detector", image_bytes=b"img"))
