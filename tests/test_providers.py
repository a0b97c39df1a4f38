"""
Unit tests for provider HTTP clients.

requests is monkeypatched; tests cover:
1. Error normalization (non-2xx, network errors, non-JSON bodies)
2. Kie image task submit / recordInfo parsing
3. Veo image-to-video payload + record-info parsing
4. WaveSpeed sync generation
5. Gemini SDK error normalization
6. Image downscaling
"""
import sys
import os
import io
import json
import pytest
import requests
from PIL import Image

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import offline_gemini, png_bytes
import agents.providers as providers
from agents.providers import (
    KieImageTaskClient,
    VeoVideoTaskClient,
    WaveSpeedImageClient,
    build_image_payload,
    build_sync_image_client,
    downscale_image,
)
from config import ApiKeys, Settings
from schemas import PollState
from utils.errors import ProviderError, ValidationError


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else json.dumps(body)

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


@pytest.fixture
def http(monkeypatch):
    """Queue responses for requests.request and record each call."""
    calls = []
    responses = []

    def fake_request(method, url, timeout=None, **kwargs):
        calls.append({"method": method, "url": url, **kwargs})
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(providers.requests, "request", fake_request)
    fake_request.calls = calls
    fake_request.responses = responses
    return fake_request


# ==========================================================================
# Test 1: Error normalization
# ==========================================================================

class TestHttpErrors:

    def test_server_error_is_transient(self, http):
        http.responses.append(FakeResponse(503, text="overloaded"))
        with pytest.raises(ProviderError) as exc:
            KieImageTaskClient("key").poll("t1")
        assert exc.value.transient
        assert exc.value.status_code == 503

    def test_client_error_is_not_transient(self, http):
        http.responses.append(FakeResponse(401, text="bad key"))
        with pytest.raises(ProviderError) as exc:
            KieImageTaskClient("key").poll("t1")
        assert not exc.value.transient

    def test_network_error_is_transient(self, http):
        http.responses.append(requests.ConnectionError("reset"))
        with pytest.raises(ProviderError) as exc:
            KieImageTaskClient("key").poll("t1")
        assert exc.value.transient

    def test_non_json_body(self, http):
        http.responses.append(FakeResponse(200, body=None, text="<html>"))
        with pytest.raises(ProviderError, match="non-JSON"):
            KieImageTaskClient("key").poll("t1")

    def test_missing_key(self):
        with pytest.raises(ValidationError):
            KieImageTaskClient("")


# ==========================================================================
# Test 2: Kie image tasks
# ==========================================================================

class TestKieImageTaskClient:

    def test_submit(self, http):
        http.responses.append(FakeResponse(200, {"code": 200, "data": {"taskId": "kie-1"}}))
        payload = build_image_payload("a hero", image_input=["https://cdn.test/ref.png"])

        task_id = KieImageTaskClient("key", model="nano-banana-pro").submit(payload)

        assert task_id == "kie-1"
        call = http.calls[0]
        assert call["url"].endswith("/jobs/createTask")
        assert call["json"]["model"] == "nano-banana-pro"
        assert call["json"]["input"]["image_input"] == ["https://cdn.test/ref.png"]
        assert call["headers"]["Authorization"] == "Bearer key"

    def test_submit_error_code_in_body(self, http):
        http.responses.append(FakeResponse(200, {"code": 429, "msg": "rate limited"}))
        with pytest.raises(ProviderError) as exc:
            KieImageTaskClient("key").submit({"prompt": "x"})
        assert exc.value.transient

    def test_poll_states(self, http):
        http.responses.extend([
            FakeResponse(200, {"data": {"state": "generating"}}),
            FakeResponse(200, {"data": {"state": "success",
                                        "resultJson": json.dumps({"resultUrls": ["https://cdn.test/out.png"]})}}),
            FakeResponse(200, {"data": {"state": "fail", "failMsg": "nsfw"}}),
            FakeResponse(200, {"data": {"state": "success", "resultJson": "{}"}}),
        ])
        client = KieImageTaskClient("key")

        assert client.poll("t").state == PollState.WAITING
        done = client.poll("t")
        assert done.state == PollState.SUCCEEDED and done.url == "https://cdn.test/out.png"
        fail = client.poll("t")
        assert fail.state == PollState.FAILED and fail.reason == "nsfw"
        assert client.poll("t").state == PollState.FAILED
        assert http.calls[0]["params"] == {"taskId": "t"}

    @pytest.mark.parametrize("record", [
        {"state": "success", "resultJson": json.dumps(["https://cdn.test/out.png"])},
        {"state": "success", "resultJson": "{not json"},
        {"state": "success", "resultJson": json.dumps({"resultUrls": "https://cdn.test/out.png"})},
    ])
    def test_poll_malformed_result_is_failed(self, http, record):
        http.responses.append(FakeResponse(200, {"data": record}))
        report = KieImageTaskClient("key").poll("t")
        assert report.state == PollState.FAILED
        assert report.url is None

    def test_poll_non_object_data_is_failed(self, http):
        http.responses.append(FakeResponse(200, {"code": 200, "data": "still working"}))
        report = KieImageTaskClient("key").poll("t")
        assert report.state == PollState.FAILED
        assert "malformed recordInfo" in report.reason

    @pytest.mark.parametrize("body", [
        {"code": 200, "data": {"id": "kie-1"}},
        {"code": 200, "data": {"taskId": ""}},
        {"code": 200, "data": ["kie-1"]},
    ])
    def test_submit_malformed_task_is_permanent_error(self, http, body):
        http.responses.append(FakeResponse(200, body))
        with pytest.raises(ProviderError, match="malformed") as exc:
            KieImageTaskClient("key").submit({"prompt": "x"})
        assert not exc.value.transient


# ==========================================================================
# Test 3: Veo video tasks
# ==========================================================================

class TestVeoVideoTaskClient:

    def test_single_image_mode(self, http):
        http.responses.append(FakeResponse(200, {"data": {"taskId": "veo-1"}}))

        task_id = VeoVideoTaskClient("key").submit({"image_urls": ["https://cdn.test/f1.png"], "prompt": "pan"})

        assert task_id == "veo-1"
        body = http.calls[0]["json"]
        assert body["generationType"] == "IMAGE_2_VIDEO"
        assert body["imageUrls"] == ["https://cdn.test/f1.png"]
        assert body["prompt"] == "pan"

    def test_first_and_last_frame_mode(self, http):
        http.responses.append(FakeResponse(200, {"data": {"taskId": "veo-2"}}))
        VeoVideoTaskClient("key").submit({"image_urls": ["a", "b", "c"]})
        body = http.calls[0]["json"]
        assert body["generationType"] == "FIRST_AND_LAST_FRAMES_2_VIDEO"
        assert body["imageUrls"] == ["a", "b"]

    def test_submit_requires_image(self):
        with pytest.raises(ValidationError):
            VeoVideoTaskClient("key").submit({"image_urls": []})

    def test_poll_flags(self, http):
        http.responses.extend([
            FakeResponse(200, {"data": {"successFlag": 0}}),
            FakeResponse(200, {"data": {"successFlag": 1, "response": {"resultUrls": ["https://cdn.test/c.mp4"]}}}),
            FakeResponse(200, {"data": {"successFlag": -1, "errorMessage": "blocked"}}),
        ])
        client = VeoVideoTaskClient("key")

        assert client.poll("v").state == PollState.WAITING
        assert client.poll("v").url == "https://cdn.test/c.mp4"
        assert client.poll("v").reason == "blocked"

    def test_poll_malformed_flag_is_failed(self, http):
        http.responses.append(FakeResponse(200, {"data": {"successFlag": "abc"}}))
        report = VeoVideoTaskClient("key").poll("v")
        assert report.state == PollState.FAILED
        assert "malformed record-info" in report.reason

    def test_submit_without_task_id(self, http):
        http.responses.append(FakeResponse(200, {"code": 422, "msg": "image unreachable", "data": None}))
        with pytest.raises(ProviderError, match="image unreachable"):
            VeoVideoTaskClient("key").submit({"image_urls": ["https://cdn.test/f1.png"]})


# ==========================================================================
# Test 4: WaveSpeed sync images
# ==========================================================================

class TestWaveSpeedImageClient:

    def test_generate(self, http):
        http.responses.append(FakeResponse(200, {"data": {"outputs": ["https://cdn.test/ws.png"]}}))

        url = WaveSpeedImageClient("key").generate(build_image_payload("hero", image_input=["r1"], resolution="2K"))

        assert url == "https://cdn.test/ws.png"
        body = http.calls[0]["json"]
        assert body["enable_sync_mode"] is True
        assert body["images"] == ["r1"]
        assert body["resolution"] == "2k"

    def test_no_outputs(self, http):
        http.responses.append(FakeResponse(200, {"data": {"outputs": []}}))
        with pytest.raises(ProviderError):
            WaveSpeedImageClient("key").generate({"prompt": "x"})

    def test_malformed_outputs(self, http):
        http.responses.append(FakeResponse(200, {"data": {"outputs": "https://cdn.test/ws.png"}}))
        with pytest.raises(ProviderError, match="malformed"):
            WaveSpeedImageClient("key").generate({"prompt": "x"})

    def test_factory_requires_key(self):
        assert build_sync_image_client(Settings()) is None
        assert isinstance(build_sync_image_client(Settings(api_keys=ApiKeys(wavespeed="k"))), WaveSpeedImageClient)


# ==========================================================================
# Test 5: Gemini SDK errors
# ==========================================================================

class TestGeminiClient:

    def test_network_error_is_transient_provider_error(self):
        gemini = offline_gemini()
        with pytest.raises(ProviderError, match="Gemini request failed") as exc:
            gemini.generate("hello", json_mode=True)
        assert exc.value.transient
        assert exc.value.provider == "gemini"
        assert gemini.client.attempts == 1


# ==========================================================================
# Test 6: Image downscaling
# ==========================================================================

class TestDownscaleImage:

    def test_downscale_keeps_aspect(self):
        data, mime = downscale_image(png_bytes((2000, 1000)), max_side=500)
        assert mime == "image/jpeg"
        assert Image.open(io.BytesIO(data)).size == (500, 250)

    def test_undecodable(self):
        with pytest.raises(ValidationError):
            downscale_image(b"definitely not an image")
