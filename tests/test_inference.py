"""Replicate adapter over httpx.MockTransport."""

import json

import httpx
import pytest

from propstudio.services.inference import AdapterError, ReplicateAdapter, normalize_output
from propstudio.services.operations import OperationProfile, PollPolicy

pytestmark = pytest.mark.asyncio

VIDEO = OperationProfile(
    name="video",
    model="kwaivgi/kling-v2.5-turbo-pro",
    credits_per_item=4,
    poll=PollPolicy(interval_seconds=5, max_attempts=720),
    input_key="start_image",
    extra_input={"duration": 5},
)


def _adapter(handler, token: str = "r8_test") -> ReplicateAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ReplicateAdapter(api_token=token, base_url="https://api.replicate.test/v1/", client=client)


async def test_submit_posts_prediction():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "abc123", "status": "starting"})

    adapter = _adapter(handler)
    external_id = await adapter.submit(VIDEO, "https://cdn.test/house.jpg", {"prompt": "slow pan"})

    assert external_id == "abc123"
    assert seen["method"] == "POST"
    assert seen["url"] == "https://api.replicate.test/v1/predictions"
    assert seen["auth"] == "Bearer r8_test"
    assert seen["body"] == {
        "version": "kwaivgi/kling-v2.5-turbo-pro",
        "input": {"duration": 5, "prompt": "slow pan", "start_image": "https://cdn.test/house.jpg"},
    }
    await adapter.aclose()


async def test_submit_http_error_raises_adapter_error():
    adapter = _adapter(lambda request: httpx.Response(422, text="invalid version"))
    with pytest.raises(AdapterError) as exc:
        await adapter.submit(VIDEO, "https://cdn.test/house.jpg")
    assert exc.value.status_code == 422
    assert "invalid version" in str(exc.value)


async def test_submit_network_error_raises_adapter_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AdapterError):
        await _adapter(handler).submit(VIDEO, "https://cdn.test/house.jpg")


async def test_submit_without_id_raises_adapter_error():
    adapter = _adapter(lambda request: httpx.Response(201, json={"status": "starting"}))
    with pytest.raises(AdapterError):
        await adapter.submit(VIDEO, "https://cdn.test/house.jpg")


async def test_missing_token_raises_adapter_error():
    adapter = _adapter(lambda request: httpx.Response(201, json={"id": "x"}), token="")
    with pytest.raises(AdapterError):
        await adapter.submit(VIDEO, "https://cdn.test/house.jpg")


@pytest.mark.parametrize(
    "payload,status,output,error",
    [
        ({"status": "starting"}, "queued", None, None),
        ({"status": "queued"}, "queued", None, None),
        ({"status": "processing"}, "running", None, None),
        ({"status": "succeeded", "output": "https://cdn.test/v.mp4"}, "succeeded", "https://cdn.test/v.mp4", None),
        ({"status": "succeeded", "output": ["https://cdn.test/1.png", "https://cdn.test/2.png"]}, "succeeded", "https://cdn.test/1.png", None),
        ({"status": "failed", "error": "CUDA out of memory"}, "failed", None, "CUDA out of memory"),
        ({"status": "canceled"}, "failed", None, "Prediction was cancelled"),
        ({"status": "succeeded", "output": None}, "failed", None, "Prediction succeeded without output"),
    ],
)
async def test_poll_maps_provider_status(payload, status, output, error):
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/v1/predictions/abc123"
        return httpx.Response(200, json={"id": "abc123", **payload})

    result = await _adapter(handler).poll("abc123")
    assert (result.status, result.output, result.error) == (status, output, error)


async def test_cancel_posts_to_cancel_endpoint():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        return httpx.Response(200, json={"id": "abc123", "status": "canceled"})

    await _adapter(handler).cancel("abc123")
    assert calls == [("POST", "/v1/predictions/abc123/cancel")]


async def test_normalize_output():
    assert normalize_output(None) is None
    assert normalize_output("https://x/a.mp4") == "https://x/a.mp4"
    assert normalize_output([None, "https://x/b.png"]) == "https://x/b.png"
    assert normalize_output({"url": "https://x/c.wav"}) == "https://x/c.wav"
    assert normalize_output({"text": "3 bed, 2 bath"}) == "3 bed, 2 bath"
    assert normalize_output([]) is None
