"""Inference provider adapter: submit / poll / cancel one prediction.

No retries and no sleeping here; pacing belongs to the orchestrator's PollPolicy.
"""

from abc import ABC, abstractmethod
from typing import Any, Literal

import httpx
from pydantic import BaseModel

from propstudio.core.logging import get_logger
from propstudio.services.operations import OperationProfile

log = get_logger(__name__)

PredictionStatus = Literal["queued", "running", "succeeded", "failed"]

# provider status -> adapter status
STATUS_MAP: dict[str, PredictionStatus] = {
    "starting": "queued",
    "queued": "queued",
    "processing": "running",
    "succeeded": "succeeded",
    "failed": "failed",
    "canceled": "failed",
    "cancelled": "failed",
}


class AdapterError(Exception):
    """Transport or HTTP failure talking to the inference provider."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class PredictionResult(BaseModel):
    status: PredictionStatus
    output: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("succeeded", "failed")


def normalize_output(output: Any) -> str | None:
    """Providers return a URL, a list of URLs, or an object; reduce to one reference."""
    if output is None:
        return None
    if isinstance(output, str):
        return output
    if isinstance(output, list):
        for o in output:
            ref = normalize_output(o)
            if ref:
                return ref
        return None
    if isinstance(output, dict):
        for key in ("url", "output", "video", "audio", "text"):
            if output.get(key):
                return normalize_output(output[key])
        return None
    return str(output)


class InferenceAdapter(ABC):
    @abstractmethod
    async def submit(self, profile: OperationProfile, input_ref: str, params: dict[str, Any] | None = None) -> str:
        """Start one prediction; return the provider's job id. Raises AdapterError."""
        ...

    @abstractmethod
    async def poll(self, external_job_id: str) -> PredictionResult:
        """Single status read; safe to repeat. Raises AdapterError."""
        ...

    @abstractmethod
    async def cancel(self, external_job_id: str) -> None:
        ...


class ReplicateAdapter(InferenceAdapter):
    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.replicate.com/v1",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        if not self.api_token:
            raise AdapterError("Replicate API token not configured")
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = self._headers()
        try:
            resp = await self._client.request(method, f"{self.base_url}{path}", headers=headers, json=json)
        except httpx.HTTPError as e:
            raise AdapterError(f"Replicate request failed: {e}") from e
        if resp.status_code >= 400:
            raise AdapterError(
                f"Replicate API error: {resp.status_code} - {resp.text[:500]}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise AdapterError("Replicate returned invalid JSON") from e

    async def submit(self, profile: OperationProfile, input_ref: str, params: dict[str, Any] | None = None) -> str:
        payload = {"version": profile.model, "input": profile.build_input(input_ref, params)}
        data = await self._request("POST", "/predictions", json=payload)
        prediction_id = data.get("id")
        if not prediction_id:
            raise AdapterError("Replicate returned no prediction id")
        log.debug("prediction_submitted", operation=profile.name, prediction_id=prediction_id)
        return prediction_id

    async def poll(self, external_job_id: str) -> PredictionResult:
        data = await self._request("GET", f"/predictions/{external_job_id}")
        raw_status = str(data.get("status", ""))
        status = STATUS_MAP.get(raw_status)
        if status is None:
            log.warning("prediction_unknown_status", prediction_id=external_job_id, status=raw_status)
            status = "running"
        error = data.get("error")
        if status == "failed" and not error:
            error = "Prediction was cancelled" if raw_status in ("canceled", "cancelled") else "Unknown error"
        output = normalize_output(data.get("output")) if status == "succeeded" else None
        if status == "succeeded" and not output:
            return PredictionResult(status="failed", error="Prediction succeeded without output")
        return PredictionResult(status=status, output=output, error=str(error) if error else None)

    async def cancel(self, external_job_id: str) -> None:
        await self._request("POST", f"/predictions/{external_job_id}/cancel")
