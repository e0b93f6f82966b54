import asyncio
import os
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-process stores and job driver; no Mongo/Redis needed
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("JOB_RUNNER", "inline")
os.environ.setdefault("REPLICATE_API_TOKEN", "test-token")

from propstudio.services.credits import CreditLedger  # noqa: E402
from propstudio.services.inference import AdapterError, InferenceAdapter, PredictionResult  # noqa: E402
from propstudio.services.operations import OperationProfile, PollPolicy  # noqa: E402
from propstudio.services.orchestrator import JobOrchestrator  # noqa: E402
from propstudio.stores.memory import MemoryJobStore, MemoryLedgerStore  # noqa: E402


class FakeClock:
    """Clock + sleep pair: sleeping moves time forward instantly."""

    def __init__(self) -> None:
        self.current = datetime.utcnow()
        self.slept: list[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.current += timedelta(seconds=seconds)


class FakeAdapter(InferenceAdapter):
    """Scripted provider keyed by input_ref.

    - input_ref starting with "submit-error" fails on submit
    - scripts[input_ref] is the list of poll outcomes ("queued", "running",
      "succeeded", "failed" or an Exception); the last outcome repeats
    - anything else succeeds on first poll
    """

    def __init__(self, scripts: dict[str, list[Any]] | None = None) -> None:
        self.scripts = {k: list(v) for k, v in (scripts or {}).items()}
        self.submitted: list[str] = []
        self.polls: dict[str, int] = {}
        self.cancelled: list[str] = []
        self._refs: dict[str, str] = {}

    async def submit(self, profile, input_ref, params=None) -> str:
        await asyncio.sleep(0)
        if input_ref.startswith("submit-error"):
            raise AdapterError("Replicate API error: 500 - boom", status_code=500)
        external_id = f"pred-{len(self.submitted) + 1}"
        self.submitted.append(input_ref)
        self._refs[external_id] = input_ref
        return external_id

    async def poll(self, external_job_id: str) -> PredictionResult:
        await asyncio.sleep(0)
        self.polls[external_job_id] = self.polls.get(external_job_id, 0) + 1
        ref = self._refs[external_job_id]
        script = self.scripts.get(ref, ["succeeded"])
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == "succeeded":
            return PredictionResult(status="succeeded", output=f"https://cdn.test/{ref}.mp4")
        if outcome == "failed":
            return PredictionResult(status="failed", error="NSFW content detected")
        return PredictionResult(status=outcome)

    async def cancel(self, external_job_id: str) -> None:
        self.cancelled.append(external_job_id)


def make_profiles(max_attempts: int = 5, max_poll_errors: int = 3) -> dict[str, OperationProfile]:
    poll = PollPolicy(interval_seconds=5.0, max_attempts=max_attempts, jitter_seconds=0.0, max_poll_errors=max_poll_errors)
    return {
        "video": OperationProfile(name="video", model="kwaivgi/kling-v2.5-turbo-pro", credits_per_item=4, poll=poll, input_key="start_image"),
        "image_edit": OperationProfile(name="image_edit", model="qwen/qwen-image-edit", credits_per_item=1, poll=poll),
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger_store() -> MemoryLedgerStore:
    return MemoryLedgerStore()


@pytest.fixture
def job_store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def ledger(ledger_store) -> CreditLedger:
    return CreditLedger(ledger_store, default_credits=5)


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def make_orchestrator(ledger, job_store, clock):
    def _make(adapter: InferenceAdapter, **kwargs) -> JobOrchestrator:
        profiles = kwargs.pop("profiles", None) or make_profiles()
        return JobOrchestrator(
            ledger,
            job_store,
            adapter,
            profiles,
            max_batch_items=kwargs.pop("max_batch_items", 10),
            sleep=clock.sleep,
            clock=clock.now,
            **kwargs,
        )

    return _make


@pytest.fixture
def fund(ledger):
    async def _fund(user_id: str, balance: int) -> None:
        """Bring an account to exactly `balance`."""
        current = await ledger.get_balance(user_id)
        if balance > current:
            await ledger.grant(user_id, balance - current, reason="admin")
        elif balance < current:
            result = await ledger.check_and_reserve(user_id, current - balance, feature="admin")
            assert result.ok

    return _fund


@pytest_asyncio.fixture
async def app(ledger, job_store, adapter, clock):
    from propstudio.main import create_app
    from propstudio.services.container import Services
    from propstudio.services.dispatch import InlineDispatcher

    app = create_app()
    orchestrator = JobOrchestrator(ledger, job_store, adapter, make_profiles(), sleep=clock.sleep, clock=clock.now)
    app.state.services = Services(ledger=ledger, orchestrator=orchestrator, adapter=adapter)
    app.state.dispatcher = InlineDispatcher(orchestrator)
    yield app
    await app.state.dispatcher.aclose()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def make_adapter():
    return FakeAdapter


@pytest.fixture
def profiles_factory():
    return make_profiles
