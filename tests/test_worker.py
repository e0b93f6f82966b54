"""arq tasks with a recording stand-in for the Redis pool."""

from datetime import timedelta

import pytest

from propstudio.core.config import Settings
from propstudio.services.container import Services
from propstudio.worker.tasks import drive_job, resume_stalled_jobs

pytestmark = pytest.mark.asyncio


class RecordingPool:
    def __init__(self) -> None:
        self.enqueued: list[tuple] = []

    async def enqueue_job(self, name, *args, **kwargs):
        self.enqueued.append((name, args, kwargs))


@pytest.fixture
def worker_ctx(ledger, make_adapter, make_orchestrator):
    adapter = make_adapter({"a.jpg": ["running", "succeeded"]})
    orchestrator = make_orchestrator(adapter)
    return {
        "redis": RecordingPool(),
        "settings": Settings(),
        "services": Services(ledger=ledger, orchestrator=orchestrator, adapter=adapter),
        "job_id": "arq-1",
    }


async def test_drive_job_reschedules_until_terminal(worker_ctx, fund, clock):
    await fund("agent-w", 4)
    orchestrator = worker_ctx["services"].orchestrator
    job = await orchestrator.start_batch("agent-w", "video", ["a.jpg"])

    assert await drive_job(worker_ctx, job.job_id) == "processing"
    name, args, kwargs = worker_ctx["redis"].enqueued[-1]
    assert name == "drive_job"
    assert args[0] == job.job_id
    driver_id = args[1]
    assert kwargs["_defer_by"] == pytest.approx(5.0)

    for _ in range(2):
        clock.current += timedelta(seconds=5)
        status = await drive_job(worker_ctx, job.job_id, driver_id)
    assert status == "completed"
    assert len(worker_ctx["redis"].enqueued) == 2
    assert {args[1] for _, args, _ in worker_ctx["redis"].enqueued} == {driver_id}


async def test_second_chain_stops_while_lease_is_live(worker_ctx, fund, clock):
    await fund("agent-w", 4)
    orchestrator = worker_ctx["services"].orchestrator
    job = await orchestrator.start_batch("agent-w", "video", ["a.jpg"])

    assert await drive_job(worker_ctx, job.job_id, "chain-a") == "processing"
    assert await drive_job(worker_ctx, job.job_id, "chain-b") == "skipped"
    assert len(worker_ctx["redis"].enqueued) == 1

    # chain-a went silent past its lease; chain-b takes over and chain-a stops
    clock.current += timedelta(seconds=worker_ctx["settings"].stalled_job_seconds + 1)
    assert await drive_job(worker_ctx, job.job_id, "chain-b") == "processing"
    assert await drive_job(worker_ctx, job.job_id, "chain-a") == "skipped"
    assert [args[1] for _, args, _ in worker_ctx["redis"].enqueued] == ["chain-a", "chain-b"]


async def test_drive_job_on_finished_job_is_skipped(worker_ctx, fund, clock):
    await fund("agent-w", 4)
    orchestrator = worker_ctx["services"].orchestrator
    job = await orchestrator.start_batch("agent-w", "video", ["a.jpg"])
    await orchestrator.run(job.job_id)

    assert await drive_job(worker_ctx, job.job_id) == "skipped"
    assert worker_ctx["redis"].enqueued == []


async def test_resume_stalled_jobs_requeues_silent_jobs(worker_ctx, fund, clock):
    await fund("agent-w", 4)
    orchestrator = worker_ctx["services"].orchestrator
    job = await orchestrator.start_batch("agent-w", "video", ["a.jpg"])
    clock.current += timedelta(seconds=worker_ctx["settings"].stalled_job_seconds + 60)

    assert await resume_stalled_jobs(worker_ctx) == 1
    assert worker_ctx["redis"].enqueued == [("drive_job", (job.job_id,), {})]


async def test_resume_stalled_jobs_leaves_leased_jobs_alone(worker_ctx, fund, clock):
    await fund("agent-w", 4)
    orchestrator = worker_ctx["services"].orchestrator
    job = await orchestrator.start_batch("agent-w", "video", ["a.jpg"])
    clock.current += timedelta(seconds=worker_ctx["settings"].stalled_job_seconds + 60)
    assert await orchestrator.claim_driver(job.job_id, "chain-a", worker_ctx["settings"].stalled_job_seconds)

    assert await resume_stalled_jobs(worker_ctx) == 0
    assert worker_ctx["redis"].enqueued == []
