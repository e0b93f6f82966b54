"""Hand a freshly created job to whatever drives it."""

import asyncio
from abc import ABC, abstractmethod

from propstudio.core.logging import bind_job_context, clear_job_context, get_logger
from propstudio.services.orchestrator import JobOrchestrator

log = get_logger(__name__)


class JobDispatcher(ABC):
    @abstractmethod
    async def dispatch(self, job_id: str) -> None:
        ...

    async def aclose(self) -> None:
        pass


class InlineDispatcher(JobDispatcher):
    """Drive each job as an asyncio task in this process (dev / memory backend)."""

    def __init__(self, orchestrator: JobOrchestrator) -> None:
        self.orchestrator = orchestrator
        self._tasks: set[asyncio.Task] = set()

    async def dispatch(self, job_id: str) -> None:
        task = asyncio.create_task(self._drive(job_id), name=f"drive_job:{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drive(self, job_id: str) -> None:
        bind_job_context(job_id)
        try:
            await self.orchestrator.run(job_id)
        except Exception:
            log.exception("job_drive_failed", job_id=job_id)
        finally:
            clear_job_context()

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()


class ArqDispatcher(JobDispatcher):
    """Enqueue drive_job on the arq worker."""

    async def dispatch(self, job_id: str) -> None:
        from propstudio.worker.tasks import enqueue_drive_job
        await enqueue_drive_job(job_id)
