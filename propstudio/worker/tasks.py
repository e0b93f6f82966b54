"""ARQ task definitions: drive jobs tick by tick with delayed redelivery."""

import uuid
from typing import Any
from urllib.parse import urlparse

from arq import create_pool
from arq.connections import RedisSettings

from propstudio.core.config import get_settings
from propstudio.core.logging import bind_job_context, clear_job_context, configure_logging, get_logger
from propstudio.services.container import build_services

log = get_logger(__name__)


async def _run_with_dlq(task_name: str, task_id: str | None, args: list[Any], coro) -> Any:
    """Run coroutine; on exception persist to FailedTask then re-raise."""
    try:
        return await coro
    except Exception as e:
        from propstudio.models.failed_job import FailedTask
        await FailedTask(
            task_name=task_name,
            task_id=task_id or "",
            args=args,
            reason=str(e)[:2000],
        ).insert()
        log.exception("task_failed", task=task_name, task_id=task_id, reason=str(e))
        raise


async def drive_job(ctx: dict[str, Any], job_id: str, driver_id: str | None = None) -> str:
    """Advance one job by one tick; re-enqueue itself until the job is terminal.

    Each chain of drive_job calls carries a driver_id and holds the job's lease;
    a chain that finds the lease taken by another chain stops.
    """
    task_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    orchestrator = ctx["services"].orchestrator
    driver_id = driver_id or uuid.uuid4().hex

    async def _run() -> str:
        bind_job_context(job_id)
        try:
            if not await orchestrator.claim_driver(job_id, driver_id, ctx["settings"].stalled_job_seconds):
                log.info("job_driver_skipped", driver_id=driver_id)
                return "skipped"
            job = await orchestrator.advance(job_id)
            if job.is_terminal:
                log.info("job_done", status=job.status, completed_items=job.completed_items)
                return job.status
            delay = await orchestrator.next_tick_in(job_id)
            await ctx["redis"].enqueue_job("drive_job", job_id, driver_id, _defer_by=delay)
            return job.status
        finally:
            clear_job_context()

    return await _run_with_dlq("drive_job", task_id, [job_id, driver_id], _run())


async def resume_stalled_jobs(ctx: dict[str, Any]) -> int:
    """Cron: re-drive processing jobs that lost their driver (worker restart, lost message)."""
    settings = ctx["settings"]
    job_ids = await ctx["services"].orchestrator.resume_stalled(settings.stalled_job_seconds)
    for job_id in job_ids:
        await ctx["redis"].enqueue_job("drive_job", job_id)
    if job_ids:
        log.info("stalled_jobs_resumed", count=len(job_ids))
    return len(job_ids)


async def startup(ctx: dict[str, Any]) -> None:
    from propstudio.db.init import init_db
    settings = get_settings()
    configure_logging(debug=settings.debug)
    await init_db()
    ctx["settings"] = settings
    ctx["services"] = build_services(settings)


async def shutdown(ctx: dict[str, Any]) -> None:
    services = ctx.get("services")
    if services is not None:
        await services.aclose()


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/") or 0),
    )


async def enqueue_drive_job(job_id: str) -> None:
    """Enqueue drive_job (call from API)."""
    redis = await create_pool(get_redis_settings())
    try:
        await redis.enqueue_job("drive_job", job_id)
    finally:
        await redis.aclose()
