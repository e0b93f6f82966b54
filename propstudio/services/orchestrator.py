"""Batch generation jobs: reserve credits, fan out one prediction per item,
poll to a terminal state, refund failed items, finalize the job.

Each call to advance() is one resumable tick whose progress lives in the
JobStore, so a job can be driven by an in-process loop (run) or by a task
queue with delayed redelivery (see propstudio.worker.tasks).
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from propstudio.core.exceptions import (
    BadRequestError,
    ConflictError,
    InsufficientCreditsError,
    NotFoundError,
    StorageError,
)
from propstudio.core.logging import get_logger
from propstudio.models.job import Job
from propstudio.models.job_item import JobItem
from propstudio.services.credits import CreditLedger
from propstudio.services.inference import AdapterError, InferenceAdapter
from propstudio.services.operations import OperationProfile, get_profile
from propstudio.stores.base import JobStore

log = get_logger(__name__)

# refund reasons recorded on the usage log
REFUND_SUBMIT_FAILED = "item_submit_failed"
REFUND_ITEM_FAILED = "item_failed"
REFUND_CANCELLED = "job_cancelled"
REFUND_CREATE_FAILED = "job_create_failed"


def refund_key(item_id: str) -> str:
    return f"refund:{item_id}"


class JobOrchestrator:
    def __init__(
        self,
        ledger: CreditLedger,
        jobs: JobStore,
        adapter: InferenceAdapter,
        profiles: dict[str, OperationProfile],
        max_batch_items: int = 10,
        orphan_after_seconds: float = 120.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.ledger = ledger
        self.jobs = jobs
        self.adapter = adapter
        self.profiles = profiles
        self.max_batch_items = max_batch_items
        self.orphan_after = timedelta(seconds=orphan_after_seconds)
        self._sleep = sleep
        self._clock = clock

    # -- creation --------------------------------------------------------

    async def start_batch(
        self,
        user_id: str,
        operation: str,
        inputs: list[str],
        params: dict[str, Any] | None = None,
    ) -> Job:
        """Reserve credits for every item and persist the job. Nothing is submitted yet."""
        profile = get_profile(self.profiles, operation)
        refs = [r.strip() for r in inputs if isinstance(r, str)]
        if not refs:
            raise BadRequestError("At least one item is required")
        if len(refs) != len(inputs) or any(not r for r in refs):
            raise BadRequestError("Items must be non-empty strings")
        if len(refs) > self.max_batch_items:
            raise BadRequestError(f"Maximum {self.max_batch_items} items allowed")

        total_cost = profile.credits_per_item * len(refs)
        job = Job(
            user_id=user_id,
            operation=operation,
            status="processing",
            total_items=len(refs),
            credits_per_item=profile.credits_per_item,
            params=params or {},
        )
        reservation = await self.ledger.check_and_reserve(
            user_id, total_cost, feature=operation, reference_id=job.job_id
        )
        if not reservation.ok:
            raise InsufficientCreditsError(balance=reservation.balance, required=total_cost)

        items = [JobItem(job_id=job.job_id, position=i, input_ref=ref) for i, ref in enumerate(refs)]
        try:
            await self.jobs.create_job(job, items)
        except StorageError:
            await self.ledger.refund(
                user_id,
                total_cost,
                REFUND_CREATE_FAILED,
                idempotency_key=f"create_failed:{job.job_id}",
                reference_id=job.job_id,
            )
            raise
        log.info(
            "job_created",
            job_id=job.job_id,
            user_id=user_id,
            operation=operation,
            total_items=job.total_items,
            credits_reserved=total_cost,
            balance=reservation.balance,
        )
        return job

    # -- reads -----------------------------------------------------------

    async def get_job(self, job_id: str, user_id: str | None = None) -> tuple[Job, list[JobItem]]:
        job = await self.jobs.get_job(job_id)
        if not job or (user_id is not None and job.user_id != user_id):
            raise NotFoundError("Job not found")
        return job, await self.jobs.list_items(job_id)

    async def list_jobs(self, user_id: str, limit: int = 50) -> list[Job]:
        return await self.jobs.list_jobs(user_id, limit=limit)

    # -- driving ---------------------------------------------------------

    async def advance(self, job_id: str) -> Job:
        """One tick: submit pending items, poll due items once, finalize when all are terminal."""
        job, items = await self.get_job(job_id)
        if job.is_terminal:
            return job
        profile = get_profile(self.profiles, job.operation)

        await self._recover_orphans(job, items)
        if any(i.status == "pending" for i in items):
            await self.submit_pending(job, profile)

        now = self._clock()
        for item in await self.jobs.list_items(job_id):
            if item.status == "processing" and (item.next_poll_at is None or item.next_poll_at <= now):
                await self.poll_item(job, profile, item)

        items = await self.jobs.list_items(job_id)
        if all(i.is_terminal for i in items):
            return await self._finalize(job, items)
        # heartbeat so the stalled-job sweep leaves live jobs alone
        return await self.jobs.update_job(job_id) or job

    async def run(self, job_id: str) -> Job:
        """Drive a job to a terminal status in-process, yielding to other tasks between polls."""
        while True:
            job = await self.advance(job_id)
            if job.is_terminal:
                return job
            await self._sleep(await self.next_tick_in(job_id))

    async def next_tick_in(self, job_id: str) -> float:
        """Seconds until the earliest processing item is due for its next poll."""
        job, items = await self.get_job(job_id)
        profile = get_profile(self.profiles, job.operation)
        now = self._clock()
        due = [i.next_poll_at for i in items if i.status == "processing" and i.next_poll_at]
        if not due:
            return profile.poll.next_delay()
        return max(0.0, (min(due) - now).total_seconds())

    async def submit_pending(self, job: Job, profile: OperationProfile) -> None:
        """Submit pending items one after another; provider rate limits forbid fan-out."""
        for item in await self.jobs.list_items(job.job_id):
            if item.status != "pending":
                continue
            claimed = await self.jobs.transition_item(item.item_id, "submitted")
            if claimed is None:
                continue
            try:
                external_id = await self.adapter.submit(profile, claimed.input_ref, job.params)
            except AdapterError as e:
                await self._fail_item(job, claimed, f"submit_failed: {e}", REFUND_SUBMIT_FAILED)
                continue
            moved = await self.jobs.transition_item(
                claimed.item_id,
                "processing",
                external_job_id=external_id,
                next_poll_at=self._clock() + timedelta(seconds=profile.poll.next_delay()),
            )
            if moved is None:
                # failed underneath us (cancelled); do not leave the prediction running
                await self._cancel_quietly(external_id)
                continue
            log.info("item_submitted", job_id=job.job_id, item_id=item.item_id, external_job_id=external_id)

    async def poll_item(self, job: Job, profile: OperationProfile, item: JobItem) -> JobItem | None:
        """Single poll attempt for one processing item."""
        policy = profile.poll
        attempts = item.poll_attempts + 1
        try:
            result = await self.adapter.poll(item.external_job_id)
        except AdapterError as e:
            errors = item.poll_errors + 1
            log.warning("item_poll_error", job_id=job.job_id, item_id=item.item_id, errors=errors, error=str(e))
            if errors >= policy.max_poll_errors:
                return await self._fail_item(job, item, f"poll_failed: {e}", REFUND_ITEM_FAILED)
            if attempts >= policy.max_attempts:
                return await self._time_out(job, item, attempts)
            return await self.jobs.update_item(
                item.item_id,
                "processing",
                poll_attempts=attempts,
                poll_errors=errors,
                next_poll_at=self._clock() + timedelta(seconds=policy.next_delay()),
            )

        if result.status == "succeeded":
            done = await self.jobs.transition_item(
                item.item_id, "succeeded", output_ref=result.output, poll_attempts=attempts
            )
            if done is not None:
                await self.jobs.increment_completed(job.job_id)
                log.info("item_succeeded", job_id=job.job_id, item_id=item.item_id, attempts=attempts)
                # a concurrent fail (cancel, second driver) may already have refunded it
                await self._reverse_refund(job, item.item_id)
            return done
        if result.status == "failed":
            return await self._fail_item(
                job, item, f"provider_failed: {result.error or 'unknown error'}", REFUND_ITEM_FAILED
            )
        if attempts >= policy.max_attempts:
            return await self._time_out(job, item, attempts)
        return await self.jobs.update_item(
            item.item_id,
            "processing",
            poll_attempts=attempts,
            poll_errors=0,
            next_poll_at=self._clock() + timedelta(seconds=policy.next_delay()),
        )

    async def cancel_job(self, job_id: str, user_id: str) -> Job:
        """Fail every unfinished item and refund it; the user got no output for those."""
        job, items = await self.get_job(job_id, user_id)
        if job.is_terminal:
            raise ConflictError("Job already finished", details={"status": job.status})
        for item in items:
            if item.is_terminal:
                continue
            if item.external_job_id:
                await self._cancel_quietly(item.external_job_id)
            await self._fail_item(job, item, "cancelled", REFUND_CANCELLED)
        log.info("job_cancelled", job_id=job_id, user_id=user_id)
        return await self._finalize(job, await self.jobs.list_items(job_id))

    async def resume_stalled(self, older_than_seconds: float, limit: int = 100) -> list[str]:
        """Job ids still processing with no heartbeat for older_than_seconds and no live driver lease."""
        now = self._clock()
        cutoff = now - timedelta(seconds=older_than_seconds)
        return [j.job_id for j in await self.jobs.list_stalled_jobs(cutoff, now, limit=limit)]

    async def claim_driver(self, job_id: str, driver_id: str, lease_seconds: float) -> bool:
        """Take or renew the lease that makes driver_id the only chain advancing job_id."""
        now = self._clock()
        job = await self.jobs.claim_driver(job_id, driver_id, now + timedelta(seconds=lease_seconds), now)
        return job is not None

    # -- internals -------------------------------------------------------

    async def _recover_orphans(self, job: Job, items: list[JobItem]) -> None:
        """Items claimed for submission whose provider id was never stored (driver died mid-submit)."""
        cutoff = self._clock() - self.orphan_after
        for item in items:
            if item.status == "submitted" and not item.external_job_id and item.updated_at < cutoff:
                await self._fail_item(job, item, "submit_interrupted", REFUND_SUBMIT_FAILED)

    async def _time_out(self, job: Job, item: JobItem, attempts: int) -> JobItem | None:
        await self._cancel_quietly(item.external_job_id)
        return await self._fail_item(job, item, f"timeout: no result after {attempts} polls", REFUND_ITEM_FAILED)

    async def _fail_item(self, job: Job, item: JobItem, error: str, reason: str) -> JobItem | None:
        # refund precedes the terminal transition; the per-item key makes a repeat a no-op
        current = await self.jobs.get_item(item.item_id)
        if current is None or current.is_terminal:
            return current
        balance = await self.ledger.refund(
            job.user_id,
            job.credits_per_item,
            reason,
            idempotency_key=refund_key(item.item_id),
            reference_id=item.item_id,
        )
        failed = await self.jobs.transition_item(item.item_id, "failed", error=error[:500])
        if failed is None:
            current = await self.jobs.get_item(item.item_id)
            if current is not None and current.status == "succeeded":
                # delivered while we were failing it: the item is paid for after all
                await self._reverse_refund(job, item.item_id)
            return current
        log.info(
            "item_failed",
            job_id=job.job_id,
            item_id=item.item_id,
            reason=reason,
            error=error[:200],
            refunded=job.credits_per_item,
            balance=balance,
        )
        return failed

    async def _reverse_refund(self, job: Job, item_id: str) -> None:
        reversed_ = await self.ledger.reverse_refund(
            job.user_id, job.credits_per_item, refund_key(item_id), reference_id=item_id
        )
        if reversed_:
            log.warning("item_refund_reversed", job_id=job.job_id, item_id=item_id, amount=job.credits_per_item)

    async def _finalize(self, job: Job, items: list[JobItem]) -> Job:
        succeeded = sum(1 for i in items if i.status == "succeeded")
        failed = len(items) - succeeded
        if succeeded == 0:
            status = "failed"
            first_error = next((i.error for i in items if i.error), None)
            error_message = f"All {len(items)} items failed" + (f" ({first_error})" if first_error else "")
        else:
            status = "completed"
            error_message = f"{failed} of {len(items)} items failed" if failed else None
        final = await self.jobs.update_job(
            job.job_id,
            status=status,
            completed_items=succeeded,
            error_message=error_message,
        )
        log.info(
            "job_finalized",
            job_id=job.job_id,
            status=status,
            completed_items=succeeded,
            total_items=job.total_items,
        )
        return final or job

    async def _cancel_quietly(self, external_job_id: str | None) -> None:
        if not external_job_id:
            return
        try:
            await self.adapter.cancel(external_job_id)
        except AdapterError as e:
            log.warning("prediction_cancel_failed", external_job_id=external_job_id, error=str(e))
