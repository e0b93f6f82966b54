"""In-process ledger and job stores for local development and tests."""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any

from propstudio.core.exceptions import StorageError
from propstudio.models.account import Account
from propstudio.models.job import Job
from propstudio.models.job_item import ITEM_TRANSITIONS, JobItem
from propstudio.models.usage_record import UsageRecord
from propstudio.stores.base import DuplicateUsageError, JobStore, LedgerStore


class MemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._usage: list[UsageRecord] = []
        self._keys: set[tuple[str, str]] = set()
        # balance read-modify-write is serialized per user, not globally
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_account(self, user_id: str) -> Account | None:
        acc = self._accounts.get(user_id)
        return acc.model_copy() if acc else None

    async def create_account(self, account: Account) -> tuple[Account, bool]:
        async with self._locks[account.user_id]:
            existing = self._accounts.get(account.user_id)
            if existing:
                return existing.model_copy(), False
            self._accounts[account.user_id] = account.model_copy()
            return account.model_copy(), True

    async def reserve(self, user_id: str, amount: int) -> Account | None:
        async with self._locks[user_id]:
            acc = self._accounts.get(user_id)
            if acc is None:
                raise StorageError(f"Account {user_id} missing")
            if acc.credits_balance < amount:
                return None
            acc.credits_balance -= amount
            acc.updated_at = datetime.utcnow()
            return acc.model_copy()

    async def credit(self, user_id: str, amount: int) -> Account:
        async with self._locks[user_id]:
            acc = self._accounts.get(user_id)
            if acc is None:
                raise StorageError(f"Account {user_id} missing")
            acc.credits_balance += amount
            acc.updated_at = datetime.utcnow()
            return acc.model_copy()

    async def append_usage(self, record: UsageRecord) -> UsageRecord:
        key = (record.user_id, record.idempotency_key)
        if key in self._keys:
            raise DuplicateUsageError(record.idempotency_key)
        self._keys.add(key)
        self._usage.append(record.model_copy())
        return record

    async def find_usage(self, user_id: str, idempotency_key: str) -> UsageRecord | None:
        for r in self._usage:
            if r.user_id == user_id and r.idempotency_key == idempotency_key:
                return r.model_copy()
        return None

    async def list_usage(self, user_id: str, limit: int = 50, offset: int = 0) -> list[UsageRecord]:
        mine = [r for r in reversed(self._usage) if r.user_id == user_id]
        return [r.model_copy() for r in mine[offset:offset + limit]]

    async def sum_usage(self, user_id: str) -> int:
        return sum(r.credits_delta for r in self._usage if r.user_id == user_id)


class MemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._items: dict[str, JobItem] = {}
        self._lock = asyncio.Lock()

    async def create_job(self, job: Job, items: list[JobItem]) -> Job:
        async with self._lock:
            self._jobs[job.job_id] = job.model_copy(deep=True)
            for item in items:
                self._items[item.item_id] = item.model_copy()
        return job

    async def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def update_job(self, job_id: str, **fields: Any) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            fields.setdefault("updated_at", datetime.utcnow())
            updated = job.model_copy(update=fields, deep=True)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def increment_completed(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            job.completed_items += 1
            job.updated_at = datetime.utcnow()
            return job.model_copy(deep=True)

    async def list_jobs(self, user_id: str, limit: int = 50) -> list[Job]:
        mine = sorted(
            (j for j in self._jobs.values() if j.user_id == user_id),
            key=lambda j: j.created_at,
            reverse=True,
        )
        return [j.model_copy(deep=True) for j in mine[:limit]]

    async def list_stalled_jobs(self, updated_before: datetime, now: datetime, limit: int = 100) -> list[Job]:
        stalled = [
            j for j in self._jobs.values()
            if j.status == "processing"
            and j.updated_at < updated_before
            and (j.driver_until is None or j.driver_until <= now)
        ]
        return [j.model_copy(deep=True) for j in stalled[:limit]]

    async def claim_driver(self, job_id: str, driver_id: str, until: datetime, now: datetime) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != "processing":
                return None
            free = job.driver_until is None or job.driver_until <= now
            if job.driver_id != driver_id and not free:
                return None
            job.driver_id = driver_id
            job.driver_until = until
            return job.model_copy(deep=True)

    async def list_items(self, job_id: str) -> list[JobItem]:
        items = sorted(
            (i for i in self._items.values() if i.job_id == job_id),
            key=lambda i: i.position,
        )
        return [i.model_copy() for i in items]

    async def get_item(self, item_id: str) -> JobItem | None:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    async def transition_item(self, item_id: str, to_status: str, **fields: Any) -> JobItem | None:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status not in ITEM_TRANSITIONS[to_status]:
                return None
            updated = item.model_copy(
                update={**fields, "status": to_status, "updated_at": datetime.utcnow()}
            )
            self._items[item_id] = updated
            return updated.model_copy()

    async def update_item(self, item_id: str, expected_status: str, **fields: Any) -> JobItem | None:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status != expected_status:
                return None
            updated = item.model_copy(update={**fields, "updated_at": datetime.utcnow()})
            self._items[item_id] = updated
            return updated.model_copy()
