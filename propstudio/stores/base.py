from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from propstudio.core.config import Settings
from propstudio.models.account import Account
from propstudio.models.job import Job
from propstudio.models.job_item import JobItem
from propstudio.models.usage_record import UsageRecord


class DuplicateUsageError(Exception):
    """A usage record with the same idempotency key already exists."""

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(idempotency_key)


class LedgerStore(ABC):
    @abstractmethod
    async def get_account(self, user_id: str) -> Account | None:
        ...

    @abstractmethod
    async def create_account(self, account: Account) -> tuple[Account, bool]:
        """Insert account unless one exists; return (account, created)."""
        ...

    @abstractmethod
    async def reserve(self, user_id: str, amount: int) -> Account | None:
        """Decrement balance by amount iff balance >= amount, atomically per user.

        Returns the updated account, or None when the balance is too low (no mutation).
        """
        ...

    @abstractmethod
    async def credit(self, user_id: str, amount: int) -> Account:
        """Increment balance by amount (negative amount reverses an earlier credit)."""
        ...

    @abstractmethod
    async def append_usage(self, record: UsageRecord) -> UsageRecord:
        """Append usage record. Raises DuplicateUsageError when (user_id, idempotency_key) exists."""
        ...

    @abstractmethod
    async def find_usage(self, user_id: str, idempotency_key: str) -> UsageRecord | None:
        """Usage record with this key for this user; keys are scoped per user."""
        ...

    @abstractmethod
    async def list_usage(self, user_id: str, limit: int = 50, offset: int = 0) -> list[UsageRecord]:
        """Newest first."""
        ...

    @abstractmethod
    async def sum_usage(self, user_id: str) -> int:
        ...


class JobStore(ABC):
    @abstractmethod
    async def create_job(self, job: Job, items: list[JobItem]) -> Job:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> Job | None:
        ...

    @abstractmethod
    async def increment_completed(self, job_id: str) -> Job | None:
        ...

    @abstractmethod
    async def list_jobs(self, user_id: str, limit: int = 50) -> list[Job]:
        """Newest first."""
        ...

    @abstractmethod
    async def list_stalled_jobs(self, updated_before: datetime, now: datetime, limit: int = 100) -> list[Job]:
        """Jobs still processing whose last heartbeat is older than updated_before
        and whose driver lease, if any, has expired by now.
        """
        ...

    @abstractmethod
    async def claim_driver(self, job_id: str, driver_id: str, until: datetime, now: datetime) -> Job | None:
        """Take or renew the driver lease of a processing job.

        Succeeds when driver_id already holds the lease or the lease is free or
        expired by now; returns None otherwise (another driver owns the job, or
        the job is terminal).
        """
        ...

    @abstractmethod
    async def list_items(self, job_id: str) -> list[JobItem]:
        """Items ordered by position."""
        ...

    @abstractmethod
    async def get_item(self, item_id: str) -> JobItem | None:
        ...

    @abstractmethod
    async def transition_item(self, item_id: str, to_status: str, **fields: Any) -> JobItem | None:
        """Move item to to_status iff its current status is an allowed predecessor.

        Returns the updated item, or None when the transition is not allowed
        (already terminal, claimed by another driver, ...).
        """
        ...

    @abstractmethod
    async def update_item(self, item_id: str, expected_status: str, **fields: Any) -> JobItem | None:
        """Set fields iff the item is still in expected_status."""
        ...


def build_stores(settings: Settings) -> tuple[LedgerStore, JobStore]:
    """Return a (ledger_store, job_store) pair for the configured backend."""
    if settings.store_backend == "memory":
        from propstudio.stores.memory import MemoryJobStore, MemoryLedgerStore
        return MemoryLedgerStore(), MemoryJobStore()
    from propstudio.stores.mongo import MongoJobStore, MongoLedgerStore
    return MongoLedgerStore(), MongoJobStore()
