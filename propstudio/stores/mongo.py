"""MongoDB (Beanie/Motor) ledger and job stores.

Balance changes are single-document atomic updates: reserve is a conditional
find_one_and_update on credits_balance >= amount, i.e. compare-and-swap per user.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, TypeVar

from beanie import Document, UpdateResponse
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError, PyMongoError

from propstudio.core.exceptions import StorageError
from propstudio.core.logging import get_logger
from propstudio.models.account import Account, AccountDocument
from propstudio.models.job import Job, JobDocument
from propstudio.models.job_item import ITEM_TRANSITIONS, JobItem, JobItemDocument
from propstudio.models.usage_record import UsageRecord, UsageRecordDocument
from propstudio.stores.base import DuplicateUsageError, JobStore, LedgerStore

log = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


def _plain(model: type[M], doc: Document | None) -> M | None:
    if doc is None:
        return None
    return model.model_validate(doc.model_dump(exclude={"id", "revision_id"}))


@asynccontextmanager
async def _storage_errors(op: str) -> AsyncIterator[None]:
    try:
        yield
    except PyMongoError as e:
        log.error("storage_error", op=op, error=str(e))
        raise StorageError(f"Storage failure during {op}") from e


class MongoLedgerStore(LedgerStore):
    async def get_account(self, user_id: str) -> Account | None:
        async with _storage_errors("get_account"):
            doc = await AccountDocument.find_one({"user_id": user_id})
        return _plain(Account, doc)

    async def create_account(self, account: Account) -> tuple[Account, bool]:
        async with _storage_errors("create_account"):
            try:
                await AccountDocument(**account.model_dump()).insert()
                return account, True
            except DuplicateKeyError:
                doc = await AccountDocument.find_one({"user_id": account.user_id})
                return _plain(Account, doc), False

    async def reserve(self, user_id: str, amount: int) -> Account | None:
        async with _storage_errors("reserve"):
            doc = await AccountDocument.find_one(
                {"user_id": user_id, "credits_balance": {"$gte": amount}}
            ).update(
                {"$inc": {"credits_balance": -amount}, "$set": {"updated_at": datetime.utcnow()}},
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
        return _plain(Account, doc)

    async def credit(self, user_id: str, amount: int) -> Account:
        async with _storage_errors("credit"):
            doc = await AccountDocument.find_one({"user_id": user_id}).update(
                {"$inc": {"credits_balance": amount}, "$set": {"updated_at": datetime.utcnow()}},
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
        if doc is None:
            raise StorageError(f"Account {user_id} missing")
        return _plain(Account, doc)

    async def append_usage(self, record: UsageRecord) -> UsageRecord:
        async with _storage_errors("append_usage"):
            try:
                await UsageRecordDocument(**record.model_dump()).insert()
            except DuplicateKeyError as e:
                raise DuplicateUsageError(record.idempotency_key) from e
        return record

    async def find_usage(self, user_id: str, idempotency_key: str) -> UsageRecord | None:
        async with _storage_errors("find_usage"):
            doc = await UsageRecordDocument.find_one({"user_id": user_id, "idempotency_key": idempotency_key})
        return _plain(UsageRecord, doc)

    async def list_usage(self, user_id: str, limit: int = 50, offset: int = 0) -> list[UsageRecord]:
        async with _storage_errors("list_usage"):
            docs = (
                await UsageRecordDocument.find({"user_id": user_id})
                .sort([("created_at", -1)])
                .skip(offset)
                .limit(limit)
                .to_list()
            )
        return [_plain(UsageRecord, d) for d in docs]

    async def sum_usage(self, user_id: str) -> int:
        async with _storage_errors("sum_usage"):
            docs = await UsageRecordDocument.find({"user_id": user_id}).to_list()
        return sum(d.credits_delta for d in docs)


class MongoJobStore(JobStore):
    async def create_job(self, job: Job, items: list[JobItem]) -> Job:
        async with _storage_errors("create_job"):
            await JobDocument(**job.model_dump()).insert()
            if items:
                await JobItemDocument.insert_many([JobItemDocument(**i.model_dump()) for i in items])
        return job

    async def get_job(self, job_id: str) -> Job | None:
        async with _storage_errors("get_job"):
            doc = await JobDocument.find_one({"job_id": job_id})
        return _plain(Job, doc)

    async def update_job(self, job_id: str, **fields: Any) -> Job | None:
        fields.setdefault("updated_at", datetime.utcnow())
        async with _storage_errors("update_job"):
            doc = await JobDocument.find_one({"job_id": job_id}).update(
                {"$set": fields},
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
        return _plain(Job, doc)

    async def increment_completed(self, job_id: str) -> Job | None:
        async with _storage_errors("increment_completed"):
            doc = await JobDocument.find_one({"job_id": job_id}).update(
                {"$inc": {"completed_items": 1}, "$set": {"updated_at": datetime.utcnow()}},
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
        return _plain(Job, doc)

    async def list_jobs(self, user_id: str, limit: int = 50) -> list[Job]:
        async with _storage_errors("list_jobs"):
            docs = (
                await JobDocument.find({"user_id": user_id})
                .sort([("created_at", -1)])
                .limit(limit)
                .to_list()
            )
        return [_plain(Job, d) for d in docs]

    async def list_stalled_jobs(self, updated_before: datetime, now: datetime, limit: int = 100) -> list[Job]:
        async with _storage_errors("list_stalled_jobs"):
            docs = (
                await JobDocument.find(
                    {
                        "status": "processing",
                        "updated_at": {"$lt": updated_before},
                        "$or": [{"driver_until": None}, {"driver_until": {"$lte": now}}],
                    }
                )
                .limit(limit)
                .to_list()
            )
        return [_plain(Job, d) for d in docs]

    async def claim_driver(self, job_id: str, driver_id: str, until: datetime, now: datetime) -> Job | None:
        async with _storage_errors("claim_driver"):
            doc = await JobDocument.find_one(
                {
                    "job_id": job_id,
                    "status": "processing",
                    "$or": [
                        {"driver_id": driver_id},
                        {"driver_until": None},
                        {"driver_until": {"$lte": now}},
                    ],
                }
            ).update(
                {"$set": {"driver_id": driver_id, "driver_until": until}},
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
        return _plain(Job, doc)

    async def list_items(self, job_id: str) -> list[JobItem]:
        async with _storage_errors("list_items"):
            docs = await JobItemDocument.find({"job_id": job_id}).sort([("position", 1)]).to_list()
        return [_plain(JobItem, d) for d in docs]

    async def get_item(self, item_id: str) -> JobItem | None:
        async with _storage_errors("get_item"):
            doc = await JobItemDocument.find_one({"item_id": item_id})
        return _plain(JobItem, doc)

    async def transition_item(self, item_id: str, to_status: str, **fields: Any) -> JobItem | None:
        allowed_from = list(ITEM_TRANSITIONS[to_status])
        async with _storage_errors("transition_item"):
            doc = await JobItemDocument.find_one(
                {"item_id": item_id, "status": {"$in": allowed_from}}
            ).update(
                {"$set": {**fields, "status": to_status, "updated_at": datetime.utcnow()}},
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
        return _plain(JobItem, doc)

    async def update_item(self, item_id: str, expected_status: str, **fields: Any) -> JobItem | None:
        async with _storage_errors("update_item"):
            doc = await JobItemDocument.find_one(
                {"item_id": item_id, "status": expected_status}
            ).update(
                {"$set": {**fields, "updated_at": datetime.utcnow()}},
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
        return _plain(JobItem, doc)
