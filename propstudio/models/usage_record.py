import uuid
from datetime import datetime

import pymongo
from beanie import Document
from pydantic import BaseModel, Field


def _auto_key() -> str:
    return f"auto:{uuid.uuid4().hex}"


class UsageRecord(BaseModel):
    """Append-only credit movement.

    credits_delta is positive for a deduction and negative for a refund or top-up,
    so for any account: credits_balance == -sum(credits_delta).
    """
    user_id: str
    feature: str  # video, image_edit, item_failed, item_submit_failed, purchase, initial_grant, ...
    credits_delta: int
    balance_after: int
    reference_id: str | None = None  # job_id / item_id / package_id
    idempotency_key: str = Field(default_factory=_auto_key)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class UsageRecordDocument(UsageRecord, Document):
    class Settings:
        name = "usage_records"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("feature", 1)],
            pymongo.IndexModel(
                [("user_id", pymongo.ASCENDING), ("idempotency_key", pymongo.ASCENDING)],
                unique=True,
            ),
        ]
