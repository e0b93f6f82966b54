import uuid
from datetime import datetime
from typing import Literal

import pymongo
from beanie import Document
from pydantic import BaseModel, Field

ItemStatus = Literal["pending", "submitted", "processing", "succeeded", "failed"]

ITEM_TERMINAL = ("succeeded", "failed")

# Allowed predecessors for each status; transitions never move backwards.
ITEM_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "submitted": ("pending",),
    "processing": ("submitted",),
    "succeeded": ("processing",),
    "failed": ("pending", "submitted", "processing"),
}


class JobItem(BaseModel):
    """One unit of work inside a Job (one image -> one clip)."""
    item_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    job_id: str
    position: int
    input_ref: str
    status: ItemStatus = "pending"
    external_job_id: str | None = None
    output_ref: str | None = None
    error: str | None = None
    poll_attempts: int = 0
    poll_errors: int = 0
    next_poll_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in ITEM_TERMINAL


class JobItemDocument(JobItem, Document):
    class Settings:
        name = "job_items"
        indexes = [
            pymongo.IndexModel([("item_id", pymongo.ASCENDING)], unique=True),
            [("job_id", 1), ("position", 1)],
        ]
