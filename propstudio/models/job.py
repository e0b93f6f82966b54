import uuid
from datetime import datetime
from typing import Any, Literal

import pymongo
from beanie import Document
from pydantic import BaseModel, Field

JobStatus = Literal["pending", "processing", "completed", "failed"]

JOB_TERMINAL = ("completed", "failed")


class Job(BaseModel):
    """One batch generation request (e.g. N photos -> N clips)."""
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    operation: str
    status: JobStatus = "pending"
    total_items: int
    completed_items: int = 0
    credits_per_item: int
    params: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    # lease held by the worker chain currently driving the job
    driver_id: str | None = None
    driver_until: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in JOB_TERMINAL


class JobDocument(Job, Document):
    class Settings:
        name = "jobs"
        indexes = [
            pymongo.IndexModel([("job_id", pymongo.ASCENDING)], unique=True),
            [("user_id", 1), ("created_at", -1)],
            [("status", 1), ("updated_at", 1)],
        ]
