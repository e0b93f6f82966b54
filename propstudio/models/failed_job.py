"""Dead-letter: arq tasks that raised, kept for inspection."""

from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class FailedTask(Document):
    task_name: str
    task_id: str
    args: list[Any] = Field(default_factory=list)
    reason: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "failed_tasks"
        indexes = [[("task_name", 1)], [("created_at", -1)]]
