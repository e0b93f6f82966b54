from datetime import datetime
from typing import Literal

import pymongo
from beanie import Document
from pydantic import BaseModel, Field

SubscriptionTier = Literal["free", "starter", "pro", "elite", "agency"]


class Account(BaseModel):
    """Prepaid credit balance for one user. Created lazily on first ledger access."""
    user_id: str
    credits_balance: int = Field(default=0, ge=0)
    subscription_tier: SubscriptionTier = "free"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class AccountDocument(Account, Document):
    class Settings:
        name = "accounts"
        indexes = [
            pymongo.IndexModel([("user_id", pymongo.ASCENDING)], unique=True),
        ]
