from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel

from propstudio.deps import get_ledger, get_user_id
from propstudio.services.credits import CreditLedger

router = APIRouter()


class TopUpRequest(BaseModel):
    package_id: str


@router.get("/balance")
async def credits_balance(user_id: str = Depends(get_user_id), ledger: CreditLedger = Depends(get_ledger)):
    """Return current credit balance (provisions the account on first call)."""
    account = await ledger.get_account(user_id)
    return {"balance": account.credits_balance, "subscription_tier": account.subscription_tier}


@router.get("/usage")
async def credits_usage(
    user_id: str = Depends(get_user_id),
    ledger: CreditLedger = Depends(get_ledger),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return usage records for current user (newest first)."""
    records = await ledger.usage(user_id, limit=limit, offset=offset)
    out = [
        {
            "feature": r.feature,
            "credits_delta": r.credits_delta,
            "balance_after": r.balance_after,
            "reference_id": r.reference_id,
            "created_at": r.created_at.isoformat(),
        }
        for r in records
    ]
    return {"entries": out, "limit": limit, "offset": offset}


@router.post("/topup")
async def credits_topup(
    body: TopUpRequest,
    user_id: str = Depends(get_user_id),
    ledger: CreditLedger = Depends(get_ledger),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Apply a confirmed credit package purchase. Optional Idempotency-Key."""
    added, balance = await ledger.topup_package(user_id, body.package_id, idempotency_key=idempotency_key)
    return {"credits": balance, "added": added}
