from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from propstudio.deps import get_dispatcher, get_orchestrator
from propstudio.services.dispatch import JobDispatcher
from propstudio.services.orchestrator import JobOrchestrator

router = APIRouter()


class GenerateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    operation: str = "video"
    items: list[str] = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def generate(
    body: GenerateRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """Reserve credits for every item, create the job and hand it to the worker."""
    job = await orchestrator.start_batch(body.user_id, body.operation, body.items, params=body.params)
    await dispatcher.dispatch(job.job_id)
    return {
        "job_id": job.job_id,
        "status": job.status,
        "total_items": job.total_items,
        "credits_reserved": job.credits_per_item * job.total_items,
        "balance": await orchestrator.ledger.get_balance(body.user_id),
    }
