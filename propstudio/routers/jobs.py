from fastapi import APIRouter, Depends, Query

from propstudio.deps import get_orchestrator, get_user_id
from propstudio.models.job import Job
from propstudio.models.job_item import JobItem
from propstudio.services.orchestrator import JobOrchestrator

router = APIRouter()


def _job_view(job: Job, items: list[JobItem]) -> dict:
    def count(s: str) -> int:
        return sum(1 for i in items if i.status == s)

    return {
        "id": job.job_id,
        "operation": job.operation,
        "status": job.status,
        "completed_items": job.completed_items,
        "total_items": job.total_items,
        "error_message": job.error_message,
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
        "progress": {
            "pending": count("pending") + count("submitted"),
            "processing": count("processing"),
            "succeeded": count("succeeded"),
            "failed": count("failed"),
        },
        "items": [
            {
                "id": i.item_id,
                "input_ref": i.input_ref,
                "status": i.status,
                "output_ref": i.output_ref,
                "error": i.error,
            }
            for i in items
        ],
    }


@router.get("")
async def jobs_list(
    user_id: str = Depends(get_user_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    limit: int = Query(50, ge=1, le=200),
):
    jobs = await orchestrator.list_jobs(user_id, limit=limit)
    return {
        "jobs": [
            {
                "id": j.job_id,
                "operation": j.operation,
                "status": j.status,
                "completed_items": j.completed_items,
                "total_items": j.total_items,
                "created_at": j.created_at.isoformat(),
            }
            for j in jobs
        ]
    }


@router.get("/{job_id}")
async def job_status(
    job_id: str,
    user_id: str = Depends(get_user_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Job status with per-item results."""
    job, items = await orchestrator.get_job(job_id, user_id)
    return _job_view(job, items)


@router.post("/{job_id}/cancel")
async def job_cancel(
    job_id: str,
    user_id: str = Depends(get_user_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Stop unfinished items; their credits are refunded."""
    job = await orchestrator.cancel_job(job_id, user_id)
    _, items = await orchestrator.get_job(job_id, user_id)
    return _job_view(job, items)
