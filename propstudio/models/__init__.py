from propstudio.models.account import Account, AccountDocument
from propstudio.models.failed_job import FailedTask
from propstudio.models.job import Job, JobDocument
from propstudio.models.job_item import JobItem, JobItemDocument
from propstudio.models.usage_record import UsageRecord, UsageRecordDocument

__all__ = [
    "Account",
    "AccountDocument",
    "UsageRecord",
    "UsageRecordDocument",
    "Job",
    "JobDocument",
    "JobItem",
    "JobItemDocument",
    "FailedTask",
]
