import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from propstudio.core.config import get_settings
from propstudio.models.account import AccountDocument
from propstudio.models.failed_job import FailedTask
from propstudio.models.job import JobDocument
from propstudio.models.job_item import JobItemDocument
from propstudio.models.usage_record import UsageRecordDocument

DOCUMENT_MODELS = [
    AccountDocument,
    UsageRecordDocument,
    JobDocument,
    JobItemDocument,
    FailedTask,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Plain mongodb:// stays plaintext for local/CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(client: AsyncIOMotorClient | None = None) -> None:
    settings = get_settings()
    if client is None:
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
