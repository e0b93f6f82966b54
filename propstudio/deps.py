"""Shared FastAPI dependencies."""

from fastapi import Header, Request

from propstudio.core.exceptions import UnauthorizedError
from propstudio.services.credits import CreditLedger
from propstudio.services.dispatch import JobDispatcher
from propstudio.services.orchestrator import JobOrchestrator

USER_HEADER = "X-User-ID"


async def get_user_id(x_user_id: str | None = Header(None, alias=USER_HEADER)) -> str:
    """Dependency: user id set by the upstream auth gateway after verifying the bearer token."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("Not authenticated")
    return x_user_id.strip()


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.services.ledger


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.services.orchestrator


def get_dispatcher(request: Request) -> JobDispatcher:
    return request.app.state.dispatcher
