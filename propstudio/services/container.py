"""Explicit wiring of stores, ledger, adapter and orchestrator (no module-level clients)."""

from dataclasses import dataclass

from propstudio.core.config import Settings
from propstudio.services.credits import CreditLedger
from propstudio.services.inference import InferenceAdapter, ReplicateAdapter
from propstudio.services.operations import build_profiles
from propstudio.services.orchestrator import JobOrchestrator
from propstudio.stores.base import JobStore, LedgerStore, build_stores


@dataclass
class Services:
    ledger: CreditLedger
    orchestrator: JobOrchestrator
    adapter: InferenceAdapter

    async def aclose(self) -> None:
        if isinstance(self.adapter, ReplicateAdapter):
            await self.adapter.aclose()


def build_services(
    settings: Settings,
    ledger_store: LedgerStore | None = None,
    job_store: JobStore | None = None,
    adapter: InferenceAdapter | None = None,
) -> Services:
    if ledger_store is None or job_store is None:
        ledger_store, job_store = build_stores(settings)
    if adapter is None:
        adapter = ReplicateAdapter(
            api_token=settings.replicate_api_token,
            base_url=settings.replicate_base_url,
            timeout=settings.replicate_timeout_seconds,
        )
    ledger = CreditLedger(ledger_store, default_credits=settings.default_credits)
    orchestrator = JobOrchestrator(
        ledger,
        job_store,
        adapter,
        build_profiles(settings),
        max_batch_items=settings.max_batch_items,
        orphan_after_seconds=settings.replicate_timeout_seconds * 4,
    )
    return Services(ledger=ledger, orchestrator=orchestrator, adapter=adapter)
