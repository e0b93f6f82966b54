"""Credits ledger: atomic reserve, refunds and top-ups over a LedgerStore."""

from pydantic import BaseModel

from propstudio.core.exceptions import BadRequestError
from propstudio.core.logging import get_logger
from propstudio.models.account import Account
from propstudio.models.usage_record import UsageRecord
from propstudio.stores.base import DuplicateUsageError, LedgerStore

log = get_logger(__name__)

# package_id -> credits (ZAR pricing lives with the payment gateway)
CREDIT_PACKAGES = {"100": 100, "500": 500, "1000": 1000}

INITIAL_GRANT = "initial_grant"
REFUND_REVERSED = "refund_reversed"

# client-supplied keys never share a namespace with internal ones (refund:, initial_grant:)
TOPUP_KEY_PREFIX = "topup:"
REVERSAL_KEY_PREFIX = "reversal:"


class ReserveResult(BaseModel):
    ok: bool
    balance: int  # balance after reservation, or current balance when rejected
    required: int


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise BadRequestError(f"Invalid credit amount: {amount!r}")


class CreditLedger:
    def __init__(self, store: LedgerStore, default_credits: int = 5):
        self.store = store
        self.default_credits = default_credits

    async def get_account(self, user_id: str) -> Account:
        """Return account, provisioning it with the starting grant on first access."""
        account = await self.store.get_account(user_id)
        if account:
            return account
        # grant record first; its key is per user
        try:
            await self.store.append_usage(
                UsageRecord(
                    user_id=user_id,
                    feature=INITIAL_GRANT,
                    credits_delta=-self.default_credits,
                    balance_after=self.default_credits,
                    idempotency_key=f"{INITIAL_GRANT}:{user_id}",
                )
            )
        except DuplicateUsageError:
            pass
        account, created = await self.store.create_account(
            Account(user_id=user_id, credits_balance=self.default_credits)
        )
        if created:
            log.info("account_created", user_id=user_id, balance=account.credits_balance)
        return account

    async def get_balance(self, user_id: str) -> int:
        return (await self.get_account(user_id)).credits_balance

    async def check_and_reserve(
        self,
        user_id: str,
        amount: int,
        feature: str,
        reference_id: str | None = None,
    ) -> ReserveResult:
        """Deduct amount iff the balance covers it. Rejection is a result, not an error."""
        _check_amount(amount)
        await self.get_account(user_id)
        account = await self.store.reserve(user_id, amount)
        if account is None:
            balance = await self.get_balance(user_id)
            log.info("credits_insufficient", user_id=user_id, balance=balance, required=amount)
            return ReserveResult(ok=False, balance=balance, required=amount)
        await self.store.append_usage(
            UsageRecord(
                user_id=user_id,
                feature=feature,
                credits_delta=amount,
                balance_after=account.credits_balance,
                reference_id=reference_id,
            )
        )
        log.info(
            "credits_reserved",
            user_id=user_id,
            amount=amount,
            feature=feature,
            balance=account.credits_balance,
        )
        return ReserveResult(ok=True, balance=account.credits_balance, required=amount)

    async def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        idempotency_key: str | None = None,
        reference_id: str | None = None,
    ) -> int:
        """Give credits back. With an idempotency_key a repeated refund is a no-op.

        Returns balance after.
        """
        balance, _ = await self._add(user_id, amount, reason, idempotency_key, reference_id, event="credits_refunded")
        return balance

    async def grant(
        self,
        user_id: str,
        amount: int,
        reason: str = "purchase",
        idempotency_key: str | None = None,
        reference_id: str | None = None,
    ) -> int:
        """Top up (purchase, bonus, admin adjustment). Returns balance after."""
        balance, _ = await self._add(user_id, amount, reason, idempotency_key, reference_id, event="credits_granted")
        return balance

    async def topup_package(self, user_id: str, package_id: str, idempotency_key: str | None = None) -> tuple[int, int]:
        """Apply a credit package. Returns (credits_added, balance_after); a replayed key adds 0."""
        credits = CREDIT_PACKAGES.get(package_id)
        if credits is None:
            raise BadRequestError("Invalid package ID", details={"packages": sorted(CREDIT_PACKAGES, key=int)})
        balance, applied = await self._add(
            user_id,
            credits,
            "purchase",
            f"{TOPUP_KEY_PREFIX}{idempotency_key}" if idempotency_key else None,
            f"package:{package_id}",
            event="credits_granted",
        )
        return (credits if applied else 0), balance

    async def reverse_refund(
        self,
        user_id: str,
        amount: int,
        refund_idempotency_key: str,
        reference_id: str | None = None,
    ) -> bool:
        """Take back a refund whose item turned out to succeed. At most once per refund key.

        Returns True when a reversal was applied.
        """
        _check_amount(amount)
        if not await self.store.find_usage(user_id, refund_idempotency_key):
            return False
        key = f"{REVERSAL_KEY_PREFIX}{refund_idempotency_key}"
        if await self.store.find_usage(user_id, key):
            return False
        account = await self.store.reserve(user_id, amount)
        if account is None:
            log.error("refund_reversal_short", user_id=user_id, amount=amount, idempotency_key=key)
            return False
        try:
            await self.store.append_usage(
                UsageRecord(
                    user_id=user_id,
                    feature=REFUND_REVERSED,
                    credits_delta=amount,
                    balance_after=account.credits_balance,
                    reference_id=reference_id,
                    idempotency_key=key,
                )
            )
        except DuplicateUsageError:
            await self.store.credit(user_id, amount)
            return False
        log.info("refund_reversed", user_id=user_id, amount=amount, reference_id=reference_id, balance=account.credits_balance)
        return True

    async def _add(
        self,
        user_id: str,
        amount: int,
        reason: str,
        idempotency_key: str | None,
        reference_id: str | None,
        event: str,
    ) -> tuple[int, bool]:
        _check_amount(amount)
        await self.get_account(user_id)
        if idempotency_key and await self.store.find_usage(user_id, idempotency_key):
            log.info("credits_add_skipped", user_id=user_id, idempotency_key=idempotency_key)
            return await self.get_balance(user_id), False
        # balance first, record second
        account = await self.store.credit(user_id, amount)
        record = UsageRecord(
            user_id=user_id,
            feature=reason,
            credits_delta=-amount,
            balance_after=account.credits_balance,
            reference_id=reference_id,
        )
        if idempotency_key:
            record.idempotency_key = idempotency_key
        try:
            await self.store.append_usage(record)
        except DuplicateUsageError:
            # concurrent caller applied the same key first
            account = await self.store.credit(user_id, -amount)
            log.info("credits_add_raced", user_id=user_id, idempotency_key=idempotency_key)
            return account.credits_balance, False
        log.info(event, user_id=user_id, amount=amount, reason=reason, balance=account.credits_balance)
        return account.credits_balance, True

    async def usage(self, user_id: str, limit: int = 50, offset: int = 0) -> list[UsageRecord]:
        return await self.store.list_usage(user_id, limit=limit, offset=offset)

    async def reconcile(self, user_id: str) -> tuple[int, int]:
        """Return (balance, expected) where expected = -sum(credits_delta)."""
        balance = await self.get_balance(user_id)
        expected = -(await self.store.sum_usage(user_id))
        if balance != expected:
            log.warning("ledger_mismatch", user_id=user_id, balance=balance, expected=expected)
        return balance, expected
