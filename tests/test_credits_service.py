"""Unit tests for the credits ledger over the in-process store."""

import asyncio
import random

import pytest

from propstudio.core.exceptions import BadRequestError

pytestmark = pytest.mark.asyncio


async def test_get_balance_provisions_account(ledger, ledger_store):
    balance = await ledger.get_balance("user-1")
    assert balance == 5
    records = await ledger.usage("user-1")
    assert len(records) == 1
    assert records[0].feature == "initial_grant"
    assert records[0].credits_delta == -5
    # second access does not grant again
    assert await ledger.get_balance("user-1") == 5
    assert len(await ledger.usage("user-1")) == 1


async def test_check_and_reserve_deducts_and_logs(ledger):
    result = await ledger.check_and_reserve("user-2", 3, feature="video", reference_id="job-1")
    assert result.ok
    assert result.balance == 2
    latest = (await ledger.usage("user-2"))[0]
    assert latest.feature == "video"
    assert latest.credits_delta == 3
    assert latest.balance_after == 2
    assert latest.reference_id == "job-1"


async def test_insufficient_is_a_result_without_mutation(ledger):
    result = await ledger.check_and_reserve("user-3", 6, feature="video")
    assert not result.ok
    assert result.balance == 5
    assert result.required == 6
    assert await ledger.get_balance("user-3") == 5
    assert len(await ledger.usage("user-3")) == 1


async def test_refund_is_idempotent_per_key(ledger):
    await ledger.check_and_reserve("user-4", 4, feature="video")
    assert await ledger.refund("user-4", 4, "item_failed", idempotency_key="refund:item-1") == 5
    # Idempotency: same key should not double-apply
    assert await ledger.refund("user-4", 4, "item_failed", idempotency_key="refund:item-1") == 5
    refunds = [r for r in await ledger.usage("user-4") if r.feature == "item_failed"]
    assert len(refunds) == 1
    assert refunds[0].credits_delta == -4


async def test_concurrent_reservations_never_overdraw(ledger):
    await ledger.get_balance("user-5")
    results = await asyncio.gather(*[ledger.check_and_reserve("user-5", 3, feature="video") for _ in range(5)])
    assert sum(r.ok for r in results) == 1
    assert await ledger.get_balance("user-5") == 2


async def test_conservation_over_random_sequence(ledger):
    rng = random.Random(7)
    await ledger.grant("user-6", 45, reason="purchase")
    initial = await ledger.get_balance("user-6")
    outstanding: list[int] = []
    for step in range(200):
        if outstanding and rng.random() < 0.4:
            amount = outstanding.pop(rng.randrange(len(outstanding)))
            await ledger.refund("user-6", amount, "item_failed", idempotency_key=f"refund:{step}")
        else:
            amount = rng.randint(1, 8)
            result = await ledger.check_and_reserve("user-6", amount, feature="video")
            if result.ok:
                outstanding.append(amount)
        assert await ledger.get_balance("user-6") >= 0
    assert await ledger.get_balance("user-6") == initial - sum(outstanding)
    balance, expected = await ledger.reconcile("user-6")
    assert balance == expected


async def test_topup_package(ledger):
    added, balance = await ledger.topup_package("user-7", "500", idempotency_key="payfast-abc")
    assert (added, balance) == (500, 505)
    added, balance = await ledger.topup_package("user-7", "500", idempotency_key="payfast-abc")
    assert (added, balance) == (0, 505)


async def test_topup_unknown_package(ledger):
    with pytest.raises(BadRequestError):
        await ledger.topup_package("user-8", "42")


@pytest.mark.parametrize("amount", [0, -3, True])
async def test_invalid_amounts_rejected(ledger, amount):
    with pytest.raises(BadRequestError):
        await ledger.check_and_reserve("user-9", amount, feature="video")
    with pytest.raises(BadRequestError):
        await ledger.refund("user-9", amount, "item_failed")


async def test_topup_keys_are_scoped_per_user(ledger):
    assert await ledger.topup_package("agent-x", "100", idempotency_key="order-1") == (100, 105)
    assert await ledger.topup_package("agent-y", "100", idempotency_key="order-1") == (100, 105)
    for user_id in ("agent-x", "agent-y"):
        balance, expected = await ledger.reconcile(user_id)
        assert balance == expected == 105


async def test_client_keys_cannot_shadow_internal_records(ledger):
    # a top-up keyed like an internal record must not suppress that record
    await ledger.topup_package("user-10", "100", idempotency_key="refund:item-9")
    await ledger.topup_package("user-10", "100", idempotency_key="initial_grant:user-11")
    await ledger.check_and_reserve("user-10", 4, feature="video")
    assert await ledger.refund("user-10", 4, "item_failed", idempotency_key="refund:item-9") == 205

    assert await ledger.get_balance("user-11") == 5
    features = [r.feature for r in await ledger.usage("user-11")]
    assert features == ["initial_grant"]
    for user_id in ("user-10", "user-11"):
        balance, expected = await ledger.reconcile(user_id)
        assert balance == expected


async def test_reverse_refund_applies_once(ledger):
    await ledger.check_and_reserve("user-12", 4, feature="video", reference_id="job-1")
    assert not await ledger.reverse_refund("user-12", 4, "refund:item-1")  # nothing to reverse yet
    await ledger.refund("user-12", 4, "item_failed", idempotency_key="refund:item-1")
    assert await ledger.get_balance("user-12") == 5

    assert await ledger.reverse_refund("user-12", 4, "refund:item-1", reference_id="item-1")
    assert not await ledger.reverse_refund("user-12", 4, "refund:item-1", reference_id="item-1")

    assert await ledger.get_balance("user-12") == 1
    latest = (await ledger.usage("user-12"))[0]
    assert (latest.feature, latest.credits_delta, latest.balance_after) == ("refund_reversed", 4, 1)
    balance, expected = await ledger.reconcile("user-12")
    assert balance == expected
