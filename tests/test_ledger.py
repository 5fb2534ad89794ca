# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits

from typing import Tuple

import pytest

from coreason_credits import (
    AllotmentClass,
    CreditLedger,
    InMemoryAccountStore,
    InsufficientCreditError,
    ReservationNotFoundError,
)


async def _state(store: InMemoryAccountStore, identity: str) -> Tuple[int, int, int]:
    """(free, paid, pending) as stored."""
    account = await store.get(identity)
    assert account is not None
    return account.free_balance, account.paid_balance, account.pending_reservation


async def _fund(ledger: CreditLedger, identity: str, free: int, paid: int) -> None:
    await ledger.grant(identity, free, "free")
    await ledger.grant(identity, paid, "paid")


@pytest.mark.asyncio
async def test_fresh_identity_reserve_and_settle(ledger: CreditLedger) -> None:
    """Fresh anonymous identity is seeded, reserves 300 and settles at 250."""
    balance = await ledger.get_balance("u1")
    assert balance.model_dump() == {"free": 1000, "paid": 0, "total": 1000}

    handle = await ledger.reserve("u1", 300)
    assert handle.estimated_cost == 300

    settlement = await ledger.settle(handle, 250)
    assert (settlement.free, settlement.paid, settlement.total) == (950, 0, 950)
    assert settlement.charged == 250
    assert settlement.shortfall == 0


@pytest.mark.asyncio
async def test_empty_identity_cannot_reserve(ledger: CreditLedger) -> None:
    with pytest.raises(InsufficientCreditError) as exc:
        await ledger.reserve("u2", 1, allotment=AllotmentClass.NONE)

    assert exc.value.available == 0
    assert exc.value.requested == 1


@pytest.mark.asyncio
async def test_grant_on_fresh_identity(ledger: CreditLedger) -> None:
    snapshot = await ledger.grant("u3", 2000, "free")
    assert snapshot.total == 2000

    balance = await ledger.get_balance("u3")
    assert balance.model_dump() == {"free": 2000, "paid": 0, "total": 2000}


@pytest.mark.asyncio
async def test_seed_applies_only_on_first_contact(ledger: CreditLedger) -> None:
    await ledger.get_balance("guest", allotment=AllotmentClass.ANONYMOUS)
    await ledger.grant("guest", 10, "paid", allotment=AllotmentClass.REGISTERED)

    balance = await ledger.get_balance("guest", allotment=AllotmentClass.REGISTERED)
    assert (balance.free, balance.paid) == (1000, 10)


@pytest.mark.asyncio
async def test_registered_allotment_seed(ledger: CreditLedger) -> None:
    balance = await ledger.get_balance("member", allotment=AllotmentClass.REGISTERED)
    assert balance.total == 0


@pytest.mark.asyncio
async def test_draw_order_free_before_paid(ledger: CreditLedger, store: InMemoryAccountStore) -> None:
    await _fund(ledger, "drawer", free=100, paid=50)

    first = await ledger.reserve("drawer", 30)
    assert (first.drawn_from_free, first.drawn_from_paid) == (30, 0)
    assert await _state(store, "drawer") == (70, 50, 30)

    second = await ledger.reserve("drawer", 120)
    assert (second.drawn_from_free, second.drawn_from_paid) == (70, 50)
    assert await _state(store, "drawer") == (0, 0, 150)

    with pytest.raises(InsufficientCreditError):
        await ledger.reserve("drawer", 1)


@pytest.mark.asyncio
async def test_reserve_is_all_or_nothing(ledger: CreditLedger, store: InMemoryAccountStore) -> None:
    await _fund(ledger, "partial", free=70, paid=50)

    with pytest.raises(InsufficientCreditError) as exc:
        await ledger.reserve("partial", 121)

    assert exc.value.available == 120
    assert await _state(store, "partial") == (70, 50, 0)


@pytest.mark.asyncio
async def test_reserve_conserves_credit(ledger: CreditLedger, store: InMemoryAccountStore) -> None:
    await _fund(ledger, "conserve", free=40, paid=60)

    for amount in (10, 35, 55):
        before = sum(await _state(store, "conserve"))
        await ledger.reserve("conserve", amount)
        assert sum(await _state(store, "conserve")) == before


@pytest.mark.asyncio
async def test_settle_and_release_clear_the_whole_hold(ledger: CreditLedger, store: InMemoryAccountStore) -> None:
    await _fund(ledger, "clear", free=500, paid=0)
    a = await ledger.reserve("clear", 100)
    b = await ledger.reserve("clear", 200)
    assert (await _state(store, "clear"))[2] == 300

    await ledger.settle(a, 40)
    assert (await _state(store, "clear"))[2] == 200

    await ledger.release(b)
    assert (await _state(store, "clear"))[2] == 0


@pytest.mark.asyncio
async def test_reserve_zero_is_allowed(ledger: CreditLedger) -> None:
    handle = await ledger.reserve("zero", 0, allotment=AllotmentClass.NONE)
    settlement = await ledger.settle(handle, 0)
    assert settlement.total == 0
    assert settlement.shortfall == 0


@pytest.mark.asyncio
async def test_refund_restores_paid_first(ledger: CreditLedger, store: InMemoryAccountStore) -> None:
    """Leaves the account as if only the actual cost had been reserved."""
    await _fund(ledger, "refund", free=20, paid=50)

    handle = await ledger.reserve("refund", 40)
    assert (handle.drawn_from_free, handle.drawn_from_paid) == (20, 20)

    settlement = await ledger.settle(handle, 10)
    assert (settlement.free, settlement.paid) == (10, 50)
    assert await _state(store, "refund") == (10, 50, 0)


@pytest.mark.asyncio
async def test_release_restores_exact_buckets(ledger: CreditLedger) -> None:
    await _fund(ledger, "release", free=20, paid=50)

    handle = await ledger.reserve("release", 60)
    snapshot = await ledger.release(handle)

    assert (snapshot.free, snapshot.paid, snapshot.total) == (20, 50, 70)


@pytest.mark.asyncio
async def test_overage_with_sufficient_balance(ledger: CreditLedger) -> None:
    await _fund(ledger, "over", free=100, paid=0)

    handle = await ledger.reserve("over", 50)
    settlement = await ledger.settle(handle, 70)

    assert settlement.total == 30
    assert settlement.charged == 70
    assert settlement.debited == 70
    assert settlement.shortfall == 0


@pytest.mark.asyncio
async def test_overage_draws_free_then_paid(ledger: CreditLedger) -> None:
    await _fund(ledger, "over_paid", free=55, paid=30)

    handle = await ledger.reserve("over_paid", 50)
    settlement = await ledger.settle(handle, 70)

    assert (settlement.free, settlement.paid) == (0, 15)


@pytest.mark.asyncio
async def test_overage_reports_shortfall(ledger: CreditLedger, store: InMemoryAccountStore) -> None:
    await _fund(ledger, "short", free=60, paid=0)

    handle = await ledger.reserve("short", 50)
    settlement = await ledger.settle(handle, 70)

    assert settlement.total == 0
    assert settlement.charged == 70
    assert settlement.debited == 60
    assert settlement.shortfall == 10
    assert await _state(store, "short") == (0, 0, 0)


@pytest.mark.asyncio
async def test_double_settle_fails(ledger: CreditLedger) -> None:
    handle = await ledger.reserve("twice", 100)
    await ledger.settle(handle, 100)

    with pytest.raises(ReservationNotFoundError) as exc:
        await ledger.settle(handle, 100)
    assert exc.value.reservation_id == handle.reservation_id


@pytest.mark.asyncio
async def test_release_after_settle_fails(ledger: CreditLedger) -> None:
    handle = await ledger.reserve("settled", 100)
    await ledger.settle(handle, 80)

    with pytest.raises(ReservationNotFoundError):
        await ledger.release(handle)

    balance = await ledger.get_balance("settled")
    assert balance.total == 920


@pytest.mark.asyncio
async def test_settle_after_release_fails(ledger: CreditLedger) -> None:
    handle = await ledger.reserve("released", 100)
    await ledger.release(handle)

    with pytest.raises(ReservationNotFoundError):
        await ledger.settle(handle, 10)

    balance = await ledger.get_balance("released")
    assert balance.total == 1000


@pytest.mark.asyncio
async def test_handle_values_come_from_storage(ledger: CreditLedger) -> None:
    """A tampered handle cannot inflate the refund."""
    handle = await ledger.reserve("tamper", 100)
    forged = handle.model_copy(update={"estimated_cost": 100_000, "drawn_from_paid": 100_000})

    snapshot = await ledger.release(forged)
    assert (snapshot.free, snapshot.paid) == (1000, 0)


@pytest.mark.asyncio
async def test_unknown_identity_handle_creates_nothing(ledger: CreditLedger, store: InMemoryAccountStore) -> None:
    handle = await ledger.reserve("real", 10)
    stranger = handle.model_copy(update={"identity": "ghost"})

    with pytest.raises(ReservationNotFoundError):
        await ledger.settle(stranger, 10)

    assert await store.get("ghost") is None


@pytest.mark.asyncio
async def test_balances_never_negative_across_sequence(ledger: CreditLedger, store: InMemoryAccountStore) -> None:
    await _fund(ledger, "seq", free=30, paid=20)

    h1 = await ledger.reserve("seq", 25)
    h2 = await ledger.reserve("seq", 20)
    await ledger.settle(h1, 60)
    with pytest.raises(InsufficientCreditError):
        await ledger.reserve("seq", 1)
    await ledger.release(h2)
    h3 = await ledger.reserve("seq", 20)
    settlement = await ledger.settle(h3, 500)

    free, paid, pending = await _state(store, "seq")
    assert free >= 0 and paid >= 0 and pending == 0
    assert settlement.shortfall == 480


@pytest.mark.asyncio
async def test_version_increments_on_every_write(ledger: CreditLedger, store: InMemoryAccountStore) -> None:
    await ledger.get_balance("versioned")
    account = await store.get("versioned")
    assert account is not None and account.version == 1

    handle = await ledger.reserve("versioned", 10)
    await ledger.settle(handle, 10)
    await ledger.get_balance("versioned")

    account = await store.get("versioned")
    assert account is not None and account.version == 3


@pytest.mark.asyncio
async def test_input_validation(ledger: CreditLedger) -> None:
    with pytest.raises(ValueError, match="identity must be a non-empty string"):
        await ledger.get_balance("")

    with pytest.raises(ValueError, match="identity must be a non-empty string"):
        await ledger.reserve("   ", 10)

    with pytest.raises(ValueError, match="estimated_cost must be non-negative"):
        await ledger.reserve("v", -1)

    with pytest.raises(ValueError, match="estimated_cost must be an integer"):
        await ledger.reserve("v", 1.5)  # type: ignore[arg-type]

    with pytest.raises(ValueError, match="amount must be an integer"):
        await ledger.grant("v", True, "free")  # type: ignore[arg-type]

    with pytest.raises(ValueError):
        await ledger.grant("v", 10, "bonus")

    handle = await ledger.reserve("v", 10)
    with pytest.raises(ValueError, match="actual_cost must be non-negative"):
        await ledger.settle(handle, -5)

    # The handle is still open after a rejected settle
    settlement = await ledger.settle(handle, 5)
    assert settlement.total == 995


@pytest.mark.asyncio
async def test_charge_without_reservation_draws_free_then_paid(
    ledger: CreditLedger, store: InMemoryAccountStore
) -> None:
    await _fund(ledger, "direct", free=30, paid=50)

    settlement = await ledger.charge("direct", 60)

    assert (settlement.charged, settlement.debited, settlement.shortfall) == (60, 60, 0)
    assert await _state(store, "direct") == (0, 20, 0)


@pytest.mark.asyncio
async def test_charge_reports_shortfall(ledger: CreditLedger, store: InMemoryAccountStore) -> None:
    await _fund(ledger, "short", free=10, paid=5)

    settlement = await ledger.charge("short", 40)

    assert (settlement.debited, settlement.shortfall, settlement.total) == (15, 25, 0)
    assert await _state(store, "short") == (0, 0, 0)


@pytest.mark.asyncio
async def test_charge_validates_input(ledger: CreditLedger) -> None:
    with pytest.raises(ValueError, match="non-negative"):
        await ledger.charge("direct", -1)
    with pytest.raises(ValueError, match="identity must be a non-empty string"):
        await ledger.charge("", 1)
