# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits

import datetime
import uuid
from typing import Callable, Optional, TypeVar, Union

from coreason_credits.config import CreditsConfig
from coreason_credits.exceptions import InsufficientCreditError, ReservationNotFoundError, StorageUnavailableError
from coreason_credits.models import (
    Account,
    AllotmentClass,
    BalanceSnapshot,
    CreditBucket,
    Reservation,
    Settlement,
    utcnow,
)
from coreason_credits.storage import AccountStore
from coreason_credits.utils.logger import logger

T = TypeVar("T")


def _validate_identity(identity: str) -> None:
    if not isinstance(identity, str) or not identity.strip():
        raise ValueError("identity must be a non-empty string.")


def _validate_amount(name: str, amount: int) -> None:
    # bool is an int subclass but never a meaningful amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"{name} must be an integer.")
    if amount < 0:
        raise ValueError(f"{name} must be non-negative.")


def _refund(account: Account, reservation: Reservation, amount: int) -> None:
    """Return amount of a reservation to the account, paid first (reverse of the draw order)."""
    to_paid = min(amount, reservation.drawn_from_paid)
    account.paid_balance += to_paid
    account.free_balance += amount - to_paid


def _debit(account: Account, amount: int) -> int:
    """Remove amount, free credit first. Returns the part the balance could not cover."""
    from_free = min(account.free_balance, amount)
    from_paid = min(account.paid_balance, amount - from_free)
    account.free_balance -= from_free
    account.paid_balance -= from_paid
    return amount - from_free - from_paid


def _take(account: Account, handle: Reservation) -> Reservation:
    reservation = account.reservations.pop(handle.reservation_id, None)
    if reservation is None:
        raise ReservationNotFoundError(handle.reservation_id)
    return reservation


class CreditLedger:
    """
    Sole authority for reading and mutating account balances.

    Every mutation is a read-modify-write committed with a compare-and-swap on
    the account version, so concurrent operations on one identity are
    linearizable while operations on different identities never contend.
    Nothing slow (in particular the billable work itself) runs inside an update.
    """

    def __init__(self, config: CreditsConfig, store: AccountStore) -> None:
        self.config = config
        self.store = store

    def _seed(self, allotment: AllotmentClass) -> int:
        if allotment == AllotmentClass.ANONYMOUS:
            return self.config.anonymous_allotment
        if allotment == AllotmentClass.REGISTERED:
            return self.config.registered_allotment
        return 0

    def _new_account(self, identity: str, allotment: AllotmentClass) -> Account:
        return Account(identity=identity, free_balance=self._seed(allotment))

    async def _update(self, identity: str, allotment: AllotmentClass, mutate: Callable[[Account], T]) -> T:
        """
        Apply mutate to the current account and commit it.

        A missing account is created with the allotment seed in the same write.
        If mutate raises, nothing is written.
        """
        for attempt in range(1, self.config.max_update_retries + 1):
            account = await self.store.get(identity)
            if account is None:
                account = self._new_account(identity, allotment)
            expected_version = account.version

            result = mutate(account)
            account.version = expected_version + 1

            if await self.store.compare_and_swap(account, expected_version):
                return result
            logger.debug("Version conflict on {} (attempt {})", identity, attempt)

        logger.error("Gave up updating {} after {} conflicting attempts", identity, self.config.max_update_retries)
        raise StorageUnavailableError(f"Account {identity} is too contended to update.")

    async def get_balance(self, identity: str, allotment: AllotmentClass = AllotmentClass.ANONYMOUS) -> BalanceSnapshot:
        """Return the settled balance, creating the account on first contact."""
        _validate_identity(identity)

        # Reads never write, so only creation goes through compare-and-swap
        for _ in range(self.config.max_update_retries):
            account = await self.store.get(identity)
            if account is not None:
                return account.snapshot()

            account = self._new_account(identity, allotment)
            account.version = 1
            if await self.store.compare_and_swap(account, 0):
                return account.snapshot()

        raise StorageUnavailableError(f"Account {identity} is too contended to create.")

    async def reserve(
        self, identity: str, estimated_cost: int, allotment: AllotmentClass = AllotmentClass.ANONYMOUS
    ) -> Reservation:
        """
        Hold estimated_cost against the identity's balance, free credit first.

        Raises InsufficientCreditError (and holds nothing) if the balance cannot
        cover the whole estimate.
        """
        _validate_identity(identity)
        _validate_amount("estimated_cost", estimated_cost)

        def hold(account: Account) -> Reservation:
            available = account.available
            logger.info("Credit Check: {} | Requested: {} / Available: {}", identity, estimated_cost, available)
            if estimated_cost > available:
                logger.warning(
                    "Insufficient credit for {}: {} requested, {} available", identity, estimated_cost, available
                )
                raise InsufficientCreditError(available=available, requested=estimated_cost)

            from_free = min(account.free_balance, estimated_cost)
            from_paid = estimated_cost - from_free
            account.free_balance -= from_free
            account.paid_balance -= from_paid

            now = utcnow()
            reservation = Reservation(
                reservation_id=uuid.uuid4().hex,
                identity=identity,
                estimated_cost=estimated_cost,
                drawn_from_free=from_free,
                drawn_from_paid=from_paid,
                created_at=now,
                expires_at=now + datetime.timedelta(seconds=self.config.reservation_ttl_seconds),
            )
            account.reservations[reservation.reservation_id] = reservation
            return reservation

        return await self._update(identity, allotment, hold)

    async def settle(self, handle: Reservation, actual_cost: int) -> Settlement:
        """
        Finalize a reservation with the actual cost of the completed work.

        Overestimates are refunded. Overages are drawn from the remaining
        balance; whatever cannot be covered is reported as shortfall instead of
        failing work that already happened.
        """
        _validate_amount("actual_cost", actual_cost)

        def finalize(account: Account) -> Settlement:
            reservation = _take(account, handle)
            delta = actual_cost - reservation.estimated_cost
            shortfall = 0

            if delta <= 0:
                _refund(account, reservation, -delta)
            else:
                shortfall = _debit(account, delta)

            return Settlement(
                free=account.free_balance,
                paid=account.paid_balance,
                total=account.available,
                charged=actual_cost,
                debited=actual_cost - shortfall,
                shortfall=shortfall,
            )

        settlement = await self._update(handle.identity, AllotmentClass.NONE, finalize)
        if settlement.shortfall:
            logger.warning(
                "Settled {} for {} with shortfall {}", handle.reservation_id, handle.identity, settlement.shortfall
            )
        else:
            logger.info("Settled {} for {}: charged {}", handle.reservation_id, handle.identity, settlement.charged)
        return settlement

    async def release(self, handle: Reservation) -> BalanceSnapshot:
        """Refund a reservation in full, e.g. when the work failed or was cancelled."""

        def refund(account: Account) -> BalanceSnapshot:
            reservation = _take(account, handle)
            _refund(account, reservation, reservation.estimated_cost)
            return account.snapshot()

        snapshot = await self._update(handle.identity, AllotmentClass.NONE, refund)
        logger.info("Released {} for {}", handle.reservation_id, handle.identity)
        return snapshot

    async def grant(
        self,
        identity: str,
        amount: int,
        bucket: Union[CreditBucket, str],
        allotment: AllotmentClass = AllotmentClass.NONE,
    ) -> BalanceSnapshot:
        """
        Add credit to the free or paid bucket.

        Not idempotent: every call adds credit, so callers deduplicate the
        events (signups, payment captures) that trigger it.
        """
        _validate_identity(identity)
        _validate_amount("amount", amount)
        bucket = CreditBucket(bucket)

        def add(account: Account) -> BalanceSnapshot:
            if bucket == CreditBucket.FREE:
                account.free_balance += amount
            else:
                account.paid_balance += amount
            return account.snapshot()

        snapshot = await self._update(identity, allotment, add)
        logger.info("Granted {} {} credit to {}", amount, bucket.value, identity)
        return snapshot

    async def charge(self, identity: str, amount: int) -> Settlement:
        """
        Debit completed work that no longer has a reservation, free credit first.

        Used when a hold was swept while its work was still running. Whatever
        the balance cannot cover is reported as shortfall.
        """
        _validate_identity(identity)
        _validate_amount("amount", amount)

        def debit(account: Account) -> Settlement:
            shortfall = _debit(account, amount)
            return Settlement(
                free=account.free_balance,
                paid=account.paid_balance,
                total=account.available,
                charged=amount,
                debited=amount - shortfall,
                shortfall=shortfall,
            )

        settlement = await self._update(identity, AllotmentClass.NONE, debit)
        if settlement.shortfall:
            logger.warning("Charged {} to {} with shortfall {}", amount, identity, settlement.shortfall)
        else:
            logger.info("Charged {} to {} without a reservation", amount, identity)
        return settlement

    async def sweep_expired(self, now: Optional[datetime.datetime] = None) -> int:
        """Release every reservation past its expiry. Returns how many were released."""
        now = now or utcnow()
        if now.tzinfo is None:
            raise ValueError("now must be a timezone-aware datetime.")
        released = 0

        def expire(account: Account) -> int:
            expired = [r for r in account.reservations.values() if r.is_expired(now)]
            for reservation in expired:
                del account.reservations[reservation.reservation_id]
                _refund(account, reservation, reservation.estimated_cost)
            return len(expired)

        for identity in await self.store.expiring_identities(now):
            count = await self._update(identity, AllotmentClass.NONE, expire)
            if count:
                logger.info("Swept {} expired reservation(s) for {}", count, identity)
            released += count

        return released
