# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits

from typing import Any, NamedTuple, Optional, Union

from coreason_credits.config import CreditsConfig
from coreason_credits.estimation import CompletionRequest, CostEstimator, LiteLLMTokenEstimator, to_credits
from coreason_credits.exceptions import CreditError, ReservationNotFoundError
from coreason_credits.executor import WorkExecutor
from coreason_credits.ledger import CreditLedger
from coreason_credits.models import AllotmentClass, BalanceSnapshot, CreditBucket, Reservation, Settlement
from coreason_credits.storage import AccountStore, RedisAccountStore
from coreason_credits.sweeper import ReservationSweeper
from coreason_credits.utils.logger import logger


class WorkOutcome(NamedTuple):
    result: Any
    settlement: Settlement


class CreditManager:
    """
    Main entry point for Coreason Credits.
    Orchestrates CreditLedger, the account store, the cost estimator and the reservation sweeper.
    """

    def __init__(
        self,
        config: CreditsConfig,
        store: Optional[AccountStore] = None,
        estimator: Optional[CostEstimator] = None,
    ) -> None:
        self.config = config
        self.store = store or RedisAccountStore(config.redis_url, key_prefix=config.key_prefix)
        self.estimator = estimator or LiteLLMTokenEstimator(config)
        self.ledger = CreditLedger(config, self.store)
        self.sweeper = ReservationSweeper(self.ledger, config.sweep_interval_seconds)

    async def get_balance(
        self, identity: str, allotment: AllotmentClass = AllotmentClass.ANONYMOUS
    ) -> BalanceSnapshot:
        return await self.ledger.get_balance(identity, allotment)

    async def reserve(
        self, identity: str, estimated_cost: int, allotment: AllotmentClass = AllotmentClass.ANONYMOUS
    ) -> Reservation:
        return await self.ledger.reserve(identity, estimated_cost, allotment)

    async def settle(self, handle: Reservation, actual_cost: int) -> Settlement:
        return await self.ledger.settle(handle, actual_cost)

    async def release(self, handle: Reservation) -> BalanceSnapshot:
        return await self.ledger.release(handle)

    async def grant(
        self,
        identity: str,
        amount: int,
        bucket: Union[CreditBucket, str],
        allotment: AllotmentClass = AllotmentClass.NONE,
    ) -> BalanceSnapshot:
        return await self.ledger.grant(identity, amount, bucket, allotment)

    async def grant_once(
        self,
        idempotency_key: str,
        identity: str,
        amount: int,
        bucket: Union[CreditBucket, str],
        allotment: AllotmentClass = AllotmentClass.NONE,
    ) -> Optional[BalanceSnapshot]:
        """
        Grant credit at most once per idempotency_key (a signup event id, a payment capture id).

        Returns None when the key was already processed.
        """
        if not idempotency_key or not idempotency_key.strip():
            raise ValueError("idempotency_key must be a non-empty string.")

        claimed = await self.store.claim_idempotency_key(idempotency_key, self.config.idempotency_ttl_seconds)
        if not claimed:
            logger.info("Skipping duplicate grant {} for {}", idempotency_key, identity)
            return None

        try:
            return await self.ledger.grant(identity, amount, bucket, allotment)
        except BaseException:
            await self.store.forget_idempotency_key(idempotency_key)
            raise

    async def run(
        self,
        identity: str,
        request: CompletionRequest,
        executor: WorkExecutor[Any],
        allotment: AllotmentClass = AllotmentClass.ANONYMOUS,
    ) -> WorkOutcome:
        """
        Estimate, reserve, run the work, then settle.

        The executor runs outside any ledger update. If it fails or the caller
        is cancelled, the reservation is released before the error propagates.
        Completed work is always billed: if its reservation expired and was
        swept meanwhile, the actual cost is charged without one.

        Args:
            identity: Opaque key of the billable party.
            request: Inputs of the work, used for the estimate.
            executor: Async callable returning (result, actual_cost).
            allotment: Seed class if this is the identity's first contact.

        Returns:
            The executor's result and the settlement.
        """
        estimated_cost = to_credits(self.estimator.estimate(request))
        handle = await self.ledger.reserve(identity, estimated_cost, allotment)

        try:
            result, actual_cost = await executor(request)
            actual_cost = to_credits(actual_cost)
        except BaseException:
            try:
                await self.ledger.release(handle)
            except CreditError as e:
                logger.error(
                    "Could not release {} after failed work, leaving it to the sweep: {}", handle.reservation_id, e
                )
            raise

        try:
            settlement = await self.ledger.settle(handle, actual_cost)
        except ReservationNotFoundError:
            # The hold outlived its ttl and was swept while the work ran
            logger.warning(
                "Reservation {} was swept before settling, charging {} directly", handle.reservation_id, actual_cost
            )
            settlement = await self.ledger.charge(identity, actual_cost)
        return WorkOutcome(result=result, settlement=settlement)

    async def sweep_expired(self) -> int:
        return await self.ledger.sweep_expired()

    async def health(self) -> None:
        """Raise StorageUnavailableError if the store is unreachable."""
        await self.store.ping()

    def start(self) -> None:
        """Start the background reservation sweep."""
        self.sweeper.start()

    async def close(self) -> None:
        """Cleanup resources (sweeper task, store connection)."""
        await self.sweeper.stop()
        await self.store.close()
