# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from fakeredis import FakeServer, aioredis

from coreason_credits import CreditLedger, CreditManager, CreditsConfig, InMemoryAccountStore, RedisAccountStore
from coreason_credits.estimation import CompletionRequest


class StaticEstimator:
    """Always estimates the same cost."""

    def __init__(self, cost: float) -> None:
        self.cost = cost

    def estimate(self, request: CompletionRequest) -> float:
        return self.cost


@pytest.fixture
def config() -> CreditsConfig:
    return CreditsConfig(
        redis_url="redis://localhost:6379",
        anonymous_allotment=1000,
        registered_allotment=0,
        reservation_ttl_seconds=60,
        max_update_retries=8,
    )


@pytest.fixture
def store() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def ledger(config: CreditsConfig, store: InMemoryAccountStore) -> CreditLedger:
    return CreditLedger(config, store)


@pytest_asyncio.fixture
async def redis_store() -> AsyncGenerator[RedisAccountStore, None]:
    redis_store = RedisAccountStore("redis://localhost:6379", key_prefix="test:credits")
    # Inject a fake redis client so no server is needed
    redis_store._redis = aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    yield redis_store
    await redis_store.close()


@pytest_asyncio.fixture
async def manager(config: CreditsConfig, store: InMemoryAccountStore) -> AsyncGenerator[CreditManager, None]:
    mgr = CreditManager(config, store=store, estimator=StaticEstimator(300))
    yield mgr
    await mgr.close()
