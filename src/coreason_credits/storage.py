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
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from pydantic import TypeAdapter
from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from coreason_credits.exceptions import StorageUnavailableError
from coreason_credits.models import Account, Reservation, utcnow
from coreason_credits.utils.logger import logger

_RESERVATIONS = TypeAdapter(Dict[str, Reservation])


class AccountStore(ABC):
    """
    Persistence boundary for accounts.

    Writes go exclusively through compare_and_swap, which commits only if the
    stored version still equals expected_version (0 meaning "does not exist").
    """

    @abstractmethod
    async def get(self, identity: str) -> Optional[Account]:
        """Return the stored account, or None if the identity was never seen."""

    @abstractmethod
    async def compare_and_swap(self, account: Account, expected_version: int) -> bool:
        """Persist account if the stored version equals expected_version. Returns False on conflict."""

    @abstractmethod
    async def expiring_identities(self, now: datetime.datetime) -> List[str]:
        """Identities holding at least one reservation that expires at or before now."""

    @abstractmethod
    async def claim_idempotency_key(self, key: str, ttl: int) -> bool:
        """Record key for ttl seconds. Returns False if it was already recorded."""

    @abstractmethod
    async def forget_idempotency_key(self, key: str) -> None:
        """Drop a previously claimed key so the event can be processed again."""

    async def ping(self) -> None:
        """Raise StorageUnavailableError if the store cannot be reached."""

    async def close(self) -> None:
        """Release any held connections."""


class InMemoryAccountStore(AccountStore):
    """Process-local store. Accounts are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._claims: Dict[str, datetime.datetime] = {}
        self._holds: Dict[str, datetime.datetime] = {}

    async def get(self, identity: str) -> Optional[Account]:
        account = self._accounts.get(identity)
        return account.model_copy(deep=True) if account else None

    async def compare_and_swap(self, account: Account, expected_version: int) -> bool:
        current = self._accounts.get(account.identity)
        current_version = current.version if current else 0
        if current_version != expected_version:
            return False
        self._accounts[account.identity] = account.model_copy(deep=True)

        next_expiry = account.next_expiry
        if next_expiry is None:
            self._holds.pop(account.identity, None)
        else:
            self._holds[account.identity] = next_expiry
        return True

    async def expiring_identities(self, now: datetime.datetime) -> List[str]:
        return [identity for identity, expires_at in self._holds.items() if expires_at <= now]

    async def claim_idempotency_key(self, key: str, ttl: int) -> bool:
        now = utcnow()
        for lapsed in [k for k, expires_at in self._claims.items() if expires_at <= now]:
            del self._claims[lapsed]

        if key in self._claims:
            return False
        self._claims[key] = now + datetime.timedelta(seconds=ttl)
        return True

    async def forget_idempotency_key(self, key: str) -> None:
        self._claims.pop(key, None)


class RedisAccountStore(AccountStore):
    """Stores one Redis hash per identity and commits through a Lua compare-and-swap."""

    # KEYS[1]: account hash, KEYS[2]: hold index
    # ARGV[1]: expected version, ARGV[2..8]: account fields, ARGV[9]: earliest hold expiry or ""
    # A missing hash has version 0
    CAS_SCRIPT = """
    local current = redis.call("HGET", KEYS[1], "version")
    local expected = tonumber(ARGV[1])
    if current then
        if tonumber(current) ~= expected then
            return 0
        end
    elseif expected ~= 0 then
        return 0
    end
    redis.call("HSET", KEYS[1],
        "identity", ARGV[2],
        "free_balance", ARGV[3],
        "paid_balance", ARGV[4],
        "pending_reservation", ARGV[5],
        "reservations", ARGV[6],
        "created_at", ARGV[7],
        "version", ARGV[8])
    if ARGV[9] == "" then
        redis.call("ZREM", KEYS[2], ARGV[2])
    else
        redis.call("ZADD", KEYS[2], ARGV[9], ARGV[2])
    end
    return 1
    """

    def __init__(self, redis_url: str, key_prefix: str = "credits:v1") -> None:
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._redis: Optional[Redis] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._redis is None:
            try:
                self._redis = from_url(self.redis_url, encoding="utf-8", decode_responses=True)
                await self._redis.ping()
                logger.info("Connected to Redis at {}", self.redis_url)
            except RedisError as e:
                self._redis = None
                logger.error("Failed to connect to Redis: {}", e)
                raise StorageUnavailableError(f"Could not connect to Redis: {e}") from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")

    async def _client(self) -> Redis:
        if not self._redis:
            await self.connect()
        assert self._redis is not None
        return self._redis

    def _account_key(self, identity: str) -> str:
        return f"{self.key_prefix}:account:{identity}"

    def _idempotency_key(self, key: str) -> str:
        return f"{self.key_prefix}:idempotency:{key}"

    def _holds_key(self) -> str:
        return f"{self.key_prefix}:holds"

    async def ping(self) -> None:
        client = await self._client()
        try:
            await client.ping()
        except RedisError as e:
            logger.error("Redis PING error: {}", e)
            raise StorageUnavailableError(f"Redis ping failed: {e}") from e

    async def get(self, identity: str) -> Optional[Account]:
        client = await self._client()
        try:
            raw = await client.hgetall(self._account_key(identity))
        except RedisError as e:
            logger.error("Redis HGETALL error for identity {}: {}", identity, e)
            raise StorageUnavailableError(f"Could not read account {identity}: {e}") from e

        if not raw:
            return None

        return Account.model_validate(
            {
                "identity": raw["identity"],
                "free_balance": int(raw["free_balance"]),
                "paid_balance": int(raw["paid_balance"]),
                "reservations": _RESERVATIONS.validate_json(raw.get("reservations") or "{}"),
                "created_at": raw["created_at"],
                "version": int(raw["version"]),
            }
        )

    async def compare_and_swap(self, account: Account, expected_version: int) -> bool:
        client = await self._client()
        next_expiry = account.next_expiry
        args = [
            str(expected_version),
            account.identity,
            str(account.free_balance),
            str(account.paid_balance),
            str(account.pending_reservation),
            _RESERVATIONS.dump_json(account.reservations).decode("utf-8"),
            account.created_at.isoformat(),
            str(account.version),
            str(next_expiry.timestamp()) if next_expiry else "",
        ]
        try:
            result = await client.eval(
                self.CAS_SCRIPT, 2, self._account_key(account.identity), self._holds_key(), *args
            )
        except RedisError as e:
            logger.error("Redis CAS error for identity {}: {}", account.identity, e)
            raise StorageUnavailableError(f"Could not write account {account.identity}: {e}") from e
        return int(result) == 1

    async def expiring_identities(self, now: datetime.datetime) -> List[str]:
        client = await self._client()
        try:
            identities = await client.zrangebyscore(self._holds_key(), "-inf", now.timestamp())
        except RedisError as e:
            logger.error("Redis ZRANGEBYSCORE error: {}", e)
            raise StorageUnavailableError(f"Could not list expiring reservations: {e}") from e
        return list(identities)

    async def claim_idempotency_key(self, key: str, ttl: int) -> bool:
        client = await self._client()
        try:
            claimed = await client.set(self._idempotency_key(key), "1", nx=True, ex=ttl)
        except RedisError as e:
            logger.error("Redis SET NX error for key {}: {}", key, e)
            raise StorageUnavailableError(f"Could not record idempotency key {key}: {e}") from e
        return bool(claimed)

    async def forget_idempotency_key(self, key: str) -> None:
        client = await self._client()
        try:
            await client.delete(self._idempotency_key(key))
        except RedisError as e:
            logger.error("Redis DEL error for key {}: {}", key, e)
            raise StorageUnavailableError(f"Could not drop idempotency key {key}: {e}") from e
