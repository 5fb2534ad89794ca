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
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class AllotmentClass(str, Enum):
    """Seeding category of an identity, decided by whoever resolved it."""

    ANONYMOUS = "anonymous"
    REGISTERED = "registered"
    NONE = "none"


class CreditBucket(str, Enum):
    FREE = "free"
    PAID = "paid"


class Reservation(BaseModel):  # type: ignore[misc]
    """
    A provisional hold on credit for one in-flight unit of work.

    The same object is handed to the caller as the reservation handle. The
    ledger always re-reads the stored copy, so a tampered handle cannot change
    what gets refunded.
    """

    model_config = ConfigDict(frozen=True)

    reservation_id: str
    identity: str
    estimated_cost: int = Field(ge=0)
    drawn_from_free: int = Field(ge=0)
    drawn_from_paid: int = Field(ge=0)
    created_at: datetime.datetime
    expires_at: datetime.datetime

    def is_expired(self, now: datetime.datetime) -> bool:
        if now.tzinfo is None:
            raise ValueError("now must be a timezone-aware datetime.")
        return self.expires_at <= now


class BalanceSnapshot(BaseModel):  # type: ignore[misc]
    free: int
    paid: int
    total: int


class Settlement(BalanceSnapshot):
    """Balance after settling, plus what the settlement billed."""

    charged: int
    debited: int
    shortfall: int


class Account(BaseModel):  # type: ignore[misc]
    """Per-identity balances. Settled credit and open holds are tracked separately."""

    model_config = ConfigDict(validate_assignment=True)

    identity: str
    free_balance: int = Field(default=0, ge=0)
    paid_balance: int = Field(default=0, ge=0)
    reservations: Dict[str, Reservation] = Field(default_factory=dict)
    created_at: datetime.datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, ge=0)

    @property
    def pending_reservation(self) -> int:
        return sum(r.estimated_cost for r in self.reservations.values())

    @property
    def available(self) -> int:
        return self.free_balance + self.paid_balance

    @property
    def next_expiry(self) -> Optional[datetime.datetime]:
        """Earliest expiry among open reservations, None when nothing is held."""
        return min((r.expires_at for r in self.reservations.values()), default=None)

    def snapshot(self) -> BalanceSnapshot:
        return BalanceSnapshot(free=self.free_balance, paid=self.paid_balance, total=self.available)


class ResolvedIdentity(BaseModel):  # type: ignore[misc]
    identity: str
    allotment: AllotmentClass = AllotmentClass.ANONYMOUS
