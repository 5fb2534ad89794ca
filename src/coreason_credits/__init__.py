# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits

from .config import CreditsConfig
from .exceptions import (
    CreditError,
    InsufficientCreditError,
    ReservationNotFoundError,
    StorageUnavailableError,
    WorkExecutionError,
)
from .ledger import CreditLedger
from .manager import CreditManager, WorkOutcome
from .models import Account, AllotmentClass, BalanceSnapshot, CreditBucket, Reservation, Settlement
from .storage import AccountStore, InMemoryAccountStore, RedisAccountStore

__all__ = [
    "Account",
    "AccountStore",
    "AllotmentClass",
    "BalanceSnapshot",
    "CreditBucket",
    "CreditError",
    "CreditLedger",
    "CreditManager",
    "CreditsConfig",
    "InMemoryAccountStore",
    "InsufficientCreditError",
    "RedisAccountStore",
    "Reservation",
    "ReservationNotFoundError",
    "Settlement",
    "StorageUnavailableError",
    "WorkExecutionError",
    "WorkOutcome",
]
