# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits


class CreditError(Exception):
    """Base exception for credit-related errors."""

    pass


class InsufficientCreditError(CreditError):
    """Raised when an identity cannot afford the requested reservation."""

    def __init__(self, available: int, requested: int) -> None:
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient credit: {available} available, {requested} requested.")


class ReservationNotFoundError(CreditError):
    """Raised when a reservation was already settled, released or swept."""

    def __init__(self, reservation_id: str) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} is not open.")


class StorageUnavailableError(CreditError):
    """Raised when the backing store cannot be reached or cannot commit. Safe to retry."""

    pass


class WorkExecutionError(CreditError):
    """Raised when the work executor fails to produce a chargeable result."""

    pass
