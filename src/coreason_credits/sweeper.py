# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits

import asyncio
import contextlib
from typing import Optional

from coreason_credits.exceptions import StorageUnavailableError
from coreason_credits.ledger import CreditLedger
from coreason_credits.utils.logger import logger


class ReservationSweeper:
    """Background task that releases reservations abandoned past their lifetime."""

    def __init__(self, ledger: CreditLedger, interval_seconds: float) -> None:
        self.ledger = ledger
        self.interval_seconds = interval_seconds
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start sweeping on the running event loop. No-op if already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Reservation sweeper started (every {}s)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Reservation sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.ledger.sweep_expired()
            except StorageUnavailableError as e:
                # Next tick retries
                logger.warning("Reservation sweep skipped: {}", e)
