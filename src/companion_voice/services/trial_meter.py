"""
Trial-time meter for authenticated voice sessions.

The meter counts a user's trial budget down in wall-clock time while their
session is open. Every tick pushes the locally computed remaining minutes to
the client; every sync interval (and once when the budget runs out) the value
is reconciled with the store.

Reconciliation relies on the record version rather than on value diffs: every
write bumps ``trial_version``, so a changed version with a stored value above
ours means somebody granted more minutes and the local snapshot is rebased
instead of overwriting the grant.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import aiosqlite

from ..repository import TrialRecord, TrialRepository

logger = logging.getLogger(__name__)

SendFn = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class MeterState:
    snapshot_minutes: float
    started_at: float
    version: int
    last_persisted_at: float
    last_persisted_value: float


class TrialMeter:
    """Ticks down one user's trial budget for the lifetime of a session."""

    def __init__(
        self,
        repository: TrialRepository,
        user_id: str,
        *,
        send: SendFn,
        tick_interval: float = 1.0,
        sync_interval: float = 10.0,
        tolerance_minutes: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._repository = repository
        self.user_id = user_id
        self._send = send
        self.tick_interval = tick_interval
        self.sync_interval = sync_interval
        self.tolerance_minutes = tolerance_minutes
        self._clock = clock
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.state: Optional[MeterState] = None
        self._expired_synced = False
        self._entitlement_cleared = False
        self._released = False

    @property
    def active(self) -> bool:
        return self.state is not None and not self._released

    async def start(self, *, run_ticker: bool = True) -> bool:
        """Snapshot the stored budget and start ticking.

        Returns False (and stays inactive) when the user has no metered trial.
        """

        try:
            record = await self._repository.get_trial(self.user_id)
        except aiosqlite.Error as exc:
            logger.error(f"Could not load trial budget for {self.user_id}: {exc}")
            return False
        if record is None or not record.has_budget:
            return False

        now = self._clock()
        self.state = MeterState(
            snapshot_minutes=float(record.remaining_minutes),
            started_at=now,
            version=record.version,
            last_persisted_at=now,
            last_persisted_value=float(record.remaining_minutes),
        )
        logger.info(
            f"Trial meter started for {self.user_id} with {record.remaining_minutes:.2f} min"
        )
        await self._push(self.remaining())
        if run_ticker:
            self._task = asyncio.create_task(self._run(), name=f"trial-meter-{self.user_id}")
        return True

    def remaining(self) -> float:
        if self.state is None:
            return 0.0
        elapsed_minutes = (self._clock() - self.state.started_at) / 60.0
        return max(0.0, self.state.snapshot_minutes - elapsed_minutes)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Trial meter tick failed for {self.user_id}: {exc}", exc_info=True)

    async def tick(self) -> float:
        """Push the current remaining minutes and reconcile when due."""

        if not self.active:
            return 0.0
        remaining = self.remaining()
        await self._push(remaining)

        assert self.state is not None
        sync_due = self._clock() - self.state.last_persisted_at >= self.sync_interval
        newly_expired = remaining <= 0 and not self._expired_synced
        if sync_due or newly_expired:
            async with self._lock:
                await self.reconcile()
        return remaining

    async def reconcile(self) -> None:
        """Bring the local snapshot and the stored record back in line.

        Callers hold the meter lock.
        """

        if self.state is None:
            return
        computed = self.remaining()
        try:
            record = await self._repository.get_trial(self.user_id)
        except aiosqlite.Error as exc:
            logger.error(f"Trial reconcile read failed for {self.user_id}: {exc}")
            return
        if record is None or not record.has_budget:
            logger.warning(f"Trial record for {self.user_id} disappeared; skipping persist")
            return

        stored = float(record.remaining_minutes)
        if record.version != self.state.version:
            if stored > computed + self.tolerance_minutes:
                self._rebase(record)
                logger.info(
                    f"Trial budget for {self.user_id} topped up externally to {stored:.2f} min"
                )
                return

        value = min(computed, stored)
        if value < computed:
            self._rebase(record)
        await self._persist(value, record.version)

        if value <= 0:
            self._expired_synced = True
            await self._clear_entitlement()

    def _rebase(self, record: TrialRecord) -> None:
        assert self.state is not None
        now = self._clock()
        self.state.snapshot_minutes = float(record.remaining_minutes or 0.0)
        self.state.started_at = now
        self.state.version = record.version
        self.state.last_persisted_at = now
        self.state.last_persisted_value = self.state.snapshot_minutes
        if self.state.snapshot_minutes > 0:
            self._expired_synced = False

    async def _persist(self, value: float, expected_version: int) -> None:
        assert self.state is not None
        try:
            new_version = await self._repository.compare_and_set_remaining(
                self.user_id, value, expected_version=expected_version
            )
        except aiosqlite.Error as exc:
            logger.error(f"Trial persist failed for {self.user_id}: {exc}")
            return
        if new_version is None:
            logger.info(f"Trial record for {self.user_id} changed concurrently; retrying next sync")
            return
        self.state.version = new_version
        self.state.last_persisted_at = self._clock()
        self.state.last_persisted_value = value

    async def _clear_entitlement(self) -> None:
        if self._entitlement_cleared:
            return
        self._entitlement_cleared = True
        try:
            cleared = await self._repository.clear_entitlement(self.user_id)
        except aiosqlite.Error as exc:
            logger.error(f"Could not clear trial entitlement for {self.user_id}: {exc}")
            return
        if cleared:
            logger.info(f"Trial expired for {self.user_id}; entitlement cleared")

    async def _push(self, remaining: float) -> None:
        await self._send(
            {
                "type": "demo_timer_update",
                "remainingMinutes": round(remaining, 2),
                "expired": remaining <= 0,
            }
        )

    async def release(self) -> None:
        """Stop ticking and persist one final time. Safe to call repeatedly."""

        if self._released:
            return
        self._released = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if self.state is None:
            return
        async with self._lock:
            await self.reconcile()
        logger.info(
            f"Trial meter released for {self.user_id} at {self.state.last_persisted_value:.2f} min"
        )


__all__ = ["MeterState", "TrialMeter"]
