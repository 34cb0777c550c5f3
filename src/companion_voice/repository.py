"""SQLite-backed repository for per-user trial budgets."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TrialRecord:
    """Stored trial state of one user.

    ``remaining_minutes`` is ``None`` for users without a metered trial.
    ``version`` increases on every write and guards compare-and-set updates.
    """

    user_id: str
    remaining_minutes: float | None
    version: int
    active_coupon_code: str | None = None

    @property
    def has_budget(self) -> bool:
        return self.remaining_minutes is not None


class TrialRepository:
    """Persist trial minutes and the entitlement they unlock."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                trial_minutes_remaining REAL,
                trial_version INTEGER NOT NULL DEFAULT 0,
                active_coupon_code TEXT,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def upsert_user(
        self,
        user_id: str,
        *,
        remaining_minutes: float | None = None,
        coupon_code: str | None = None,
    ) -> TrialRecord:
        """Create or overwrite a user's trial state, bumping its version."""

        assert self._connection is not None
        await self._connection.execute(
            """
            INSERT INTO users (user_id, trial_minutes_remaining, trial_version, active_coupon_code, updated_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                trial_minutes_remaining = excluded.trial_minutes_remaining,
                trial_version = users.trial_version + 1,
                active_coupon_code = excluded.active_coupon_code,
                updated_at = excluded.updated_at
            """,
            (user_id, remaining_minutes, coupon_code, _utcnow()),
        )
        await self._connection.commit()
        record = await self.get_trial(user_id)
        assert record is not None
        return record

    async def get_trial(self, user_id: str) -> TrialRecord | None:
        """Return the stored trial state, or ``None`` for unknown users."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT user_id, trial_minutes_remaining, trial_version, active_coupon_code
            FROM users WHERE user_id = ?
            """,
            (user_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        remaining = row["trial_minutes_remaining"]
        return TrialRecord(
            user_id=row["user_id"],
            remaining_minutes=float(remaining) if remaining is not None else None,
            version=int(row["trial_version"]),
            active_coupon_code=row["active_coupon_code"],
        )

    async def compare_and_set_remaining(
        self, user_id: str, remaining_minutes: float, *, expected_version: int
    ) -> int | None:
        """Write ``remaining_minutes`` only if the version is unchanged.

        Returns the new version on success, ``None`` when another writer got
        there first.
        """

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            UPDATE users
            SET trial_minutes_remaining = ?, trial_version = trial_version + 1, updated_at = ?
            WHERE user_id = ? AND trial_version = ?
            """,
            (max(0.0, remaining_minutes), _utcnow(), user_id, expected_version),
        )
        updated = cursor.rowcount
        await cursor.close()
        await self._connection.commit()
        if updated != 1:
            return None
        return expected_version + 1

    async def add_trial_minutes(self, user_id: str, minutes: float) -> TrialRecord:
        """Grant minutes: extend a positive budget, otherwise start a new one."""

        if minutes <= 0:
            raise ValueError("minutes must be positive")
        assert self._connection is not None
        await self._connection.execute(
            """
            INSERT INTO users (user_id, trial_minutes_remaining, trial_version, updated_at)
            VALUES (?, ?, 1, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                trial_minutes_remaining = CASE
                    WHEN users.trial_minutes_remaining > 0
                        THEN users.trial_minutes_remaining + excluded.trial_minutes_remaining
                    ELSE excluded.trial_minutes_remaining
                END,
                trial_version = users.trial_version + 1,
                updated_at = excluded.updated_at
            """,
            (user_id, minutes, _utcnow()),
        )
        await self._connection.commit()
        record = await self.get_trial(user_id)
        assert record is not None
        return record

    async def clear_entitlement(self, user_id: str) -> bool:
        """Remove the trial-linked coupon. Returns True if one was cleared."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            UPDATE users SET active_coupon_code = NULL, updated_at = ?
            WHERE user_id = ? AND active_coupon_code IS NOT NULL
            """,
            (_utcnow(), user_id),
        )
        cleared = cursor.rowcount
        await cursor.close()
        await self._connection.commit()
        return cleared == 1


__all__ = ["TrialRecord", "TrialRepository"]
