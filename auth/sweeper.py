"""
auth/sweeper.py -- Retire expired refresh tokens, challenges and reset requests.

The three purges touch unrelated tables, so they run concurrently in worker
threads (each opens its own short transaction). asyncio.gather with
return_exceptions=True waits for all three before the result is assembled; a
failing purge never stops the others, and every failure is reported by
collection name.

Scheduling is the caller's job: the API lifespan runs one sweep at startup and
then every SWEEP_INTERVAL_SECONDS; main.py exposes a one-shot sweep.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.models import SweepResult
from auth.store import AuthStore
from auth.tokens import Clock, utc_now

logger = logging.getLogger("gatekeeper.auth.sweeper")


class ExpirySweeper:
    def __init__(self, store: AuthStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    def _purges(self) -> dict[str, Callable[[datetime], int]]:
        return {
            "refresh_tokens": self._store.purge_expired_refresh_tokens,
            "second_factor_challenges": self._store.purge_expired_challenges,
            "password_reset_requests": self._store.purge_expired_password_resets,
        }

    async def sweep(self, retention_days: int) -> SweepResult:
        """Delete every record that expired more than retention_days ago."""
        if retention_days < 0:
            raise ValueError("retention_days must not be negative")
        cutoff = self._clock() - timedelta(days=retention_days)
        purges = self._purges()

        outcomes = await asyncio.gather(
            *(asyncio.to_thread(purge, cutoff) for purge in purges.values()),
            return_exceptions=True,
        )

        result = SweepResult()
        for name, outcome in zip(purges, outcomes):
            if isinstance(outcome, Exception):
                cause = outcome.__cause__ or outcome
                result.failures[name] = f"{type(cause).__name__}: {cause}"
                logger.error("Expiry sweep of %s failed: %s", name, result.failures[name])
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.deleted[name] = outcome

        logger.info(
            "Expiry sweep (cutoff %s): deleted %d rows, %d collection(s) failed",
            cutoff.isoformat(),
            result.total_deleted,
            len(result.failures),
        )
        return result
