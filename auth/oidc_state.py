"""
auth/oidc_state.py -- In-memory store for OIDC pending states and exchange codes.

Two single-use maps with time-to-live:
  state -> PendingState      (10 minutes) CSRF token + PKCE verifier + redirect
  code  -> OidcAuthResult    (60 seconds) completed sign-in behind a one-time code

Concurrency:
  Route handlers run on the event loop while blocking work runs in the
  threadpool, so every map operation is guarded by one threading.Lock.
  consume_state() and consume_exchange_code() read and delete under the same
  lock hold: of two concurrent callers with the same key, exactly one gets the
  value and the other gets None.

Expiry:
  Entries are checked lazily on every read (an expired entry is deleted and
  reported as missing) and swept periodically by a background asyncio task
  started from the API lifespan. An entry is live while now <= expires_at.

The store is process-local. Running more than one API process requires
sticky sessions or a shared store -- this class does not provide one.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Callable

from auth.models import OidcAuthResult, PendingState

logger = logging.getLogger("anchor.auth.oidc")

STATE_TTL_SECONDS = 10 * 60
EXCHANGE_CODE_TTL_SECONDS = 60
SWEEP_INTERVAL_SECONDS = 5 * 60


class OidcStateStore:
    """Single-use, expiring storage for the OIDC round trip.

    Args:
        clock:          Monotonic time source. Tests inject a fake clock to
                        cross expiry boundaries without sleeping.
        state_ttl:      Pending-state lifetime in seconds.
        exchange_ttl:   Exchange-code lifetime in seconds.
        sweep_interval: Seconds between background purges.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        state_ttl: float = STATE_TTL_SECONDS,
        exchange_ttl: float = EXCHANGE_CODE_TTL_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self._clock = clock
        self._state_ttl = state_ttl
        self._exchange_ttl = exchange_ttl
        self._sweep_interval = sweep_interval
        self._lock = threading.Lock()
        self._states: dict[str, PendingState] = {}
        self._exchange: dict[str, tuple[OidcAuthResult, float]] = {}
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Pending states
    # ------------------------------------------------------------------

    def store_state(self, state: str, code_verifier: str | None = None, redirect_url: str | None = None) -> None:
        entry = PendingState(
            state=state,
            expires_at=self._clock() + self._state_ttl,
            code_verifier=code_verifier,
            redirect_url=redirect_url,
        )
        with self._lock:
            self._states[state] = entry

    def get_state(self, state: str) -> PendingState | None:
        """Return the live entry without consuming it. Expired entries are evicted."""
        with self._lock:
            entry = self._states.get(state)
            if entry is None:
                return None
            if self._clock() > entry.expires_at:
                del self._states[state]
                return None
            return entry

    def delete_state(self, state: str) -> None:
        with self._lock:
            self._states.pop(state, None)

    def consume_state(self, state: str) -> PendingState | None:
        """Atomically return and remove a live entry. None if missing, expired or already used."""
        with self._lock:
            entry = self._states.pop(state, None)
        if entry is None or self._clock() > entry.expires_at:
            return None
        return entry

    # ------------------------------------------------------------------
    # Exchange codes
    # ------------------------------------------------------------------

    def store_exchange_result(self, code: str, result: OidcAuthResult) -> None:
        with self._lock:
            self._exchange[code] = (result, self._clock() + self._exchange_ttl)

    def consume_exchange_code(self, code: str) -> OidcAuthResult | None:
        with self._lock:
            entry = self._exchange.pop(code, None)
        if entry is None:
            return None
        result, expires_at = entry
        if self._clock() > expires_at:
            return None
        return result

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Remove every expired entry from both maps. Returns the number removed."""
        now = self._clock()
        with self._lock:
            stale_states = [k for k, v in self._states.items() if now > v.expires_at]
            for key in stale_states:
                del self._states[key]
            stale_codes = [k for k, (_, exp) in self._exchange.items() if now > exp]
            for key in stale_codes:
                del self._exchange[key]
        removed = len(stale_states) + len(stale_codes)
        if removed:
            logger.debug("OIDC state sweep removed %d expired entries", removed)
        return removed

    async def _sweep_loop(self) -> None:
        # CancelledError from stop() propagates out of asyncio.sleep.
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.purge_expired()

    def start(self) -> None:
        """Launch the periodic sweep on the running event loop. Idempotent."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the sweep task and wait for it to unwind."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def __len__(self) -> int:
        with self._lock:
            return len(self._states) + len(self._exchange)
