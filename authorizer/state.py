"""
Server-side OAuth flow state.

Each Auth request mints a StateEntry (CSRF id + PKCE verifier + where the flow should end)
and parks it here until the provider calls back. Entries are single-use and expire on their
own after a fixed TTL, even if no further request ever arrives.

Limitation: the store is process-local. Running more than one instance requires sticky
sessions (or a shared store implementing the same two methods).
"""
from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from heapq import heappop, heappush
from typing import Callable, Dict, List, Optional, Tuple

from authorizer.util import truncate_secret

logger = logging.getLogger(__name__)

DEFAULT_STATE_TTL_SECONDS = 60.0


@dataclass(frozen=True)
class StateEntry:
    """Contextual info for one OAuth flow, keyed by the `state` parameter."""

    id: str
    code_verifier: str  # PKCE secret; never leaves the server except in the token exchange
    client_callback_url: str  # always from the allow-list
    provider: str


class StateStore:
    """
    Concurrency-safe registry of StateEntry values with per-entry expiry.

    Expiry is driven by one daemon thread owned by the store (a deadline heap), not by the
    request that created the entry, so entries expire even after that request has returned
    or been cancelled. The thread is started on first use.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_STATE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._cond = threading.Condition()
        self._entries: Dict[str, StateEntry] = {}
        # (deadline, seq, id, entry); consumed or replaced entries stay until their deadline.
        self._deadlines: List[Tuple[float, int, str, StateEntry]] = []
        self._seq = itertools.count()
        self._generation = 0
        self._thread: Optional[threading.Thread] = None

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def store(self, entry: StateEntry) -> None:
        """
        Insert `entry` and schedule its removal after the TTL.

        Storing an id that is already present replaces the entry; the older deadline no
        longer applies to it.
        """
        deadline = self._clock() + self._ttl
        with self._cond:
            self._entries[entry.id] = entry
            heappush(self._deadlines, (deadline, next(self._seq), entry.id, entry))
            self._ensure_reaper()
            self._cond.notify()
        logger.debug("State stored: id=%s ttl=%.0fs", truncate_secret(entry.id), self._ttl)

    def consume(self, state_id: str) -> Optional[StateEntry]:
        """
        Atomically remove and return the entry for `state_id`.

        Returns None if the id was never stored, has expired, or was already consumed.
        """
        with self._cond:
            return self._entries.pop(state_id, None)

    def _ensure_reaper(self) -> None:
        # Caller holds self._cond.
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._run, args=(self._generation,), name="state-expiry", daemon=True
        )
        self._thread.start()

    def _run(self, generation: int) -> None:
        with self._cond:
            while generation == self._generation:
                if not self._deadlines:
                    self._cond.wait()
                    continue
                deadline, _, state_id, entry = self._deadlines[0]
                delay = deadline - self._clock()
                if delay > 0:
                    self._cond.wait(delay)
                    continue
                heappop(self._deadlines)
                self._expire_locked(state_id, entry)

    def _expire(self, state_id: str, entry: StateEntry) -> None:
        with self._cond:
            self._expire_locked(state_id, entry)

    def _expire_locked(self, state_id: str, entry: StateEntry) -> None:
        # Consumed, or replaced by a newer store() with its own deadline.
        if self._entries.get(state_id) is not entry:
            logger.debug("State used before expiry: id=%s", truncate_secret(state_id))
            return
        del self._entries[state_id]
        logger.warning("State expired: id=%s", truncate_secret(state_id))

    def close(self) -> None:
        """Stop the expiry thread and drop all entries (app shutdown)."""
        with self._cond:
            self._generation += 1
            self._entries.clear()
            self._deadlines.clear()
            t = self._thread
            self._thread = None
            self._cond.notify_all()
        if t is not None and t is not threading.current_thread():
            t.join(timeout=1.0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)

    def __contains__(self, state_id: object) -> bool:
        with self._cond:
            return state_id in self._entries
