"""
JWKS (JSON Web Key Set) cache with background refresh.

Providers rotate their signing keys, so the set is re-fetched on a fixed interval by a daemon
thread that is independent of any request. A request only pays for a network fetch when the
cache is cold or when a token carries a `kid` the cached set does not know yet (rotation),
and the latter is rate-limited.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import jwt  # PyJWT
import requests

from authorizer.errors import InvalidSignatureError, KeySetFetchError

logger = logging.getLogger(__name__)


class JWKSCache:
    def __init__(
        self,
        url: str,
        *,
        refresh_interval: float = 3600.0,
        timeout: float = 10.0,
        min_refetch_interval: float = 30.0,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            url: JWKS endpoint of the provider.
            refresh_interval: Seconds between background refreshes.
            timeout: Per-fetch network timeout in seconds.
            min_refetch_interval: Minimum seconds between fetches forced by an unknown `kid`.
            session: Optional requests session (tests inject a stub).
        """
        self.url = url
        self._refresh_interval = float(refresh_interval)
        self._timeout = float(timeout)
        self._min_refetch_interval = float(min_refetch_interval)
        self._session = session or requests.Session()
        self._clock = clock

        self._lock = threading.Lock()
        # Serializes network fetches so a cold start under load fetches once.
        self._fetch_lock = threading.RLock()
        self._key_set: Optional[jwt.PyJWKSet] = None
        self._fetched_at: Optional[float] = None

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the background refresher (idempotent). The first refresh happens immediately."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"jwks-refresh:{self.url}", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t.is_alive() and t is not threading.current_thread():
            t.join(timeout=self._timeout + 1.0)
        self._thread = None

    def _run(self) -> None:
        wait = 0.0
        while not self._stop.wait(wait):
            try:
                self.refresh()
            except KeySetFetchError as e:
                # Keep serving the previous set; next tick retries.
                logger.warning("JWKS background refresh failed (%s): %s", self.url, str(e))
            wait = self._refresh_interval

    def _fetch(self) -> Dict[str, Any]:
        try:
            r = self._session.get(self.url, timeout=self._timeout)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise KeySetFetchError(f"failed to fetch JWKS from {self.url}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("keys"), list):
            raise KeySetFetchError(f"invalid JWKS document from {self.url}")
        return data

    def refresh(self) -> jwt.PyJWKSet:
        """Fetch the key set now and replace the cached one."""
        with self._fetch_lock:
            data = self._fetch()
            try:
                key_set = jwt.PyJWKSet.from_dict(data)
            except jwt.PyJWKSetError as e:
                raise KeySetFetchError(f"unusable JWKS from {self.url}: {e}") from e
            with self._lock:
                self._key_set = key_set
                self._fetched_at = self._clock()
        logger.info("JWKS refreshed: url=%s keys=%d", self.url, len(key_set.keys))
        return key_set

    def get_key_set(self) -> jwt.PyJWKSet:
        with self._lock:
            cached = self._key_set
        if cached is not None:
            return cached
        # Cold start: fetch on demand. Re-check under the fetch lock so concurrent
        # callers piggyback on the first fetch.
        with self._fetch_lock:
            with self._lock:
                cached = self._key_set
            if cached is not None:
                return cached
            return self.refresh()

    def get_signing_key(self, kid: str) -> jwt.PyJWK:
        """
        Return the key with id `kid`, re-fetching once if it is unknown and the cached set is
        old enough (key rotation).
        """
        key = self._find(self.get_key_set(), kid)
        if key is not None:
            return key

        with self._lock:
            fetched_at = self._fetched_at
        if fetched_at is None or self._clock() - fetched_at >= self._min_refetch_interval:
            logger.info("JWKS: unknown kid=%s, refreshing key set", kid)
            key = self._find(self.refresh(), kid)
            if key is not None:
                return key
        raise InvalidSignatureError(f"signing key not found in JWKS: kid={kid}")

    @staticmethod
    def _find(key_set: jwt.PyJWKSet, kid: str) -> Optional[jwt.PyJWK]:
        for k in key_set.keys:
            if k.key_id == kid:
                return k
        return None
