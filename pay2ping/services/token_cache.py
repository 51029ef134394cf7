"""
Access token cache with expiry and single-flight refresh.
"""

import threading
import time
from typing import Callable, Optional, Tuple


class TokenCache:
    """
    Holds one bearer token and refreshes it shortly before it expires.

    fetch() must return (token, expires_in_seconds). Concurrent callers that find
    the token stale wait on a single refresh instead of each fetching their own.
    """

    def __init__(self, fetch: Callable[[], Tuple[str, float]], refresh_margin: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self._fetch = fetch
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def _is_fresh(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at - self._refresh_margin

    def get(self) -> str:
        if self._is_fresh():
            return self._token

        with self._lock:
            # another caller may have refreshed while we waited
            if self._is_fresh():
                return self._token

            try:
                token, expires_in = self._fetch()
            except Exception:
                self._token = None
                self._expires_at = 0.0
                raise

            self._token = token
            self._expires_at = self._clock() + float(expires_in)
            return token

    def invalidate(self):
        with self._lock:
            self._token = None
            self._expires_at = 0.0
