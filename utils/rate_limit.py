import logging
import threading
import time

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 60


class LoginRateLimiter:
    """Counts failed logins per (client address, e-mail) key.

    Once a key has ``max_attempts`` failures inside ``window_seconds`` it is locked for
    another ``window_seconds``, whatever the credentials. One instance lives for the
    lifetime of the app (``app.extensions["login_limiter"]``); state is per process.
    Expired keys are swept at most once per ``sweep_interval`` seconds.
    """

    def __init__(
        self,
        window_seconds=900,
        max_attempts=5,
        clock=time.monotonic,
        sweep_interval=SWEEP_INTERVAL,
    ):
        self.window_seconds = window_seconds
        self.max_attempts = max_attempts
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries = {}
        self._last_sweep = None
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    @staticmethod
    def build_key(address, email) -> str:
        return f"{address or 'unknown'}|{(email or '').strip().lower()}"

    def _expired(self, entry, now) -> bool:
        if entry["locked_until"] is not None:
            return now >= entry["locked_until"]
        return now - entry["first_attempt"] > self.window_seconds

    def _maybe_sweep(self, now):
        if self._last_sweep is not None and now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info(f"Swept {len(stale)} expired login rate-limit entries")

    def _current(self, key, now):
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, now):
            self._entries.pop(key, None)
            return None
        return entry

    def is_limited(self, key) -> bool:
        with self._lock:
            entry = self._current(key, self._clock())
            return entry is not None and entry["locked_until"] is not None

    def record_failure(self, key) -> int:
        """Record one failure and return the failure count inside the window."""
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            entry = self._current(key, now)
            if entry is None:
                entry = {"count": 0, "first_attempt": now, "locked_until": None}
                self._entries[key] = entry
            entry["count"] += 1
            if entry["count"] >= self.max_attempts and entry["locked_until"] is None:
                entry["locked_until"] = now + self.window_seconds
            return entry["count"]

    def reset(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def clear(self):
        with self._lock:
            self._entries.clear()
