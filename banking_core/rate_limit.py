"""
Authorization rate limiting

Pattern authorization is the one path an attacker can hammer to guess a
biometric pattern. Attempts are counted per account and per client address
in fixed windows, with a minimum interval between attempts on the same
account. State lives in a bounded map owned by the limiter instance and is
swept of expired windows every ``sweep_interval_seconds`` while attempts
keep arriving, and on demand through ``sweep``.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import RateLimitExceeded
from .logging_config import get_logger, log_action


@dataclass
class _Window:
    count: int
    reset_at: float
    last_attempt: float


class AuthorizationRateLimiter:
    """
    Per-account and per-address attempt counter

    ``check`` either records the attempt or raises RateLimitExceeded without
    recording it.
    """

    def __init__(
        self,
        max_attempts_per_account: int = 5,
        max_attempts_per_ip: int = 15,
        window_seconds: float = 3600,
        min_interval_seconds: float = 10,
        max_entries: int = 10000,
        sweep_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_attempts_per_account = max_attempts_per_account
        self.max_attempts_per_ip = max_attempts_per_ip
        self.window_seconds = window_seconds
        self.min_interval_seconds = min_interval_seconds
        self.max_entries = max_entries
        self.sweep_interval_seconds = sweep_interval_seconds or window_seconds
        self._clock = clock
        self._next_sweep = clock() + self.sweep_interval_seconds
        self._accounts: Dict[str, _Window] = {}
        self._ips: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("banking.rate_limit")

    @staticmethod
    def _live(windows: Dict[str, _Window], key: str, now: float) -> Optional[_Window]:
        window = windows.get(key)
        if window is None or now >= window.reset_at:
            return None
        return window

    def check(self, account_id: str, client_ip: Optional[str] = None) -> None:
        """
        Record an authorization attempt

        Raises:
            RateLimitExceeded: If the account or address is over its limit, or
                the previous attempt on the account was too recent
        """
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep_locked(now)

            account_window = self._live(self._accounts, account_id, now)
            if account_window is not None:
                if account_window.count >= self.max_attempts_per_account:
                    log_action(self.logger, "warning", "Authorization attempts exhausted for account",
                               action="rate_limit", resource=account_id)
                    raise RateLimitExceeded(
                        "Too many authorization attempts for this account, try again later"
                    )
                if now - account_window.last_attempt < self.min_interval_seconds:
                    log_action(self.logger, "warning", "Authorization attempted too soon",
                               action="rate_limit", resource=account_id)
                    raise RateLimitExceeded(
                        f"Wait at least {self.min_interval_seconds:g} seconds between attempts on the same account"
                    )

            ip_window = self._live(self._ips, client_ip, now) if client_ip else None
            if ip_window is not None and ip_window.count >= self.max_attempts_per_ip:
                log_action(self.logger, "warning", "Authorization attempts exhausted for address",
                           action="rate_limit", resource=client_ip)
                raise RateLimitExceeded("Too many authorization attempts from this address, try again later")

            self._record(self._accounts, account_id, account_window, now)
            if client_ip:
                self._record(self._ips, client_ip, ip_window, now)

    def _record(self, windows: Dict[str, _Window], key: str, window: Optional[_Window], now: float) -> None:
        if window is None:
            if len(windows) >= self.max_entries:
                self._sweep_locked(now)
                if len(windows) >= self.max_entries:
                    # Still full of live windows: drop the one closest to expiry
                    oldest = min(windows, key=lambda k: windows[k].reset_at)
                    del windows[oldest]
            windows[key] = _Window(count=1, reset_at=now + self.window_seconds, last_attempt=now)
        else:
            window.count += 1
            window.last_attempt = now

    def _sweep_locked(self, now: float) -> int:
        self._next_sweep = now + self.sweep_interval_seconds
        removed = 0
        for windows in (self._accounts, self._ips):
            for key in [k for k, w in windows.items() if now >= w.reset_at]:
                del windows[key]
                removed += 1
        return removed

    def sweep(self) -> int:
        """Drop expired windows; returns how many were removed"""
        with self._lock:
            return self._sweep_locked(self._clock())

    def tracked(self) -> Dict[str, int]:
        with self._lock:
            return {"accounts": len(self._accounts), "ips": len(self._ips)}
