"""
Sliding-window rate limiting for credential-sensitive actions.

Each identifier (email, IP, "ip:action" key...) gets its own attempt
window. A window expires once more than `window_seconds` have passed
since its last counted attempt; after `max_attempts` counted attempts
inside the window, further calls are denied and not counted.

Two independent limiters exist by policy, one for authentication and
one for checkout. Build them with the factories below; nothing here is
a module-level singleton.

AdvancedRateLimiter adds lockouts on top of the window:
- Exceeding the limit blocks the identifier for `block_seconds`
- Progressive mode doubles the next block, up to 16x
- Client IPs that keep hammering blocked identifiers are blocked
  globally for `ip_block_seconds`
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from ..config import SecuritySettings, get_settings
from .models import AttemptWindow, BlockWindow


logger = logging.getLogger(__name__)

DEFAULT_PRUNE_INTERVAL = 1000   # limiter calls between sweeps
MAX_BLOCK_MULTIPLIER = 16
IP_BLOCK_FACTOR = 3             # denied attempts per window, times max_attempts


class RateLimiter:
    """
    Per-identifier sliding-window attempt counter.

    Example:
        >>> limiter = RateLimiter(max_attempts=2, window_seconds=60)
        >>> limiter.is_allowed("alice@example.com")
        True
        >>> limiter.is_allowed("alice@example.com")
        True
        >>> limiter.is_allowed("alice@example.com")
        False
    """

    def __init__(self, max_attempts: int, window_seconds: float,
                 clock: Callable[[], float] = time.monotonic,
                 name: str = "default",
                 prune_interval: int = DEFAULT_PRUNE_INTERVAL):
        """
        Initialize rate limiter.

        Args:
            max_attempts: Attempts allowed inside one window
            window_seconds: Window length in seconds
            clock: Monotonic time source (injectable for tests)
            name: Label used in log records
            prune_interval: Expired windows are dropped every this many calls
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if prune_interval < 1:
            raise ValueError("prune_interval must be a positive integer")

        self._max_attempts = max_attempts
        self._window_seconds = window_seconds
        self._clock = clock
        self._name = name
        self._prune_interval = prune_interval
        self._calls = 0
        self._attempts: Dict[str, AttemptWindow] = {}
        self._lock = threading.Lock()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def is_allowed(self, identifier: str) -> bool:
        """
        Count an attempt for `identifier` if the window permits it.

        Args:
            identifier: Key to rate limit on

        Returns:
            True if the attempt is allowed (and counted), False if denied
        """
        with self._lock:
            now = self._clock()
            self._tick(now)
            window = self._attempts.get(identifier)

            if window is None or now - window.last_attempt > self._window_seconds:
                self._attempts[identifier] = AttemptWindow(count=1, last_attempt=now)
                return True

            if window.count >= self._max_attempts:
                logger.warning(
                    "Rate limit exceeded",
                    extra={
                        "limiter": self._name,
                        "count": window.count,
                        "max_attempts": self._max_attempts,
                    },
                )
                return False

            window.count += 1
            window.last_attempt = now
            return True

    def get_remaining_time(self, identifier: str) -> float:
        """
        Seconds until `identifier` may try again.

        Returns:
            0.0 when not limited, otherwise the time left in the window
        """
        with self._lock:
            window = self._attempts.get(identifier)
            if window is None or window.count < self._max_attempts:
                return 0.0
            elapsed = self._clock() - window.last_attempt
            return max(0.0, self._window_seconds - elapsed)

    def get_remaining_attempts(self, identifier: str) -> int:
        """Get number of attempts left in the current window."""
        with self._lock:
            window = self._attempts.get(identifier)
            if window is None:
                return self._max_attempts
            if self._clock() - window.last_attempt > self._window_seconds:
                return self._max_attempts
            return max(0, self._max_attempts - window.count)

    def reset(self, identifier: str) -> None:
        """Forget the window for an identifier (e.g. after a successful login)."""
        with self._lock:
            self._attempts.pop(identifier, None)

    def prune(self) -> int:
        """
        Remove expired windows.

        Also runs automatically every `prune_interval` calls to is_allowed().

        Returns:
            Number of windows removed
        """
        with self._lock:
            return self._prune_locked(self._clock())

    def _tick(self, now: float) -> None:
        # caller holds the lock
        self._calls += 1
        if self._calls >= self._prune_interval:
            self._calls = 0
            removed = self._prune_locked(now)
            if removed:
                logger.debug("Pruned %d expired windows from %s limiter", removed, self._name)

    def _prune_locked(self, now: float) -> int:
        expired = [key for key, window in self._attempts.items() if self._is_stale(window, now)]
        for key in expired:
            del self._attempts[key]
        return len(expired)

    def _is_stale(self, window: AttemptWindow, now: float) -> bool:
        return now - window.last_attempt > self._window_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(name='{self._name}', max_attempts={self._max_attempts}, "
                f"window_seconds={self._window_seconds})")


class AdvancedRateLimiter(RateLimiter):
    """
    Rate limiter with lockouts and a global IP blocklist.

    The attempt after the last allowed one blocks the identifier. While
    blocked, every attempt is denied. In progressive mode each block
    doubles the next one (up to 16x); the multiplier is forgotten once
    a block has been over for a whole window.

    Example:
        >>> limiter = AdvancedRateLimiter(max_attempts=5, window_seconds=900,
        ...                               block_seconds=900)
        >>> limiter.is_allowed("alice@example.com", ip="203.0.113.7")
        True
        >>> limiter.get_block_info("alice@example.com")
        {'blocked': False}
    """

    def __init__(self, max_attempts: int, window_seconds: float,
                 block_seconds: float = 15 * 60.0,
                 progressive: bool = True,
                 ip_block_seconds: float = 60 * 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 name: str = "default",
                 prune_interval: int = DEFAULT_PRUNE_INTERVAL):
        """
        Args:
            max_attempts: Attempts allowed inside one window
            window_seconds: Window length in seconds
            block_seconds: Length of the first block
            progressive: Double the block after each lockout
            ip_block_seconds: Length of a global IP block
            clock: Monotonic time source
            name: Label used in log records
            prune_interval: Expired state is dropped every this many calls
        """
        super().__init__(max_attempts, window_seconds, clock=clock, name=name,
                         prune_interval=prune_interval)
        if block_seconds <= 0:
            raise ValueError("block_seconds must be positive")
        if ip_block_seconds <= 0:
            raise ValueError("ip_block_seconds must be positive")

        self._block_seconds = block_seconds
        self._progressive = progressive
        self._ip_block_seconds = ip_block_seconds
        self._blocked_ips: Dict[str, float] = {}
        self._ip_strikes: Dict[str, AttemptWindow] = {}

    def is_allowed(self, identifier: str, ip: Optional[str] = None) -> bool:
        """
        Count an attempt unless the identifier or its IP is blocked.

        Args:
            identifier: Key to rate limit on
            ip: Client IP, checked against the global blocklist

        Returns:
            True if the attempt is allowed (and counted)
        """
        with self._lock:
            now = self._clock()
            self._tick(now)

            if ip is not None and self._ip_blocked(ip, now):
                return False

            window = self._attempts.get(identifier)
            if window is not None and window.block_until is not None:
                if now < window.block_until:
                    self._strike(ip, now)
                    return False
                multiplier = window.multiplier
                if now - window.block_until > self._window_seconds:
                    multiplier = 1
                self._attempts[identifier] = BlockWindow(1, now, multiplier=multiplier)
                return True

            if window is None or now - window.last_attempt > self._window_seconds:
                self._attempts[identifier] = BlockWindow(1, now)
                return True

            window.count += 1
            window.last_attempt = now
            if window.count > self._max_attempts:
                self._block(identifier, window, now)
                self._strike(ip, now)
                return False
            return True

    def get_remaining_time(self, identifier: str) -> float:
        """Seconds until the block on `identifier` ends, 0.0 if not blocked."""
        with self._lock:
            return self._block_remaining(identifier, self._clock())

    def get_remaining_attempts(self, identifier: str) -> int:
        with self._lock:
            blocked = self._block_remaining(identifier, self._clock()) > 0
        return 0 if blocked else super().get_remaining_attempts(identifier)

    def get_block_info(self, identifier: str) -> Dict:
        """
        Returns:
            Dict with 'blocked' and, while blocked, 'time_remaining' (seconds)
        """
        with self._lock:
            remaining = self._block_remaining(identifier, self._clock())
        if remaining > 0:
            return {'blocked': True, 'time_remaining': remaining}
        return {'blocked': False}

    def unblock_user(self, identifier: str) -> None:
        """Lift a block and forget the escalation (admin action)."""
        with self._lock:
            window = self._attempts.get(identifier)
            if window is not None:
                window.block_until = None
                window.count = 0
                window.multiplier = 1

    def is_ip_blocked(self, ip: str) -> bool:
        with self._lock:
            return self._ip_blocked(ip, self._clock())

    def unblock_ip(self, ip: str) -> None:
        with self._lock:
            self._blocked_ips.pop(ip, None)
            self._ip_strikes.pop(ip, None)

    def get_stats(self) -> Dict[str, int]:
        """Counts of tracked identifiers, blocked identifiers and blocked IPs."""
        with self._lock:
            now = self._clock()
            blocked_users = sum(
                1 for window in self._attempts.values()
                if window.block_until is not None and now < window.block_until
            )
            blocked_ips = sum(1 for until in self._blocked_ips.values() if now < until)
            return {
                'active_attempts': len(self._attempts),
                'blocked_users': blocked_users,
                'blocked_ips': blocked_ips,
            }

    # Everything below runs with the lock held

    def _block_remaining(self, identifier: str, now: float) -> float:
        window = self._attempts.get(identifier)
        if window is None or window.block_until is None:
            return 0.0
        return max(0.0, window.block_until - now)

    def _block(self, identifier: str, window: BlockWindow, now: float) -> None:
        multiplier = window.multiplier if self._progressive else 1
        duration = self._block_seconds * multiplier
        window.block_until = now + duration
        if self._progressive:
            window.multiplier = min(multiplier * 2, MAX_BLOCK_MULTIPLIER)
        logger.warning(
            "Identifier blocked",
            extra={
                "limiter": self._name,
                "block_seconds": duration,
                "multiplier": multiplier,
            },
        )

    def _strike(self, ip: Optional[str], now: float) -> None:
        if ip is None:
            return
        strikes = self._ip_strikes.get(ip)
        if strikes is None or now - strikes.last_attempt > self._window_seconds:
            strikes = self._ip_strikes[ip] = AttemptWindow(count=0, last_attempt=now)
        strikes.count += 1
        strikes.last_attempt = now

        if strikes.count > self._max_attempts * IP_BLOCK_FACTOR:
            self._blocked_ips[ip] = now + self._ip_block_seconds
            del self._ip_strikes[ip]
            logger.warning("Client IP blocked globally",
                           extra={"limiter": self._name, "block_seconds": self._ip_block_seconds})

    def _ip_blocked(self, ip: str, now: float) -> bool:
        until = self._blocked_ips.get(ip)
        if until is None:
            return False
        if now >= until:
            del self._blocked_ips[ip]
            logger.info("Client IP block expired", extra={"limiter": self._name})
            return False
        return True

    def _is_stale(self, window: BlockWindow, now: float) -> bool:
        if window.block_until is not None:
            return now - window.block_until > self._window_seconds
        return super()._is_stale(window, now)

    def _prune_locked(self, now: float) -> int:
        removed = super()._prune_locked(now)
        for ip in [ip for ip, until in self._blocked_ips.items() if now >= until]:
            del self._blocked_ips[ip]
        for ip in [ip for ip, s in self._ip_strikes.items()
                   if now - s.last_attempt > self._window_seconds]:
            del self._ip_strikes[ip]
        return removed


def create_auth_rate_limiter(settings: Optional[SecuritySettings] = None,
                             clock: Callable[[], float] = time.monotonic) -> RateLimiter:
    """Limiter for login, signup and password-reset attempts."""
    settings = settings or get_settings()
    return RateLimiter(settings.auth_max_attempts, settings.auth_window_seconds,
                       clock=clock, name="auth",
                       prune_interval=settings.rate_limit_prune_interval)


def create_checkout_rate_limiter(settings: Optional[SecuritySettings] = None,
                                 clock: Callable[[], float] = time.monotonic) -> RateLimiter:
    """Limiter for checkout-session creation."""
    settings = settings or get_settings()
    return RateLimiter(settings.checkout_max_attempts, settings.checkout_window_seconds,
                       clock=clock, name="checkout",
                       prune_interval=settings.rate_limit_prune_interval)


def create_lockout_auth_rate_limiter(settings: Optional[SecuritySettings] = None,
                                     clock: Callable[[], float] = time.monotonic) -> AdvancedRateLimiter:
    """Auth limiter with progressive lockout and IP blocking."""
    settings = settings or get_settings()
    return AdvancedRateLimiter(
        settings.auth_max_attempts, settings.auth_window_seconds,
        block_seconds=settings.auth_block_seconds,
        progressive=True,
        ip_block_seconds=settings.ip_block_seconds,
        clock=clock, name="auth",
        prune_interval=settings.rate_limit_prune_interval,
    )


def create_admin_rate_limiter(settings: Optional[SecuritySettings] = None,
                              clock: Callable[[], float] = time.monotonic) -> AdvancedRateLimiter:
    """Limiter for admin-panel actions (10 per 10 minutes, 30 minute lockout)."""
    settings = settings or get_settings()
    return AdvancedRateLimiter(
        settings.admin_max_attempts, settings.admin_window_seconds,
        block_seconds=settings.admin_block_seconds,
        progressive=True,
        ip_block_seconds=settings.ip_block_seconds,
        clock=clock, name="admin",
        prune_interval=settings.rate_limit_prune_interval,
    )
