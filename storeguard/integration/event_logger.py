"""
Security Event Logger Module

Records security-relevant occurrences (failed logins, rate-limit trips,
2FA failures, admin access) as immutable events and ships them to an
external audit sink.

Features:
- Append-only, immutable SecurityEvent records
- Privacy-preserving hashes for client IPs (SHA-256)
- Fire-and-forget delivery: sink failures never reach the caller,
  failed batches are re-queued
- Simple anomaly detection on every delivered batch
"""

import asyncio
import hashlib
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Protocol

from ..config import SecuritySettings, get_settings


logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

DEFAULT_BATCH_SIZE = 10
DEFAULT_HISTORY_SIZE = 1000
EVENT_SOURCE = "storeguard"

FAILED_LOGIN_THRESHOLD = 5     # failures in one batch
ADMIN_IP_THRESHOLD = 3         # distinct IPs touching admin in one batch


# ============================================================================
# Privacy Functions
# ============================================================================

def hash_identifier(value: str) -> str:
    """
    Short SHA-256 hash of an identifier such as a client IP.

    Events for the same source can still be correlated without the raw
    value ever reaching the audit store.
    """
    return hashlib.sha256(value.encode('utf-8')).hexdigest()[:16]


# ============================================================================
# Event Types
# ============================================================================

class SecurityEventType(Enum):
    """Types of security events that can be logged."""

    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGIN_BLOCKED = "login_blocked"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    ADMIN_ACCESS = "admin_access"
    DATA_ACCESS = "data_access"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    TWO_FA_ENABLED = "two_fa_enabled"
    TWO_FA_DISABLED = "two_fa_disabled"
    TWO_FA_FAILED = "two_fa_failed"
    PASSWORD_CHANGED = "password_changed"
    ACCOUNT_LOCKED = "account_locked"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================================
# Event Structure
# ============================================================================

@dataclass(frozen=True)
class SecurityEvent:
    """
    Immutable audit record.

    `context` is copied into a read-only mapping on creation.
    """
    event_type: SecurityEventType
    severity: Severity
    subject: str
    timestamp: float
    context: Mapping[str, Any] = field(default_factory=dict)
    source: str = EVENT_SOURCE

    def __post_init__(self):
        object.__setattr__(self, "context", MappingProxyType(dict(self.context)))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the audit sink."""
        return {
            'event_type': self.event_type.value,
            'severity': self.severity.value,
            'subject': self.subject,
            'timestamp': self.timestamp,
            'iso_time': datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            'details': dict(self.context),
            'source': self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SecurityEvent':
        return cls(
            event_type=SecurityEventType(data['event_type']),
            severity=Severity(data['severity']),
            subject=data['subject'],
            timestamp=data['timestamp'],
            context=data.get('details', {}),
            source=data.get('source', EVENT_SOURCE),
        )

    def __str__(self) -> str:
        dt = datetime.fromtimestamp(self.timestamp, tz=timezone.utc)
        return (
            f"[{dt.strftime('%Y-%m-%d %H:%M:%S')}] "
            f"{self.event_type.value} ({self.severity.value}) | "
            f"subject:{self.subject}"
        )


class SecurityEventSink(Protocol):
    """External audit store (e.g. a log-security-events function)."""

    async def log_security_events(self, events: List[SecurityEvent]) -> None: ...


# ============================================================================
# Event Logger
# ============================================================================

class SecurityEventLogger:
    """
    Queue of security events delivered to an audit sink in batches.

    Recording never blocks or raises: delivery happens in flush(), which
    is scheduled in the background once `batch_size` events are pending
    and an event loop is running.
    """

    def __init__(
        self,
        sink: Optional[SecurityEventSink] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ):
        """
        Initialize the event logger.

        Args:
            sink: Audit sink; when None, events are only kept in the
                bounded history
            batch_size: Pending events that trigger a background flush
            clock: Wall-clock time source for event timestamps
            history_size: Most recent events kept for retrieval, also the
                cap on undelivered events
        """
        self._sink = sink
        self._batch_size = batch_size
        self._clock = clock
        self._pending: List[SecurityEvent] = []
        self._max_pending = history_size
        self._history: Deque[SecurityEvent] = deque(maxlen=history_size)
        self._callbacks: List[Callable[[SecurityEvent], None]] = []
        self._flushing = False
        self._tasks = set()

    @classmethod
    def from_settings(cls, settings: Optional[SecuritySettings] = None,
                      sink: Optional[SecurityEventSink] = None) -> "SecurityEventLogger":
        settings = settings or get_settings()
        return cls(sink=sink, history_size=settings.event_history_size)

    def add_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Add a callback to be notified of new events."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Remove a callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    @property
    def pending(self) -> List[SecurityEvent]:
        return list(self._pending)

    # ========================================================================
    # Recording
    # ========================================================================

    def record(self, event: SecurityEvent) -> SecurityEvent:
        """Append an event and notify callbacks."""
        if self._sink is not None:
            self._pending.append(event)
            if len(self._pending) > self._max_pending:
                del self._pending[0]
        self._history.append(event)

        for callback in self._callbacks:
            try:
                callback(event)
            except Exception:
                # a broken callback must not stop logging
                logger.exception("Security event callback failed")

        if self._sink is not None and len(self._pending) >= self._batch_size:
            self._schedule_flush()
        return event

    def emit(self, event_type: SecurityEventType, severity: Severity,
             subject: str, **context: Any) -> SecurityEvent:
        """Build and record an event stamped with the current time."""
        return self.record(SecurityEvent(
            event_type=event_type,
            severity=severity,
            subject=subject,
            timestamp=self._clock(),
            context={k: v for k, v in context.items() if v is not None},
        ))

    def log_login(self, subject: str, success: bool,
                  ip_address: Optional[str] = None) -> SecurityEvent:
        """Log a login attempt."""
        return self.emit(
            SecurityEventType.LOGIN_SUCCESS if success else SecurityEventType.LOGIN_FAILURE,
            Severity.LOW if success else Severity.MEDIUM,
            subject,
            ip_hash=hash_identifier(ip_address) if ip_address else None,
        )

    def log_rate_limited(self, subject: str, action: str,
                         retry_after: float) -> SecurityEvent:
        """Log a rate-limit trip."""
        return self.emit(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            Severity.HIGH,
            subject,
            action=action,
            retry_after=round(retry_after, 3),
        )

    def log_totp(self, subject: str, success: bool) -> SecurityEvent:
        """Log a 2FA outcome."""
        if success:
            return self.emit(SecurityEventType.TWO_FA_ENABLED, Severity.LOW, subject)
        return self.emit(SecurityEventType.TWO_FA_FAILED, Severity.MEDIUM, subject)

    def log_access(self, subject: str, granted: bool, role: Optional[str] = None,
                   reason: Optional[str] = None,
                   ip_address: Optional[str] = None) -> SecurityEvent:
        """Log an admin access decision."""
        return self.emit(
            SecurityEventType.ADMIN_ACCESS if granted else SecurityEventType.UNAUTHORIZED_ACCESS,
            Severity.LOW if granted else Severity.HIGH,
            subject,
            role=role,
            reason=reason,
            ip_hash=hash_identifier(ip_address) if ip_address else None,
        )

    # ========================================================================
    # Delivery
    # ========================================================================

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: events wait for an explicit flush()
        task = loop.create_task(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> bool:
        """
        Deliver all pending events to the sink.

        Returns:
            True if the batch was delivered (or nothing was pending)
        """
        if self._sink is None or not self._pending:
            return True
        if self._flushing:
            return False

        self._flushing = True
        batch, self._pending = self._pending, []
        try:
            await self._sink.log_security_events(batch)
        except Exception as exc:
            # audit delivery is fire-and-forget; keep the batch for next time
            logger.error("Failed to deliver %d security events: %s", len(batch), exc)
            self._pending[:0] = batch
            overflow = len(self._pending) - self._max_pending
            if overflow > 0:
                del self._pending[:overflow]
                logger.warning("Dropped %d undelivered security events", overflow)
            return False
        finally:
            self._flushing = False

        for anomaly in detect_anomalies(batch):
            logger.warning("Security anomaly detected: %s", anomaly)
        return True

    # ========================================================================
    # Retrieval
    # ========================================================================

    def get_all_events(self) -> List[SecurityEvent]:
        """All events recorded by this logger, oldest first."""
        return list(self._history)

    def get_events_by_type(self, event_type: SecurityEventType) -> List[SecurityEvent]:
        """Get all events of a specific type."""
        return [e for e in self._history if e.event_type == event_type]

    def get_recent_events(self, count: int = 10) -> List[SecurityEvent]:
        """Get the most recent events."""
        return list(self._history)[-count:]


# ============================================================================
# Anomaly Detection
# ============================================================================

def detect_anomalies(events: List[SecurityEvent]) -> List[str]:
    """
    Look for suspicious patterns in a batch of events.

    Returns:
        Human-readable descriptions, empty when nothing stands out
    """
    anomalies = []

    failures = [e for e in events if e.event_type == SecurityEventType.LOGIN_FAILURE]
    if len(failures) >= FAILED_LOGIN_THRESHOLD:
        anomalies.append(f"{len(failures)} failed logins in one batch")

    admin_ips = {
        e.context.get('ip_hash') for e in events
        if e.event_type == SecurityEventType.ADMIN_ACCESS and e.context.get('ip_hash')
    }
    if len(admin_ips) > ADMIN_IP_THRESHOLD:
        anomalies.append(f"admin access from {len(admin_ips)} distinct addresses")

    severe = [e for e in events if e.severity in (Severity.HIGH, Severity.CRITICAL)]
    if severe:
        anomalies.append(f"{len(severe)} high-priority events")

    return anomalies
