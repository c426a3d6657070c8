# Integration Module
"""
Security event logging for the audit trail.

Client IPs are stored as short SHA-256 hashes.
"""

from .event_logger import (
    SecurityEventType,
    Severity,
    SecurityEvent,
    SecurityEventSink,
    SecurityEventLogger,
    detect_anomalies,
    hash_identifier,
)

__all__ = [
    'SecurityEventType',
    'Severity',
    'SecurityEvent',
    'SecurityEventSink',
    'SecurityEventLogger',
    'detect_anomalies',
    'hash_identifier',
]
