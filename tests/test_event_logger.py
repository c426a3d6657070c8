"""
Unit tests for the security event logger.
"""

import asyncio
import logging

import pytest

from storeguard.config import SecuritySettings
from storeguard.integration.event_logger import (
    SecurityEventLogger, SecurityEvent, SecurityEventType, Severity,
    detect_anomalies, hash_identifier
)
from tests.fakes import FakeClock, RecordingSink, drain


def make_event(event_type=SecurityEventType.LOGIN_FAILURE, severity=Severity.MEDIUM, **context):
    return SecurityEvent(event_type, severity, "alice@example.com", 1_700_000_000.0, context)


class TestSecurityEvent:

    def test_immutable(self):
        event = make_event(attempt=1)
        with pytest.raises(AttributeError):
            event.subject = "mallory"
        with pytest.raises(TypeError):
            event.context["attempt"] = 2

    def test_context_is_copied(self):
        context = {"action": "login"}
        event = SecurityEvent(SecurityEventType.RATE_LIMIT_EXCEEDED, Severity.HIGH,
                              "x", 0.0, context)
        context["action"] = "checkout"
        assert event.context["action"] == "login"

    def test_to_dict(self):
        data = make_event(ip_hash="abc").to_dict()
        assert data["event_type"] == "login_failure"
        assert data["severity"] == "medium"
        assert data["details"] == {"ip_hash": "abc"}
        assert data["iso_time"] == "2023-11-14T22:13:20+00:00"
        assert data["source"] == "storeguard"

    def test_from_dict(self):
        event = make_event(ip_hash="abc")
        assert SecurityEvent.from_dict(event.to_dict()) == event

    def test_str(self):
        assert "login_failure (medium) | subject:alice@example.com" in str(make_event())


class TestHashIdentifier:

    def test_stable_and_short(self):
        assert hash_identifier("203.0.113.7") == hash_identifier("203.0.113.7")
        assert len(hash_identifier("203.0.113.7")) == 16
        assert "203.0.113.7" not in hash_identifier("203.0.113.7")

    def test_distinct_inputs(self):
        assert hash_identifier("203.0.113.7") != hash_identifier("203.0.113.8")


class TestRecording:

    def setup_method(self):
        self.clock = FakeClock(start=1_700_000_000.0)
        self.events = SecurityEventLogger(clock=self.clock)

    def test_log_login_hashes_ip(self):
        event = self.events.log_login("alice@example.com", False, ip_address="203.0.113.7")
        assert event.event_type is SecurityEventType.LOGIN_FAILURE
        assert event.severity is Severity.MEDIUM
        assert event.context["ip_hash"] == hash_identifier("203.0.113.7")
        assert "203.0.113.7" not in str(event.to_dict())

    def test_log_login_success_without_ip(self):
        event = self.events.log_login("user-1", True)
        assert event.event_type is SecurityEventType.LOGIN_SUCCESS
        assert dict(event.context) == {}

    def test_log_rate_limited(self):
        event = self.events.log_rate_limited("alice", "checkout", 299.12345)
        assert event.event_type is SecurityEventType.RATE_LIMIT_EXCEEDED
        assert event.context == {"action": "checkout", "retry_after": 299.123}

    def test_log_totp(self):
        assert self.events.log_totp("u", True).event_type is SecurityEventType.TWO_FA_ENABLED
        assert self.events.log_totp("u", False).event_type is SecurityEventType.TWO_FA_FAILED

    def test_timestamps_from_clock(self):
        first = self.events.log_login("u", True)
        self.clock.advance(5)
        second = self.events.log_login("u", True)
        assert second.timestamp - first.timestamp == 5

    def test_retrieval(self):
        self.events.log_login("a", False)
        self.events.log_login("b", True)
        self.events.log_login("c", False)

        assert [e.subject for e in self.events.get_all_events()] == ["a", "b", "c"]
        assert len(self.events.get_events_by_type(SecurityEventType.LOGIN_FAILURE)) == 2
        assert [e.subject for e in self.events.get_recent_events(2)] == ["b", "c"]

    def test_nothing_pending_without_sink(self):
        for i in range(50):
            self.events.log_login(f"user-{i}", False)
        assert self.events.pending == []
        assert len(self.events.get_all_events()) == 50

    def test_history_is_bounded(self):
        events = SecurityEventLogger(clock=self.clock, history_size=3)
        for subject in "abcde":
            events.log_login(subject, False)
        assert [e.subject for e in events.get_all_events()] == ["c", "d", "e"]
        assert [e.subject for e in events.get_recent_events(10)] == ["c", "d", "e"]

    def test_pending_is_bounded(self):
        events = SecurityEventLogger(sink=RecordingSink(), batch_size=100, history_size=3)
        for subject in "abcde":
            events.log_login(subject, False)
        assert [e.subject for e in events.pending] == ["c", "d", "e"]

    def test_from_settings(self):
        settings = SecuritySettings(_env_file=None, event_history_size=2)
        events = SecurityEventLogger.from_settings(settings)
        for subject in "abc":
            events.log_login(subject, False)
        assert [e.subject for e in events.get_all_events()] == ["b", "c"]
        assert events.pending == []

    def test_callbacks(self):
        seen = []
        self.events.add_callback(seen.append)
        self.events.log_login("a", False)
        self.events.remove_callback(seen.append)
        self.events.log_login("b", False)
        assert [e.subject for e in seen] == ["a"]

    def test_failing_callback_is_contained(self):
        def broken(event):
            raise RuntimeError("callback bug")

        self.events.add_callback(broken)
        event = self.events.log_login("a", False)
        assert self.events.get_all_events() == [event]


class TestDelivery:

    @pytest.mark.asyncio
    async def test_flush_delivers_pending(self):
        sink = RecordingSink()
        events = SecurityEventLogger(sink=sink, batch_size=100)
        events.log_login("a", False)
        events.log_login("b", True)

        assert await events.flush()
        assert [e.subject for e in sink.batches[0]] == ["a", "b"]
        assert events.pending == []

    @pytest.mark.asyncio
    async def test_flush_with_nothing_pending(self):
        sink = RecordingSink()
        assert await SecurityEventLogger(sink=sink).flush()
        assert sink.batches == []

    @pytest.mark.asyncio
    async def test_sink_failure_requeues(self):
        sink = RecordingSink(fail=True)
        events = SecurityEventLogger(sink=sink, batch_size=100)
        events.log_login("a", False)

        assert not await events.flush()
        assert [e.subject for e in events.pending] == ["a"]

        events.log_login("b", False)
        sink.fail = False
        assert await events.flush()
        assert [e.subject for e in sink.batches[0]] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_batch_size_triggers_background_flush(self):
        sink = RecordingSink()
        events = SecurityEventLogger(sink=sink, batch_size=3)

        events.log_login("a", False)
        events.log_login("b", False)
        await drain()
        assert sink.batches == []

        events.log_login("c", False)
        await drain()
        assert len(sink.batches) == 1
        assert events.pending == []

    @pytest.mark.asyncio
    async def test_background_failure_never_reaches_caller(self, caplog):
        events = SecurityEventLogger(sink=RecordingSink(fail=True), batch_size=1)
        with caplog.at_level(logging.ERROR):
            events.log_login("a", False)
            await drain()
        assert len(events.pending) == 1
        assert "Failed to deliver" in caplog.text

    @pytest.mark.asyncio
    async def test_concurrent_flush(self):
        gate = asyncio.Event()

        class SlowSink(RecordingSink):
            async def log_security_events(self, batch):
                await gate.wait()
                await super().log_security_events(batch)

        sink = SlowSink()
        events = SecurityEventLogger(sink=sink, batch_size=100)
        events.log_login("a", False)

        first = asyncio.ensure_future(events.flush())
        await asyncio.sleep(0)
        events.log_login("b", False)
        assert not await events.flush()
        gate.set()
        assert await first
        assert [e.subject for e in sink.batches[0]] == ["a"]
        assert [e.subject for e in events.pending] == ["b"]

    def test_record_without_loop_keeps_events(self):
        events = SecurityEventLogger(sink=RecordingSink(), batch_size=1)
        events.log_login("a", False)
        assert len(events.pending) == 1

    @pytest.mark.asyncio
    async def test_anomalies_logged_after_delivery(self, caplog):
        events = SecurityEventLogger(sink=RecordingSink(), batch_size=100)
        for _ in range(5):
            events.log_login("alice", False)

        with caplog.at_level(logging.WARNING):
            await events.flush()
        assert "5 failed logins in one batch" in caplog.text


class TestDetectAnomalies:

    def test_quiet_batch(self):
        assert detect_anomalies([make_event()] * 4) == []

    def test_failed_login_burst(self):
        assert detect_anomalies([make_event()] * 5) == ["5 failed logins in one batch"]

    def test_admin_access_from_many_addresses(self):
        batch = [
            make_event(SecurityEventType.ADMIN_ACCESS, Severity.LOW, ip_hash=f"h{i}")
            for i in range(4)
        ]
        assert detect_anomalies(batch) == ["admin access from 4 distinct addresses"]

    def test_three_admin_addresses_is_normal(self):
        batch = [
            make_event(SecurityEventType.ADMIN_ACCESS, Severity.LOW, ip_hash=f"h{i}")
            for i in range(3)
        ]
        assert detect_anomalies(batch) == []

    def test_high_severity(self):
        batch = [make_event(SecurityEventType.UNAUTHORIZED_ACCESS, Severity.HIGH)]
        assert detect_anomalies(batch) == ["1 high-priority events"]
