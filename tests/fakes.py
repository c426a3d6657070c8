"""
In-memory stand-ins for the external collaborators.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

from storeguard.auth.models import Principal, Session
from storeguard.auth.session import SessionChange, SessionSubscription
from storeguard.exceptions import InvalidCredentialsError


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def drain(rounds: int = 20) -> None:
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_session(principal_id: str = "user-1") -> Session:
    return Session(principal_id=principal_id, issued_at=0.0)


class FakeIdentityProvider:
    """Session backend with controllable failures and a gate on profile fetches."""

    def __init__(self, session: Optional[Session] = None,
                 profiles: Optional[Dict[str, Principal]] = None,
                 session_error: Optional[Exception] = None,
                 profile_error: Optional[Exception] = None):
        self.session = session
        self.profiles = profiles or {}
        self.session_error = session_error
        self.profile_error = profile_error
        self.profile_gate: Optional[asyncio.Event] = None
        self.subscriptions: List[SessionSubscription] = []
        self.get_session_calls = 0
        self.fetch_profile_calls = 0

    async def get_session(self) -> Optional[Session]:
        self.get_session_calls += 1
        await asyncio.sleep(0)
        if self.session_error is not None:
            raise self.session_error
        return self.session

    async def fetch_profile(self, principal_id: str) -> Principal:
        self.fetch_profile_calls += 1
        if self.profile_gate is not None:
            await self.profile_gate.wait()
        if self.profile_error is not None:
            raise self.profile_error
        return self.profiles[principal_id]

    def subscribe_session_changes(self) -> SessionSubscription:
        subscription = SessionSubscription()
        self.subscriptions.append(subscription)
        return subscription

    def emit(self, event: str, session: Optional[Session] = None) -> None:
        for subscription in self.subscriptions:
            subscription.publish(SessionChange(event, session))


class FakeRoleStore:
    """Authoritative session/role lookups."""

    def __init__(self, session: Optional[Session] = None,
                 roles: Optional[Dict[str, Optional[str]]] = None,
                 session_error: Optional[Exception] = None,
                 role_error: Optional[Exception] = None):
        self.session = session
        self.roles = roles or {}
        self.session_error = session_error
        self.role_error = role_error
        self.fetch_role_calls = 0

    async def get_session(self) -> Optional[Session]:
        if self.session_error is not None:
            raise self.session_error
        return self.session

    async def fetch_role(self, principal_id: str) -> Optional[str]:
        self.fetch_role_calls += 1
        if self.role_error is not None:
            raise self.role_error
        return self.roles.get(principal_id)


class FakeCredentialStore:
    """Credential store keyed by email."""

    def __init__(self, users: Optional[Dict[str, Tuple[str, Principal]]] = None):
        self.users = users or {}
        self.reset_requests: List[str] = []

    async def sign_in(self, email: str, password: str) -> Principal:
        entry = self.users.get(email)
        if entry is None or entry[0] != password:
            raise InvalidCredentialsError(email)
        return entry[1]

    async def send_password_reset(self, email: str) -> None:
        self.reset_requests.append(email)


class RecordingSink:
    """Audit sink that keeps delivered batches, optionally failing."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.batches: List[list] = []

    async def log_security_events(self, events) -> None:
        if self.fail:
            raise ConnectionError("audit store unavailable")
        self.batches.append(list(events))
