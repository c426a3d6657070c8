"""
Authoritative role checks for privileged actions.

Unlike SessionController's cached flags, every check here re-reads the
session and the principal's role from the backing store. Gate every
privileged mutation on validate_access().
"""

import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, Optional, Protocol, Union

from ..exceptions import AccessDeniedError, BackendError
from ..integration.event_logger import SecurityEventLogger
from .models import ANY_ADMIN, SUPER_ADMIN_ONLY, Role, Session, normalize_role


logger = logging.getLogger(__name__)


class RoleStore(Protocol):
    """Source of truth for sessions and roles."""

    async def get_session(self) -> Optional[Session]: ...

    async def fetch_role(self, principal_id: str) -> Optional[str]: ...


class AccessDenialReason(str, Enum):
    NO_SESSION = "no_session"
    SESSION_LOOKUP_FAILED = "session_lookup_failed"
    PROFILE_LOOKUP_FAILED = "profile_lookup_failed"
    INSUFFICIENT_PRIVILEGE = "insufficient_privilege"

    @property
    def message(self) -> str:
        return _DENIAL_MESSAGES[self]


_DENIAL_MESSAGES = {
    AccessDenialReason.NO_SESSION: "No authenticated user",
    AccessDenialReason.SESSION_LOOKUP_FAILED: "Session validation failed",
    AccessDenialReason.PROFILE_LOOKUP_FAILED: "Failed to fetch user profile",
    AccessDenialReason.INSUFFICIENT_PRIVILEGE: "Insufficient privileges",
}


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of an access check."""
    granted: bool
    role: Optional[Role] = None
    reason: Optional[AccessDenialReason] = None
    principal_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        """False for 'log in first', True for 'logged in but not allowed'."""
        return self.granted or self.reason is AccessDenialReason.INSUFFICIENT_PRIVILEGE

    @property
    def message(self) -> str:
        return self.reason.message if self.reason else "Access granted"


def _role_set(roles: Union[str, Iterable[Role]]) -> FrozenSet[Role]:
    # a single Role is also a str; never iterate its characters
    if isinstance(roles, str):
        roles = (roles,)
    return frozenset(normalize_role(r) for r in roles)


class AdminAccessGuard:
    """
    Role gate backed by the authoritative store.

    Example:
        >>> guard = AdminAccessGuard(store)
        >>> decision = await guard.validate_super_admin()
        >>> decision.granted, decision.reason
        (False, <AccessDenialReason.INSUFFICIENT_PRIVILEGE: 'insufficient_privilege'>)
    """

    def __init__(self, store: RoleStore, events: Optional[SecurityEventLogger] = None):
        """
        Args:
            store: Session and role lookups
            events: Optional audit logger for grants and denials
        """
        self._store = store
        self._events = events

    async def validate_access(self, required_roles: Union[Role, Iterable[Role]]) -> AccessDecision:
        """
        Check the current principal against a set of roles.

        Args:
            required_roles: A role, or roles of which any grants access

        Returns:
            AccessDecision; failures are never raised
        """
        required = _role_set(required_roles)

        try:
            session = await self._store.get_session()
        except Exception as exc:
            logger.error("Session lookup failed during access check: %s", exc)
            return self._deny(AccessDenialReason.SESSION_LOOKUP_FAILED)

        if session is None or session.is_expired():
            return self._deny(AccessDenialReason.NO_SESSION)

        try:
            raw_role = await self._store.fetch_role(session.principal_id)
        except BackendError as exc:
            log = logger.warning if exc.is_suppressed else logger.error
            log("Role lookup failed during access check: %s", exc.message)
            return self._deny(AccessDenialReason.PROFILE_LOOKUP_FAILED, principal_id=session.principal_id)
        except Exception as exc:
            logger.error("Role lookup failed during access check: %s", exc)
            return self._deny(AccessDenialReason.PROFILE_LOOKUP_FAILED, principal_id=session.principal_id)

        role = normalize_role(raw_role)
        if role not in required:
            return self._deny(AccessDenialReason.INSUFFICIENT_PRIVILEGE,
                              role=role, principal_id=session.principal_id)

        decision = AccessDecision(granted=True, role=role, principal_id=session.principal_id)
        if self._events is not None:
            self._events.log_access(session.principal_id, True, role=role.value)
        return decision

    async def validate_any_admin(self) -> AccessDecision:
        return await self.validate_access(ANY_ADMIN)

    async def validate_super_admin(self) -> AccessDecision:
        return await self.validate_access(SUPER_ADMIN_ONLY)

    def _deny(self, reason: AccessDenialReason, role: Optional[Role] = None,
              principal_id: Optional[str] = None) -> AccessDecision:
        logger.info("Access denied: %s", reason.value)
        if self._events is not None:
            self._events.log_access(
                principal_id or "anonymous", False,
                role=role.value if role else None,
                reason=reason.value,
            )
        return AccessDecision(granted=False, role=role, reason=reason, principal_id=principal_id)


def require_roles(guard: AdminAccessGuard, roles: Union[Role, Iterable[Role]]):
    """
    Decorator gating an async handler on an authoritative role check.

    Raises:
        AccessDeniedError: Before the handler runs, if access is denied
    """
    roles = _role_set(roles)

    def decorator(handler: Callable[..., Awaitable[Any]]):
        @functools.wraps(handler)
        async def wrapper(*args, **kwargs):
            decision = await guard.validate_access(roles)
            if not decision.granted:
                raise AccessDeniedError(decision)
            return await handler(*args, **kwargs)
        return wrapper

    return decorator
