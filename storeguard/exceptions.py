"""
Exceptions raised across the StoreGuard core.

Input problems, rate-limit denials and wrong 2FA codes are reported as
result values, not exceptions. These types cover the external boundary
(backend failures) and privileged handlers that must not run.
"""

from typing import Optional, FrozenSet


# Postgres "infinite recursion detected in policy" raised by row-level
# security on the profiles table. Callers still fall back to the safe
# state, the error is just not shown to the user.
RECURSIVE_POLICY_ERROR = "42P17"

SUPPRESSED_BACKEND_ERRORS: FrozenSet[str] = frozenset({RECURSIVE_POLICY_ERROR})


class StoreGuardError(Exception):
    """Base class for all StoreGuard errors."""


class BackendError(StoreGuardError):
    """
    Failure reported by an external collaborator (session lookup,
    profile fetch, 2FA backend, audit sink).
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    @property
    def is_suppressed(self) -> bool:
        """True if this error belongs to the known, non-user-facing class."""
        return self.code in SUPPRESSED_BACKEND_ERRORS

    def __repr__(self) -> str:
        return f"BackendError({self.message!r}, code={self.code!r})"


class InvalidCredentialsError(StoreGuardError):
    """The credential store rejected an email/password pair."""


class AccessDeniedError(StoreGuardError):
    """A role-gated handler was invoked without sufficient privilege."""

    def __init__(self, decision):
        super().__init__(decision.message)
        self.decision = decision
