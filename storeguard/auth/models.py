"""
Identity data model shared by the authentication components.

- Role: the single canonical role enumeration
- Principal: the authenticated user as seen by the core
- Session: externally issued, time-bounded credential
- AttemptWindow: per-identifier rate-limit state
- BlockWindow: rate-limit state with a progressive lockout
- TwoFactorSecret: per-principal TOTP secret record
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class Role(str, Enum):
    """User roles, least privileged first."""

    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


# Legacy spellings seen in stored profiles
_ROLE_ALIASES = {
    "superadmin": Role.SUPER_ADMIN,
}


def normalize_role(value: Any) -> Role:
    """
    Map any stored role value onto a Role.

    Unknown, missing or malformed values become Role.USER.

    Args:
        value: Role as found in a profile row, claim or enum

    Returns:
        Canonical Role
    """
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return Role.USER

    key = value.strip().lower()
    if key in _ROLE_ALIASES:
        return _ROLE_ALIASES[key]
    try:
        return Role(key)
    except ValueError:
        return Role.USER


ANY_ADMIN: FrozenSet[Role] = frozenset({Role.ADMIN, Role.SUPER_ADMIN})
SUPER_ADMIN_ONLY: FrozenSet[Role] = frozenset({Role.SUPER_ADMIN})


@dataclass(frozen=True)
class Principal:
    """Authenticated user identity."""
    id: str
    email: str
    display_name: Optional[str] = None
    role: Role = Role.USER
    avatar_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        # frozen: bypass __setattr__ to store the normalized role
        object.__setattr__(self, "role", normalize_role(self.role))

    @property
    def is_admin(self) -> bool:
        return self.role in ANY_ADMIN

    @property
    def is_super_admin(self) -> bool:
        return self.role is Role.SUPER_ADMIN

    @classmethod
    def from_profile(cls, profile: Dict[str, Any]) -> "Principal":
        """
        Build a Principal from a profile row.

        Args:
            profile: Mapping with at least 'id'; 'email', 'full_name' or
                'username', 'role', 'avatar_url', 'created_at' and
                'updated_at' are optional

        Returns:
            Principal with a normalized role
        """
        return cls(
            id=str(profile["id"]),
            email=profile.get("email") or "",
            display_name=profile.get("full_name") or profile.get("username"),
            role=normalize_role(profile.get("role")),
            avatar_url=profile.get("avatar_url"),
            created_at=profile.get("created_at"),
            updated_at=profile.get("updated_at"),
        )


@dataclass(frozen=True)
class Session:
    """Externally managed session bound to a principal."""
    principal_id: str
    issued_at: float
    expires_at: Optional[float] = None
    refreshable: bool = True

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if the session has passed its expiry marker."""
        if self.expires_at is None:
            return False
        if now is None:
            now = time.time()
        return now > self.expires_at


@dataclass
class AttemptWindow:
    """Rate-limit state for one identifier."""
    count: int
    last_attempt: float


@dataclass
class BlockWindow(AttemptWindow):
    """
    AttemptWindow with a lockout.

    `multiplier` scales the next block and doubles after each one.
    """
    block_until: Optional[float] = None
    multiplier: int = 1


@dataclass
class TwoFactorSecret:
    """
    TOTP secret record for a principal.

    The provisioning URI is derived from the secret when needed and is
    never stored.
    """
    principal_id: str
    secret: str
    enabled: bool = False
