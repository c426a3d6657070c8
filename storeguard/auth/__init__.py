# Authentication Module
"""
Authentication and access-control core:
- Sliding-window rate limiting - rate_limit.py
- Input validators (email, password, card, phone) - validators.py
- TOTP (2FA, RFC 6238) - totp.py, two_factor.py
- Session lifecycle state machine - session.py
- Authoritative role checks - access.py
- Login / password reset / checkout gating - login.py
"""

from .models import (
    Role,
    Principal,
    Session,
    TwoFactorSecret,
    normalize_role,
    ANY_ADMIN,
    SUPER_ADMIN_ONLY,
)

from .rate_limit import (
    RateLimiter,
    AdvancedRateLimiter,
    create_auth_rate_limiter,
    create_checkout_rate_limiter,
    create_lockout_auth_rate_limiter,
    create_admin_rate_limiter,
)

from .validators import (
    validate_email,
    validate_password,
    sanitize_text,
    validate_credit_card,
    validate_phone,
)

from .totp import (
    TOTPEngine,
    hotp,
    totp,
    verify_totp,
    generate_secret,
    secret_to_base32,
    base32_to_secret,
)

from .two_factor import (
    SecretCipher,
    InMemoryTwoFactorStore,
    LocalTwoFactorBackend,
    EnrollmentState,
    TwoFactorEnrollment,
    verify_login_code,
    disable_two_factor,
)

from .session import (
    SessionController,
    SessionChange,
    SessionEvent,
    SessionSnapshot,
    SessionState,
    SessionSubscription,
    is_session_expired,
    should_show_warning,
)

from .access import (
    AdminAccessGuard,
    AccessDecision,
    AccessDenialReason,
    require_roles,
)

from .login import (
    LoginManager,
    CheckoutGate,
)

__all__ = [
    # Models
    'Role',
    'Principal',
    'Session',
    'TwoFactorSecret',
    'normalize_role',
    'ANY_ADMIN',
    'SUPER_ADMIN_ONLY',
    # Rate limiting
    'RateLimiter',
    'AdvancedRateLimiter',
    'create_auth_rate_limiter',
    'create_checkout_rate_limiter',
    'create_lockout_auth_rate_limiter',
    'create_admin_rate_limiter',
    # Validators
    'validate_email',
    'validate_password',
    'sanitize_text',
    'validate_credit_card',
    'validate_phone',
    # TOTP
    'TOTPEngine',
    'hotp',
    'totp',
    'verify_totp',
    'generate_secret',
    'secret_to_base32',
    'base32_to_secret',
    'SecretCipher',
    'InMemoryTwoFactorStore',
    'LocalTwoFactorBackend',
    'EnrollmentState',
    'TwoFactorEnrollment',
    'verify_login_code',
    'disable_two_factor',
    # Sessions
    'SessionController',
    'SessionChange',
    'SessionEvent',
    'SessionSnapshot',
    'SessionState',
    'SessionSubscription',
    'is_session_expired',
    'should_show_warning',
    # Access
    'AdminAccessGuard',
    'AccessDecision',
    'AccessDenialReason',
    'require_roles',
    # Login
    'LoginManager',
    'CheckoutGate',
]
