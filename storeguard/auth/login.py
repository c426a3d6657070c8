"""
Login Module

Ties the core together for credential-sensitive flows:
- Rate limiting by client IP (or email) before anything else
- Input shape checks before calling the credential store
- Second factor for principals with 2FA enabled
- Audit events for failures, lockouts and successes

Security considerations:
- Unknown email and wrong password produce the same message
- Wrong and expired 2FA codes produce the same message
- Never log passwords or codes
"""

import logging
from typing import Dict, Optional, Protocol

from ..exceptions import BackendError, InvalidCredentialsError
from ..integration.event_logger import SecurityEventLogger
from .models import Principal
from .rate_limit import AdvancedRateLimiter, RateLimiter
from .two_factor import TwoFactorBackend, TwoFactorStore, verify_login_code
from .validators import validate_email


logger = logging.getLogger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
INVALID_TOTP_MESSAGE = "Invalid code, try again"


class CredentialStore(Protocol):
    """External credential store (password checks happen there)."""

    async def sign_in(self, email: str, password: str) -> Principal: ...

    async def send_password_reset(self, email: str) -> None: ...


def _locked_result(limiter: RateLimiter, identifier: str) -> Dict:
    remaining = limiter.get_remaining_time(identifier)
    return {
        'success': False,
        'message': f'Too many attempts. Try again in {int(remaining) + 1} seconds.',
        'locked': True,
        'retry_after': remaining,
    }


class LoginManager:
    """
    Complete login handling with rate limiting and 2FA.

    Example:
        >>> manager = LoginManager(credentials, backend, store, limiter)
        >>> result = await manager.login("alice@example.com", "S3cure!pass")
        >>> if result.get('requires_totp'):
        ...     result = await manager.login("alice@example.com", "S3cure!pass", totp_code="123456")
    """

    def __init__(self, credentials: CredentialStore,
                 two_factor: TwoFactorBackend,
                 two_factor_store: TwoFactorStore,
                 rate_limiter: RateLimiter,
                 events: Optional[SecurityEventLogger] = None):
        """
        Initialize login manager.

        Args:
            credentials: Password verification backend
            two_factor: TOTP verification backend
            two_factor_store: Confirmed 2FA secrets
            rate_limiter: The authentication limiter (an AdvancedRateLimiter
                also consults its IP blocklist)
            events: Optional audit logger
        """
        self._credentials = credentials
        self._two_factor = two_factor
        self._two_factor_store = two_factor_store
        self._rate_limiter = rate_limiter
        self._events = events or SecurityEventLogger.from_settings()

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def events(self) -> SecurityEventLogger:
        return self._events

    def _allow(self, identifier: str, client_ip: Optional[str]) -> bool:
        if isinstance(self._rate_limiter, AdvancedRateLimiter):
            return self._rate_limiter.is_allowed(identifier, ip=client_ip)
        return self._rate_limiter.is_allowed(identifier)

    async def login(self, email: str, password: str,
                    totp_code: Optional[str] = None,
                    client_ip: Optional[str] = None) -> Dict:
        """
        Authenticate a principal.

        Args:
            email: Account email
            password: Password, checked by the credential store
            totp_code: Code from the authenticator, when 2FA is enabled
            client_ip: Optional client IP for rate limiting

        Returns:
            Dict with 'success', 'message' and, depending on the outcome,
            'principal', 'requires_totp', 'locked', 'retry_after'
        """
        identifier = client_ip or email.strip().lower()

        if not self._allow(identifier, client_ip):
            result = _locked_result(self._rate_limiter, identifier)
            self._events.log_rate_limited(email, 'login', result['retry_after'])
            return result

        if not validate_email(email):
            return {'success': False, 'message': 'Please enter a valid email address'}

        try:
            principal = await self._credentials.sign_in(email, password)
        except InvalidCredentialsError:
            self._events.log_login(email, False, ip_address=client_ip)
            return {'success': False, 'message': INVALID_CREDENTIALS_MESSAGE}
        except BackendError as exc:
            logger.error("Credential store unavailable: %s", exc.message)
            return {'success': False, 'message': 'Sign in is temporarily unavailable'}

        try:
            record = await self._two_factor_store.get(principal.id)
        except BackendError as exc:
            logger.error("2FA lookup failed: %s", exc.message)
            return {'success': False, 'message': 'Sign in is temporarily unavailable'}

        if record is not None and record.enabled:
            if not totp_code:
                return {
                    'success': False,
                    'message': 'Two-factor code required',
                    'requires_totp': True,
                }
            if not await verify_login_code(self._two_factor, principal.id, record.secret, totp_code):
                self._events.log_totp(principal.id, False)
                return {'success': False, 'message': INVALID_TOTP_MESSAGE, 'requires_totp': True}

        self._rate_limiter.reset(identifier)
        self._events.log_login(principal.id, True, ip_address=client_ip)
        logger.info("Login succeeded", extra={"principal_id": principal.id})
        return {'success': True, 'message': 'Login successful', 'principal': principal}

    async def request_password_reset(self, email: str,
                                     client_ip: Optional[str] = None) -> Dict:
        """
        Send a password-reset email, rate limited like logins.

        The response does not reveal whether the account exists.
        """
        identifier = f"reset:{client_ip or email.strip().lower()}"

        if not self._allow(identifier, client_ip):
            result = _locked_result(self._rate_limiter, identifier)
            self._events.log_rate_limited(email, 'password_reset', result['retry_after'])
            return result

        if not validate_email(email):
            return {'success': False, 'message': 'Please enter a valid email address'}

        try:
            await self._credentials.send_password_reset(email)
        except BackendError as exc:
            logger.error("Password reset request failed: %s", exc.message)
            return {'success': False, 'message': 'Could not send reset email, try again later'}

        return {
            'success': True,
            'message': 'If an account exists, a reset link has been sent',
        }


class CheckoutGate:
    """Applies the checkout limiter before a payment session is created."""

    def __init__(self, rate_limiter: RateLimiter,
                 events: Optional[SecurityEventLogger] = None):
        self._rate_limiter = rate_limiter
        self._events = events

    def check(self, identifier: str) -> Dict:
        """
        Returns:
            Dict with 'success' and, when limited, 'locked'/'retry_after'
        """
        if self._rate_limiter.is_allowed(identifier):
            return {'success': True, 'message': 'Checkout allowed'}

        result = _locked_result(self._rate_limiter, identifier)
        if self._events is not None:
            self._events.log_rate_limited(identifier, 'checkout', result['retry_after'])
        return result
