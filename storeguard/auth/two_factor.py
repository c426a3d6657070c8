"""
Two-factor enrollment and verification.

- SecretCipher: AES-256-GCM encryption of TOTP secrets at rest
- InMemoryTwoFactorStore: confirmed-secret store (encrypted records)
- TwoFactorBackend: generate/verify contract, local or remote
- LocalTwoFactorBackend: backend running TOTPEngine in-process
- TwoFactorEnrollment: Setup -> Verify -> Enabled state machine
- verify_login_code: stateless login-time check

Wrong and expired codes produce the same message, so callers never learn
which one it was.
"""

import base64
import logging
import os
from enum import Enum
from typing import Dict, Optional, Protocol, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import BackendError
from ..integration.event_logger import SecurityEventLogger, SecurityEventType, Severity
from .models import TwoFactorSecret
from .totp import TOTPEngine


logger = logging.getLogger(__name__)

AES_KEY_SIZE = 32   # 256 bits
NONCE_SIZE = 12     # 96 bits, recommended for GCM

INVALID_CODE_MESSAGE = "Invalid verification code. Please try again."
GENERATE_FAILED_MESSAGE = "Failed to generate 2FA secret"
VERIFY_FAILED_MESSAGE = "Failed to verify 2FA code"


class SecretCipher:
    """
    AES-256-GCM encryption for secrets stored at rest.

    The principal id is bound as associated data, so a ciphertext copied
    onto another principal's record fails to decrypt.
    """

    def __init__(self, key: bytes):
        """
        Args:
            key: 256-bit (32-byte) key
        """
        if len(key) != AES_KEY_SIZE:
            raise ValueError(f"Key must be {AES_KEY_SIZE} bytes")
        self._aesgcm = AESGCM(key)

    @staticmethod
    def generate_key() -> bytes:
        return AESGCM.generate_key(bit_length=256)

    def encrypt(self, plaintext: str, associated_data: str) -> str:
        """
        Encrypt a secret.

        Returns:
            URL-safe base64 of nonce || ciphertext || tag
        """
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode('utf-8'),
                                      associated_data.encode('utf-8'))
        return base64.urlsafe_b64encode(nonce + sealed).decode('ascii')

    def decrypt(self, token: str, associated_data: str) -> str:
        """
        Decrypt a secret produced by encrypt().

        Raises:
            InvalidTag: If the token was tampered with or bound to other data
        """
        raw = base64.urlsafe_b64decode(token.encode('ascii'))
        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        plaintext = self._aesgcm.decrypt(nonce, sealed, associated_data.encode('utf-8'))
        return plaintext.decode('utf-8')


class TwoFactorStore(Protocol):
    """Persistence for confirmed TOTP secrets."""

    async def save(self, record: TwoFactorSecret) -> None: ...

    async def get(self, principal_id: str) -> Optional[TwoFactorSecret]: ...

    async def revoke(self, principal_id: str) -> bool: ...


class InMemoryTwoFactorStore:
    """
    Process-local TwoFactorStore keeping only encrypted secrets.

    Example:
        >>> store = InMemoryTwoFactorStore(SecretCipher(SecretCipher.generate_key()))
    """

    def __init__(self, cipher: SecretCipher):
        self._cipher = cipher
        self._records: Dict[str, Tuple[str, bool]] = {}

    async def save(self, record: TwoFactorSecret) -> None:
        token = self._cipher.encrypt(record.secret, record.principal_id)
        self._records[record.principal_id] = (token, record.enabled)

    async def get(self, principal_id: str) -> Optional[TwoFactorSecret]:
        entry = self._records.get(principal_id)
        if entry is None:
            return None
        token, enabled = entry
        try:
            secret = self._cipher.decrypt(token, principal_id)
        except InvalidTag as exc:
            raise BackendError("Stored 2FA secret failed integrity check") from exc
        return TwoFactorSecret(principal_id=principal_id, secret=secret, enabled=enabled)

    async def revoke(self, principal_id: str) -> bool:
        """Remove 2FA for a principal (self-service or admin action)."""
        return self._records.pop(principal_id, None) is not None

    def raw_record(self, principal_id: str) -> Optional[Tuple[str, bool]]:
        """Encrypted record as stored, for inspection."""
        return self._records.get(principal_id)


class TwoFactorBackend(Protocol):
    """Secret generation and code verification, local or remote."""

    async def generate_secret(self, principal_id: str) -> Tuple[str, str]: ...

    async def verify(self, principal_id: str, secret: str, code: str) -> bool: ...

    async def confirm(self, principal_id: str, secret: str) -> None: ...


class LocalTwoFactorBackend:
    """
    TwoFactorBackend that runs TOTPEngine in-process.

    verify() only checks a code. confirm() persists the secret as enabled
    and is called once, when an enrollment succeeds.
    """

    def __init__(self, engine: TOTPEngine, store: TwoFactorStore):
        self._engine = engine
        self._store = store

    @property
    def engine(self) -> TOTPEngine:
        return self._engine

    async def generate_secret(self, principal_id: str) -> Tuple[str, str]:
        if not principal_id:
            raise BackendError("User ID required")
        return self._engine.generate_secret(principal_id)

    async def verify(self, principal_id: str, secret: str, code: str) -> bool:
        if not principal_id or not secret or not code:
            raise BackendError("Missing required fields")

        return self._engine.verify(secret, code)

    async def confirm(self, principal_id: str, secret: str) -> None:
        if not principal_id or not secret:
            raise BackendError("Missing required fields")
        await self._store.save(TwoFactorSecret(principal_id, secret, enabled=True))


class EnrollmentState(str, Enum):
    SETUP = "setup"
    VERIFY = "verify"
    ENABLED = "enabled"


class TwoFactorEnrollment:
    """
    Enrollment flow for one principal: Setup -> Verify -> Enabled.

    Each submit() is one verification attempt; wrap calls in a
    RateLimiter to bound guessing.

    Example:
        >>> enrollment = TwoFactorEnrollment(backend, "user-1")
        >>> await enrollment.start()
        >>> enrollment.confirm_added()
        >>> await enrollment.submit("123456")
    """

    def __init__(self, backend: TwoFactorBackend, principal_id: str,
                 events: Optional[SecurityEventLogger] = None):
        self._backend = backend
        self._events = events
        self._principal_id = principal_id
        self._state = EnrollmentState.SETUP
        self._secret: Optional[str] = None
        self._provisioning_uri: Optional[str] = None
        self._error: Optional[str] = None
        self._loading = False
        self._generation = 0

    @property
    def state(self) -> EnrollmentState:
        return self._state

    @property
    def secret(self) -> Optional[str]:
        return self._secret

    @property
    def provisioning_uri(self) -> Optional[str]:
        return self._provisioning_uri

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def loading(self) -> bool:
        return self._loading

    async def start(self) -> bool:
        """
        Generate the secret and provisioning URI.

        Returns:
            True if a secret is ready to be shown
        """
        if self._state is not EnrollmentState.SETUP:
            return self._secret is not None

        generation = self._generation
        self._error = None
        try:
            secret, uri = await self._backend.generate_secret(self._principal_id)
        except BackendError as exc:
            logger.error("2FA secret generation failed: %s", exc.message)
            if generation == self._generation:
                self._error = GENERATE_FAILED_MESSAGE
            return False

        if generation != self._generation:
            return False
        self._secret, self._provisioning_uri = secret, uri
        return True

    def confirm_added(self) -> bool:
        """
        Operator confirms the account was added to the authenticator.

        Returns:
            True if the flow moved to VERIFY
        """
        if self._state is EnrollmentState.SETUP and self._secret is not None:
            self._state = EnrollmentState.VERIFY
            return True
        return False

    async def submit(self, code: str) -> bool:
        """
        Verify one code and enable 2FA on success.

        Returns:
            True if 2FA is now enabled
        """
        if self._state is not EnrollmentState.VERIFY:
            return self._state is EnrollmentState.ENABLED

        generation = self._generation
        secret = self._secret
        self._loading = True
        self._error = None
        try:
            verified = await self._backend.verify(self._principal_id, secret, code)
            if verified and generation == self._generation:
                await self._backend.confirm(self._principal_id, secret)
        except BackendError as exc:
            logger.error("2FA verification call failed: %s", exc.message)
            verified = None
        finally:
            if generation == self._generation:
                self._loading = False

        if generation != self._generation:
            return False
        if verified is None:
            self._error = VERIFY_FAILED_MESSAGE
            return False
        if not verified:
            self._error = INVALID_CODE_MESSAGE
            if self._events is not None:
                self._events.log_totp(self._principal_id, False)
            return False

        self._state = EnrollmentState.ENABLED
        if self._events is not None:
            self._events.log_totp(self._principal_id, True)
        logger.info("2FA enabled", extra={"principal_id": self._principal_id})
        return True

    def cancel(self) -> None:
        """Abandon enrollment; in-flight results are discarded."""
        self._generation += 1
        self._state = EnrollmentState.SETUP
        self._secret = None
        self._provisioning_uri = None
        self._error = None
        self._loading = False


async def verify_login_code(backend: TwoFactorBackend, principal_id: str,
                            secret: str, code: str) -> bool:
    """
    Login-time 2FA check against an already enabled secret.

    Stateless; a backend failure counts as a failed verification.
    """
    try:
        return await backend.verify(principal_id, secret, code)
    except BackendError as exc:
        logger.error("2FA login verification failed: %s", exc.message)
        return False


async def disable_two_factor(store: TwoFactorStore, principal_id: str,
                             events: Optional[SecurityEventLogger] = None) -> bool:
    """
    Revoke a principal's 2FA secret (self-service or admin action).

    Admin callers must pass an AdminAccessGuard check first.

    Returns:
        True if a secret was removed
    """
    removed = await store.revoke(principal_id)
    if removed and events is not None:
        events.emit(SecurityEventType.TWO_FA_DISABLED, Severity.MEDIUM, principal_id)
    return removed
