"""
TOTP (Time-based One-Time Password) Implementation

Implements RFC 6238 TOTP for two-factor authentication.

Features:
- HOTP/TOTP code generation (HMAC-SHA1 by default, RFC 4226 truncation)
- Verification with +/- one time step of clock drift
- 32-character base32 secrets for manual entry
- otpauth:// provisioning URIs and QR rendering for authenticator apps

Used with:
- Google Authenticator
- Authy
- Microsoft Authenticator
- Any RFC 6238 compliant authenticator
"""

import base64
import binascii
import hashlib
import hmac
import io
import secrets
import struct
import time
from typing import Optional, Tuple
from urllib.parse import quote

import qrcode
from qrcode.constants import ERROR_CORRECT_L

from ..config import SecuritySettings


# TOTP configuration (RFC 6238 defaults)
TOTP_DIGITS = 6           # Number of digits in OTP
TOTP_TIME_STEP = 30       # Time step in seconds
TOTP_SECRET_BYTES = 20    # 160 bits, encodes to exactly 32 base32 chars
TOTP_ALGORITHM = 'SHA1'   # Hash algorithm
TOTP_DRIFT_TOLERANCE = 1  # Accept codes from +/- this many time steps

_HASHES = {
    'SHA1': hashlib.sha1,
    'SHA256': hashlib.sha256,
    'SHA512': hashlib.sha512,
}


def generate_secret(length: int = TOTP_SECRET_BYTES) -> bytes:
    """
    Generate a cryptographically secure random secret.

    Args:
        length: Secret length in bytes (default 20 for SHA-1)

    Returns:
        Random bytes for use as TOTP secret
    """
    return secrets.token_bytes(length)


def secret_to_base32(secret: bytes) -> str:
    """Encode secret as unpadded base32 (what authenticator apps expect)."""
    return base64.b32encode(secret).decode('ascii').rstrip('=')


def base32_to_secret(encoded: str) -> bytes:
    """
    Decode a base32 secret string to bytes.

    Spaces are ignored and missing padding is restored.

    Raises:
        binascii.Error: If the string is not valid base32
    """
    encoded = encoded.replace(' ', '').upper()
    padding = -len(encoded) % 8
    return base64.b32decode(encoded + '=' * padding)


def get_time_counter(timestamp: float = None, time_step: int = TOTP_TIME_STEP) -> int:
    """
    Get the time counter value for TOTP.

    Args:
        timestamp: Unix timestamp (uses current time if None)
        time_step: Time step in seconds

    Returns:
        Time counter (T = floor(time / time_step))
    """
    if timestamp is None:
        timestamp = time.time()
    return int(timestamp // time_step)


def hotp(secret: bytes, counter: int, digits: int = TOTP_DIGITS,
         algorithm: str = TOTP_ALGORITHM) -> str:
    """
    Generate HOTP (HMAC-based OTP) value.

    Implements RFC 4226.

    Args:
        secret: Shared secret key
        counter: Counter value (8-byte integer)
        digits: Number of digits in OTP (default 6)
        algorithm: Hash algorithm (SHA1, SHA256, SHA512)

    Returns:
        OTP string with specified number of digits
    """
    counter_bytes = struct.pack('>Q', counter)
    hash_algo = _HASHES.get(algorithm.upper(), hashlib.sha1)
    digest = hmac.new(secret, counter_bytes, hash_algo).digest()

    # Dynamic truncation: offset from the low 4 bits of the last byte
    offset = digest[-1] & 0x0F
    truncated = struct.unpack('>I', digest[offset:offset + 4])[0] & 0x7FFFFFFF

    return str(truncated % (10 ** digits)).zfill(digits)


def totp(secret: bytes, timestamp: float = None,
         digits: int = TOTP_DIGITS,
         time_step: int = TOTP_TIME_STEP,
         algorithm: str = TOTP_ALGORITHM) -> str:
    """
    Generate TOTP (Time-based OTP) value.

    Implements RFC 6238.
    """
    counter = get_time_counter(timestamp, time_step)
    return hotp(secret, counter, digits, algorithm)


def verify_totp(secret: bytes, code: str,
                timestamp: float = None,
                digits: int = TOTP_DIGITS,
                time_step: int = TOTP_TIME_STEP,
                algorithm: str = TOTP_ALGORITHM,
                drift_tolerance: int = TOTP_DRIFT_TOLERANCE) -> bool:
    """
    Verify a TOTP code with drift tolerance.

    Checks the code against the current time step and +/- drift_tolerance
    steps. Every candidate step is compared, so the time taken does not
    reveal which step (if any) matched.

    Args:
        secret: Shared secret key
        code: OTP code, exactly `digits` ASCII digits with no separators
        timestamp: Unix timestamp (uses current time if None)
        digits: Expected number of digits
        time_step: Time step in seconds
        algorithm: Hash algorithm
        drift_tolerance: Number of time steps to check in each direction

    Returns:
        True if code is valid, False otherwise
    """
    if timestamp is None:
        timestamp = time.time()

    code = str(code)
    if len(code) != digits or not (code.isascii() and code.isdigit()):
        return False

    current_counter = get_time_counter(timestamp, time_step)

    matched = False
    for offset in range(-drift_tolerance, drift_tolerance + 1):
        expected = hotp(secret, current_counter + offset, digits, algorithm)
        if hmac.compare_digest(code, expected):
            matched = True
    return matched


def get_remaining_seconds(timestamp: float = None,
                          time_step: int = TOTP_TIME_STEP) -> int:
    """Get seconds remaining until the next TOTP code."""
    if timestamp is None:
        timestamp = time.time()
    return time_step - (int(timestamp) % time_step)


class TOTPEngine:
    """
    TOTP secret generation and verification for all principals.

    Secrets are handled as base32 strings, the form shown to users and
    stored (encrypted) by the secret store.

    Example:
        >>> engine = TOTPEngine(issuer="StoreGuard")
        >>> secret, uri = engine.generate_secret("alice@example.com")
        >>> engine.verify(secret, engine.generate_code(secret))
        True
    """

    def __init__(self, issuer: str = "StoreGuard",
                 digits: int = TOTP_DIGITS,
                 time_step: int = TOTP_TIME_STEP,
                 algorithm: str = TOTP_ALGORITHM,
                 drift_tolerance: int = TOTP_DRIFT_TOLERANCE):
        """
        Initialize TOTP engine.

        Args:
            issuer: Service name for authenticator apps
            digits: Number of digits in OTP
            time_step: Time step in seconds
            algorithm: Hash algorithm
            drift_tolerance: Accepted time steps on either side of now
        """
        self._issuer = issuer
        self._digits = digits
        self._time_step = time_step
        self._algorithm = algorithm.upper()
        self._drift_tolerance = drift_tolerance

    @classmethod
    def from_settings(cls, settings: SecuritySettings) -> "TOTPEngine":
        return cls(
            issuer=settings.totp_issuer,
            digits=settings.totp_digits,
            time_step=settings.totp_period,
            algorithm=settings.totp_algorithm,
            drift_tolerance=settings.totp_drift_steps,
        )

    @property
    def issuer(self) -> str:
        return self._issuer

    @property
    def digits(self) -> int:
        return self._digits

    @property
    def time_step(self) -> int:
        return self._time_step

    def generate_secret(self, principal_id: str) -> Tuple[str, str]:
        """
        Create a new secret for a principal.

        Args:
            principal_id: Account identifier shown in the authenticator

        Returns:
            Tuple of (base32_secret, provisioning_uri)
        """
        secret = secret_to_base32(generate_secret())
        return secret, self.provisioning_uri(secret, principal_id)

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        """
        Generate the otpauth:// URI for a secret.

        The URI can be rendered as a QR code and scanned by authenticator
        apps like Google Authenticator.
        """
        label = f"{self._issuer}:{account_name}"
        params = {
            'secret': secret,
            'issuer': self._issuer,
            'algorithm': self._algorithm,
            'digits': str(self._digits),
            'period': str(self._time_step),
        }
        param_str = '&'.join(f"{k}={quote(str(v))}" for k, v in params.items())
        return f"otpauth://totp/{quote(label, safe='')}?{param_str}"

    def generate_code(self, secret: str, now: Optional[float] = None) -> str:
        """Code for `secret` at time `now` (current time if None)."""
        return totp(base32_to_secret(secret), now, self._digits,
                    self._time_step, self._algorithm)

    def verify(self, secret: str, code: str, now: Optional[float] = None) -> bool:
        """
        Verify a submitted code against a base32 secret.

        Malformed codes and undecodable secrets are rejected like any
        other wrong code.
        """
        if not secret or not code:
            return False
        try:
            raw = base32_to_secret(secret)
        except (binascii.Error, ValueError):
            return False
        return verify_totp(raw, code, now, self._digits, self._time_step,
                           self._algorithm, self._drift_tolerance)

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        """Get seconds until the next code."""
        return get_remaining_seconds(now, self._time_step)

    @staticmethod
    def render_qr_code(provisioning_uri: str) -> str:
        """
        Render a provisioning URI as an ASCII QR code.

        Returns:
            Multi-line string for terminals and plain-text setup screens
        """
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(provisioning_uri)
        qr.make(fit=True)

        out = io.StringIO()
        qr.print_ascii(out=out)
        return out.getvalue()

    def __repr__(self) -> str:
        return f"TOTPEngine(issuer='{self._issuer}', digits={self._digits})"
