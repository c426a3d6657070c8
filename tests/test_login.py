"""
Integration tests for login, password reset and checkout gating.
"""

import pyotp
import pytest

from storeguard.auth.login import (
    LoginManager, CheckoutGate, INVALID_CREDENTIALS_MESSAGE, INVALID_TOTP_MESSAGE
)
from storeguard.auth.models import Principal, Role, TwoFactorSecret
from storeguard.auth.rate_limit import AdvancedRateLimiter, RateLimiter
from storeguard.auth.totp import TOTPEngine
from storeguard.auth.two_factor import (
    SecretCipher, InMemoryTwoFactorStore, LocalTwoFactorBackend
)
from storeguard.exceptions import BackendError
from storeguard.integration.event_logger import SecurityEventLogger, SecurityEventType
from tests.fakes import FakeClock, FakeCredentialStore


EMAIL = "alice@example.com"
PASSWORD = "S3cure!pass"
ALICE = Principal(id="user-1", email=EMAIL, role=Role.ADMIN)
TOTP_SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"


class UnavailableCredentialStore(FakeCredentialStore):

    async def sign_in(self, email, password):
        raise BackendError("auth service down")

    async def send_password_reset(self, email):
        raise BackendError("mailer down")


class LoginHarness:
    """Wires a LoginManager to in-memory collaborators."""

    def __init__(self, credentials=None, limiter=None):
        self.clock = FakeClock()
        self.credentials = credentials or FakeCredentialStore({EMAIL: (PASSWORD, ALICE)})
        self.store = InMemoryTwoFactorStore(SecretCipher(SecretCipher.generate_key()))
        self.backend = LocalTwoFactorBackend(TOTPEngine(), self.store)
        self.limiter = limiter if limiter is not None else RateLimiter(5, 900, clock=self.clock, name="auth")
        self.events = SecurityEventLogger()
        self.manager = LoginManager(self.credentials, self.backend, self.store,
                                    self.limiter, events=self.events)

    async def enable_two_factor(self):
        await self.store.save(TwoFactorSecret(ALICE.id, TOTP_SECRET, enabled=True))


@pytest.fixture
def harness():
    return LoginHarness()


class TestLogin:

    @pytest.mark.asyncio
    async def test_successful_login(self, harness):
        result = await harness.manager.login(EMAIL, PASSWORD, client_ip="203.0.113.7")

        assert result['success']
        assert result['principal'] == ALICE
        assert result['message'] == 'Login successful'
        success = harness.events.get_events_by_type(SecurityEventType.LOGIN_SUCCESS)
        assert [e.subject for e in success] == [ALICE.id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,password", [
        (EMAIL, "wrong"),
        ("nobody@example.com", PASSWORD),
    ])
    async def test_bad_credentials_share_one_message(self, harness, email, password):
        result = await harness.manager.login(email, password)

        assert not result['success']
        assert result['message'] == INVALID_CREDENTIALS_MESSAGE
        assert len(harness.events.get_events_by_type(SecurityEventType.LOGIN_FAILURE)) == 1

    @pytest.mark.asyncio
    async def test_malformed_email(self, harness):
        result = await harness.manager.login("not-an-email", PASSWORD)
        assert not result['success']
        assert result['message'] == 'Please enter a valid email address'

    @pytest.mark.asyncio
    async def test_credential_store_unavailable(self):
        harness = LoginHarness(credentials=UnavailableCredentialStore())
        result = await harness.manager.login(EMAIL, PASSWORD)
        assert not result['success']
        assert result['message'] == 'Sign in is temporarily unavailable'


class TestLoginRateLimiting:

    @pytest.mark.asyncio
    async def test_locked_after_five_failures(self, harness):
        for _ in range(5):
            result = await harness.manager.login(EMAIL, "wrong")
            assert not result.get('locked')

        result = await harness.manager.login(EMAIL, PASSWORD)

        assert not result['success']
        assert result['locked']
        assert result['retry_after'] == 900
        assert 'principal' not in result
        limited = harness.events.get_events_by_type(SecurityEventType.RATE_LIMIT_EXCEEDED)
        assert limited[0].context['action'] == 'login'

    @pytest.mark.asyncio
    async def test_lock_expires_after_window(self, harness):
        for _ in range(6):
            await harness.manager.login(EMAIL, "wrong")

        harness.clock.advance(901)
        result = await harness.manager.login(EMAIL, PASSWORD)
        assert result['success']

    @pytest.mark.asyncio
    async def test_email_is_case_insensitive_identifier(self, harness):
        for _ in range(5):
            await harness.manager.login(EMAIL, "wrong")
        result = await harness.manager.login(EMAIL.upper(), "wrong")
        assert result['locked']

    @pytest.mark.asyncio
    async def test_client_ip_is_the_identifier(self, harness):
        for _ in range(5):
            await harness.manager.login(EMAIL, "wrong", client_ip="203.0.113.7")

        blocked = await harness.manager.login(EMAIL, PASSWORD, client_ip="203.0.113.7")
        other = await harness.manager.login(EMAIL, PASSWORD, client_ip="198.51.100.2")

        assert blocked['locked']
        assert other['success']

    @pytest.mark.asyncio
    async def test_success_resets_attempts(self, harness):
        for _ in range(4):
            await harness.manager.login(EMAIL, "wrong")
        assert (await harness.manager.login(EMAIL, PASSWORD))['success']

        for _ in range(5):
            result = await harness.manager.login(EMAIL, "wrong")
            assert not result.get('locked')


class TestLoginLockout:
    """LoginManager driving an AdvancedRateLimiter."""

    def setup_method(self):
        self.clock = FakeClock()
        limiter = AdvancedRateLimiter(5, 900, block_seconds=900, ip_block_seconds=3600,
                                      clock=self.clock, name="auth")
        self.harness = LoginHarness(limiter=limiter)

    @pytest.mark.asyncio
    async def test_lockout_reports_block_time(self):
        for _ in range(5):
            await self.harness.manager.login(EMAIL, "wrong", client_ip="203.0.113.7")

        result = await self.harness.manager.login(EMAIL, PASSWORD, client_ip="203.0.113.7")
        assert result["locked"]
        assert result["retry_after"] == 900

        self.clock.advance(900)
        result = await self.harness.manager.login(EMAIL, PASSWORD, client_ip="203.0.113.7")
        assert result["success"]

    @pytest.mark.asyncio
    async def test_client_ip_reaches_the_blocklist(self):
        ip = "203.0.113.7"
        for _ in range(21):
            await self.harness.manager.login(EMAIL, "wrong", client_ip=ip)

        assert self.harness.limiter.is_ip_blocked(ip)
        result = await self.harness.manager.request_password_reset(EMAIL, client_ip=ip)
        assert result["locked"]
        assert self.harness.credentials.reset_requests == []


class TestDefaultEventLogger:

    @pytest.mark.asyncio
    async def test_failures_do_not_accumulate_without_sink(self):
        harness = LoginHarness()
        manager = LoginManager(harness.credentials, harness.backend, harness.store,
                               RateLimiter(1000, 900, clock=harness.clock))
        for _ in range(50):
            await manager.login(EMAIL, "wrong")

        assert manager.events.pending == []
        assert len(manager.events.get_events_by_type(SecurityEventType.LOGIN_FAILURE)) == 50


class TestLoginTwoFactor:

    @pytest.mark.asyncio
    async def test_code_required(self, harness):
        await harness.enable_two_factor()
        result = await harness.manager.login(EMAIL, PASSWORD)

        assert not result['success']
        assert result['requires_totp']
        assert 'principal' not in result

    @pytest.mark.asyncio
    async def test_wrong_code(self, harness):
        await harness.enable_two_factor()
        current = pyotp.TOTP(TOTP_SECRET).now()
        wrong = "000000" if current != "000000" else "111111"

        result = await harness.manager.login(EMAIL, PASSWORD, totp_code=wrong)

        assert not result['success']
        assert result['message'] == INVALID_TOTP_MESSAGE
        assert result['requires_totp']
        assert len(harness.events.get_events_by_type(SecurityEventType.TWO_FA_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_correct_code(self, harness):
        await harness.enable_two_factor()
        code = pyotp.TOTP(TOTP_SECRET).now()

        result = await harness.manager.login(EMAIL, PASSWORD, totp_code=code)

        assert result['success']
        assert result['principal'] == ALICE

    @pytest.mark.asyncio
    async def test_disabled_record_skips_second_factor(self, harness):
        await harness.store.save(TwoFactorSecret(ALICE.id, TOTP_SECRET, enabled=False))
        result = await harness.manager.login(EMAIL, PASSWORD)
        assert result['success']


class TestPasswordReset:

    @pytest.mark.asyncio
    async def test_reset_does_not_reveal_account(self, harness):
        known = await harness.manager.request_password_reset(EMAIL)
        unknown = await harness.manager.request_password_reset("nobody@example.com")

        assert known == unknown
        assert known['success']
        assert harness.credentials.reset_requests == [EMAIL, "nobody@example.com"]

    @pytest.mark.asyncio
    async def test_reset_rate_limited_separately(self, harness):
        for _ in range(5):
            await harness.manager.request_password_reset(EMAIL)
        result = await harness.manager.request_password_reset(EMAIL)

        assert result['locked']
        assert (await harness.manager.login(EMAIL, PASSWORD))['success']

    @pytest.mark.asyncio
    async def test_reset_invalid_email(self, harness):
        result = await harness.manager.request_password_reset("bad")
        assert not result['success']
        assert harness.credentials.reset_requests == []

    @pytest.mark.asyncio
    async def test_reset_backend_failure(self):
        harness = LoginHarness(credentials=UnavailableCredentialStore())
        result = await harness.manager.request_password_reset(EMAIL)
        assert not result['success']


class TestCheckoutGate:

    def test_three_checkouts_then_locked(self):
        clock = FakeClock()
        events = SecurityEventLogger()
        gate = CheckoutGate(RateLimiter(3, 300, clock=clock, name="checkout"), events=events)

        for _ in range(3):
            assert gate.check("user-1")['success']
        result = gate.check("user-1")

        assert result['locked']
        assert result['retry_after'] == 300
        assert events.get_events_by_type(SecurityEventType.RATE_LIMIT_EXCEEDED)[0].context['action'] == 'checkout'

        clock.advance(301)
        assert gate.check("user-1")['success']

    def test_without_event_logger(self):
        gate = CheckoutGate(RateLimiter(1, 300, clock=FakeClock()))
        gate.check("user-1")
        assert gate.check("user-1")['locked']
