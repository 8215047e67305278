"""End-to-end tests for the passwordless login workflow."""

import re
import uuid

import pytest

from otpgate.service.errors import (
    AuthenticationError,
    DeliveryError,
    RateLimitedError,
    TokenTypeError,
    ValidationError,
)
from otpgate.service.login import PasswordlessLogin, user_id_for
from otpgate.service.otp import OTPService
from otpgate.service.rate_limit import RateLimitConfig, RateLimiter
from otpgate.service.secrets import StaticSecretSource
from otpgate.service.sessions import SessionService
from otpgate.service.tokens import TokenService
from otpgate.storage.kv import KeyValueStore


class RecordingMailer:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send(self, to, subject, text=None, html=None):
        if self.fail:
            raise DeliveryError("SMTP delivery failed")
        self.sent.append({"to": to, "subject": subject, "text": text})
        return f"test-{len(self.sent)}"

    def last_code(self):
        return re.search(r"\b(\d{6})\b", self.sent[-1]["text"]).group(1)


def build_login(clock, client=None, mailer=None, **limits):
    kv = KeyValueStore(client=client, clock=clock)
    return PasswordlessLogin(
        OTPService(kv),
        TokenService(
            StaticSecretSource({"JWT_SECRET": "login-flow-secret-that-is-long-enough!!"}),
            clock=clock,
        ),
        SessionService(kv, clock=clock),
        RateLimiter(kv, clock=clock),
        mailer or RecordingMailer(),
        send_limit=limits.get("send_limit", RateLimitConfig(5, 3600)),
        verify_limit=limits.get("verify_limit", RateLimitConfig(10, 600)),
        refresh_limit=limits.get("refresh_limit", RateLimitConfig(10, 3600)),
    )


@pytest.fixture(params=["memory", "redis"])
def backend(request, fake_redis):
    return fake_redis if request.param == "redis" else None


class TestHappyPath:
    async def test_full_login(self, clock, backend):
        mailer = RecordingMailer()
        login = build_login(clock, backend, mailer)

        sent = await login.send_otp("a@b.com")
        assert sent == {"delivery_id": "test-1", "expires_in": 600}
        assert mailer.sent[0]["to"] == "a@b.com"

        result = await login.verify_otp(
            "a@b.com", mailer.last_code(), user_agent="pytest", ip_address="127.0.0.1"
        )
        assert result.user_id == user_id_for("a@b.com")
        assert result.tokens.expires_in == 900

        auth = login.validate(f"Bearer {result.tokens.access_token}")
        assert auth.success
        assert auth.user_id == result.user_id
        assert auth.email == "a@b.com"

        session = await login.sessions.validate(result.session_id)
        assert session.success
        assert session.session.user_agent == "pytest"

        clock.advance(5)
        fresh = await login.refresh(result.tokens.refresh_token)
        assert login.validate(f"Bearer {fresh.access_token}").success

        await login.logout(result.session_id)
        assert not (await login.sessions.validate(result.session_id)).success

    async def test_email_is_normalized(self, clock):
        mailer = RecordingMailer()
        login = build_login(clock, mailer=mailer)

        await login.send_otp("  A@B.Com ")
        result = await login.verify_otp("a@b.com", mailer.last_code())

        assert mailer.sent[0]["to"] == "a@b.com"
        assert result.email == "a@b.com"


class TestRejections:
    async def test_wrong_code_then_right_code(self, clock, backend):
        mailer = RecordingMailer()
        login = build_login(clock, backend, mailer)
        await login.send_otp("a@b.com")
        code = mailer.last_code()
        wrong = "000000" if code != "000000" else "111111"

        with pytest.raises(AuthenticationError):
            await login.verify_otp("a@b.com", wrong)
        result = await login.verify_otp("a@b.com", code)
        assert result.session_id

    async def test_code_cannot_be_replayed(self, clock, backend):
        mailer = RecordingMailer()
        login = build_login(clock, backend, mailer)
        await login.send_otp("a@b.com")
        code = mailer.last_code()

        await login.verify_otp("a@b.com", code)
        with pytest.raises(AuthenticationError):
            await login.verify_otp("a@b.com", code)

    async def test_expired_code(self, clock):
        mailer = RecordingMailer()
        login = build_login(clock, mailer=mailer)
        await login.send_otp("a@b.com")

        clock.advance(601)

        with pytest.raises(AuthenticationError):
            await login.verify_otp("a@b.com", mailer.last_code())

    @pytest.mark.parametrize("email", ["", "   ", "no-at-sign"])
    async def test_invalid_email(self, clock, email):
        login = build_login(clock)
        with pytest.raises(ValidationError):
            await login.send_otp(email)

    async def test_empty_code(self, clock):
        login = build_login(clock)
        with pytest.raises(AuthenticationError):
            await login.verify_otp("a@b.com", "")

    async def test_delivery_failure_propagates(self, clock):
        login = build_login(clock, mailer=RecordingMailer(fail=True))
        with pytest.raises(DeliveryError):
            await login.send_otp("a@b.com")

    async def test_validate_rejects_refresh_token(self, clock):
        mailer = RecordingMailer()
        login = build_login(clock, mailer=mailer)
        await login.send_otp("a@b.com")
        result = await login.verify_otp("a@b.com", mailer.last_code())

        auth = login.validate(f"Bearer {result.tokens.refresh_token}")

        assert not auth.success
        assert auth.error == "Invalid token type. Access token required."

    @pytest.mark.parametrize(
        "header", [None, "", "Basic abc", "Bearer not.a.jwt", "Bearer e30.e30.\u00e9\u00e9"]
    )
    async def test_validate_bad_headers(self, clock, header):
        login = build_login(clock)
        auth = login.validate(header)
        assert not auth.success
        assert auth.error

    async def test_refresh_rejects_access_token(self, clock):
        mailer = RecordingMailer()
        login = build_login(clock, mailer=mailer)
        await login.send_otp("a@b.com")
        result = await login.verify_otp("a@b.com", mailer.last_code())

        with pytest.raises(TokenTypeError):
            await login.refresh(result.tokens.access_token)


class TestRateLimits:
    async def test_send_limit(self, clock, backend):
        login = build_login(clock, backend, send_limit=RateLimitConfig(5, 3600))
        for _ in range(5):
            await login.send_otp("a@b.com")

        with pytest.raises(RateLimitedError) as exc_info:
            await login.send_otp("a@b.com")

        assert exc_info.value.detail["operation"] == "send_otp"
        # Other addresses are unaffected
        await login.send_otp("c@d.com")

    async def test_verify_limit(self, clock):
        login = build_login(clock, verify_limit=RateLimitConfig(3, 600))
        await login.send_otp("a@b.com")
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await login.verify_otp("a@b.com", "abcdef")

        with pytest.raises(RateLimitedError):
            await login.verify_otp("a@b.com", "abcdef")

    async def test_refresh_limit_per_user(self, clock):
        mailer = RecordingMailer()
        login = build_login(clock, mailer=mailer, refresh_limit=RateLimitConfig(2, 3600))
        await login.send_otp("a@b.com")
        result = await login.verify_otp("a@b.com", mailer.last_code())

        await login.refresh(result.tokens.refresh_token)
        await login.refresh(result.tokens.refresh_token)
        with pytest.raises(RateLimitedError):
            await login.refresh(result.tokens.refresh_token)


class TestUserIds:
    def test_stable_and_case_insensitive(self):
        assert user_id_for("A@B.com") == user_id_for("a@b.com")
        assert user_id_for("a@b.com") != user_id_for("c@d.com")
        assert uuid.UUID(user_id_for("a@b.com")).version == 5
