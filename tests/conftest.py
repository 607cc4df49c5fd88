import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="qwiksale-auth-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["JWT_SECRET"] = "test-secret-for-the-qwiksale-auth-suite"
os.environ["OTP_PEPPER"] = "test-pepper"
os.environ["OTP_BACKEND"] = "memory"
os.environ["REDIS_URL"] = ""
os.environ["APP_ENV"] = "test"
os.environ["OTP_DEBUG"] = "1"
os.environ["RESEND_API_KEY"] = ""
os.environ["AT_USERNAME"] = ""
os.environ["AT_API_KEY"] = ""

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from qwiksale_auth.database import build_engine, build_session_factory, init_db
from qwiksale_auth.services.otp import OtpIssuer, OtpService, OtpVerifier
from qwiksale_auth.services.otp_store import CodeDigest, MemoryOtpStore
from qwiksale_auth.services.throttle import MemoryThrottle, ThrottleRule


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier:
    def __init__(self, error: Exception | None = None) -> None:
        self.sent = []
        self.error = error

    def deliver(self, identifier, code, ttl_seconds) -> bool:
        self.sent.append((identifier, code, ttl_seconds))
        if self.error is not None:
            raise self.error
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def digest():
    return CodeDigest(pepper="test-pepper", enabled=True)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_service(clock, notifier):
    def _make(
        store=None,
        *,
        ip_limit=10,
        identifier_limit=5,
        verify_limit=100,
        on_verified=None,
        code_generator=None,
        delivery=None,
    ):
        store = store or MemoryOtpStore(
            digest=CodeDigest(pepper="test-pepper"), clock=clock
        )
        throttle = MemoryThrottle(clock=clock.timestamp)
        extra = {"code_generator": code_generator} if code_generator else {}
        issuer = OtpIssuer(
            store,
            throttle,
            delivery or notifier,
            ttl_seconds=600,
            code_length=6,
            ip_rule=ThrottleRule("otp_ip", ip_limit, 600, 900),
            identifier_rule=ThrottleRule("otp_identifier", identifier_limit, 600, 900),
            **extra,
        )
        verifier = OtpVerifier(
            store,
            code_length=6,
            throttle=throttle,
            verify_rule=ThrottleRule("otp_verify", verify_limit, 600),
            on_verified=on_verified,
        )
        return OtpService(
            issuer=issuer,
            verifier=verifier,
            store=store,
            throttle=throttle,
            ttl_seconds=600,
        )

    return _make


@pytest.fixture
def failing_notifier():
    from qwiksale_auth.services.notify import EmailSendError

    return RecordingNotifier(error=EmailSendError("Failed to reach Resend API"))


@pytest.fixture
def otp_service(make_service):
    from qwiksale_auth.services.users import user_store

    return make_service(on_verified=user_store.mark_identifier_verified)


@pytest.fixture
def client(otp_service):
    from fastapi.testclient import TestClient

    from qwiksale_auth.deps import get_otp_service
    from qwiksale_auth.main import app

    app.dependency_overrides[get_otp_service] = lambda: otp_service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def unique_email():
    import uuid

    return f"user-{uuid.uuid4().hex[:10]}@example.com"
