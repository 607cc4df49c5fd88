from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import re
import secrets
from typing import Callable

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from qwiksale_auth.config import Settings, settings
from qwiksale_auth.errors import InvalidCodeError, OtpBackendError, RateLimitedError
from qwiksale_auth.services.identifiers import Identifier, parse_identifier
from qwiksale_auth.services.notify import EmailSendError, Notifier, SmsSendError
from qwiksale_auth.services.otp_store import (
    CodeDigest,
    ConsumeResult,
    DatabaseOtpStore,
    MemoryOtpStore,
    OtpStore,
    RedisOtpStore,
)
from qwiksale_auth.services.throttle import (
    FailOpenThrottle,
    MemoryThrottle,
    RedisThrottle,
    Throttle,
    ThrottleResult,
    ThrottleRule,
    check_rules,
)

LOGGER = logging.getLogger(__name__)

VerifyOutcome = ConsumeResult
VerifiedHook = Callable[[Identifier], object]


@dataclass(frozen=True)
class IssueResult:
    identifier: Identifier
    code: str
    expires_at: datetime
    delivered: bool
    rate_limit: ThrottleResult | None = None


def generate_code(length: int = 6) -> str:
    """Uniform numeric code of exactly ``length`` digits, never zero-led."""
    lower = 10 ** (length - 1)
    return str(lower + secrets.randbelow(9 * lower))


def _enforce(throttle: Throttle, checks: list[tuple[ThrottleRule, str]]) -> ThrottleResult | None:
    decision = check_rules(throttle, checks)
    if decision is None:
        return None
    rule, result = decision
    if not result.allowed:
        raise RateLimitedError(rule.name, result.retry_after_seconds, result.limit)
    return result


class OtpIssuer:
    def __init__(
        self,
        store: OtpStore,
        throttle: Throttle,
        notifier: Notifier,
        *,
        ttl_seconds: int,
        code_length: int,
        ip_rule: ThrottleRule,
        identifier_rule: ThrottleRule,
        code_generator: Callable[[int], str] = generate_code,
    ) -> None:
        self._store = store
        self._throttle = throttle
        self._notifier = notifier
        self._ttl_seconds = ttl_seconds
        self._code_length = code_length
        self._ip_rule = ip_rule
        self._identifier_rule = identifier_rule
        self._generate = code_generator

    def issue(self, raw_identifier: str | None, client_ip: str = "anon") -> IssueResult:
        identifier = parse_identifier(raw_identifier)
        try:
            rate_limit = _enforce(
                self._throttle,
                [(self._ip_rule, client_ip), (self._identifier_rule, identifier.key)],
            )
        except RateLimitedError as exc:
            LOGGER.info(
                "OTP issuance throttled scope=%s to=%s ip=%s",
                exc.scope,
                identifier.masked,
                client_ip,
            )
            raise

        code = self._generate(self._code_length)
        try:
            record = self._store.put(
                identifier.key, code, self._ttl_seconds, {"channel": identifier.channel}
            )
        except (RedisError, SQLAlchemyError) as exc:
            LOGGER.error("OTP store write failed for %s: %s", identifier.masked, exc)
            raise OtpBackendError("Could not store verification code") from exc

        # The stored code is authoritative; a failed send is not rolled back.
        delivered = False
        try:
            delivered = bool(self._notifier.deliver(identifier, code, self._ttl_seconds))
        except (EmailSendError, SmsSendError) as exc:
            LOGGER.warning("OTP delivery failed to=%s: %s", identifier.masked, exc)
        except Exception:
            LOGGER.exception("Unexpected error delivering OTP to=%s", identifier.masked)

        LOGGER.info(
            "OTP issued channel=%s to=%s ip=%s delivered=%s",
            identifier.channel,
            identifier.masked,
            client_ip,
            delivered,
        )
        return IssueResult(
            identifier=identifier,
            code=code,
            expires_at=record.expires_at,
            delivered=delivered,
            rate_limit=rate_limit,
        )


class OtpVerifier:
    def __init__(
        self,
        store: OtpStore,
        *,
        code_length: int,
        throttle: Throttle | None = None,
        verify_rule: ThrottleRule | None = None,
        on_verified: VerifiedHook | None = None,
    ) -> None:
        self._store = store
        self._code_re = re.compile(rf"[0-9]{{{code_length}}}")
        self._throttle = throttle
        self._verify_rule = verify_rule
        self._on_verified = on_verified

    def validate_code(self, code: str | None) -> str:
        clean = (code or "").strip()
        if not self._code_re.fullmatch(clean):
            raise InvalidCodeError("Valid code required")
        return clean

    def verify(
        self, raw_identifier: str | None, code: str | None, client_ip: str | None = None
    ) -> VerifyOutcome:
        identifier = parse_identifier(raw_identifier)
        clean_code = self.validate_code(code)
        if self._throttle is not None and self._verify_rule is not None:
            _enforce(
                self._throttle,
                [(self._verify_rule, f"{client_ip or 'anon'}:{identifier.key}")],
            )

        try:
            outcome = self._store.check(identifier.key, clean_code)
        except (RedisError, SQLAlchemyError) as exc:
            LOGGER.error("OTP store check failed for %s: %s", identifier.masked, exc)
            raise OtpBackendError("Could not check verification code") from exc

        LOGGER.info("OTP verification to=%s outcome=%s", identifier.masked, outcome.value)
        if outcome is ConsumeResult.OK and self._on_verified is not None:
            try:
                self._on_verified(identifier)
            except Exception:
                LOGGER.exception("Post-verification update failed for %s", identifier.masked)
        return outcome


@dataclass
class OtpService:
    issuer: OtpIssuer
    verifier: OtpVerifier
    store: OtpStore
    throttle: Throttle
    ttl_seconds: int


def build_redis_client(cfg: Settings = settings) -> Redis:
    return Redis.from_url(
        cfg.redis_url,
        decode_responses=True,
        socket_timeout=cfg.redis_timeout_seconds,
        socket_connect_timeout=cfg.redis_timeout_seconds,
    )


def build_otp_service(
    cfg: Settings = settings,
    *,
    redis_client: Redis | None = None,
    session_factory: sessionmaker | None = None,
    notifier: Notifier | None = None,
    on_verified: VerifiedHook | None = None,
) -> OtpService:
    store_config = cfg.store_config()
    if redis_client is None and cfg.redis_url:
        redis_client = build_redis_client(cfg)

    store_kwargs = {
        "ttl_floor_seconds": cfg.otp_ttl_floor_seconds,
        "digest": CodeDigest(pepper=cfg.otp_pepper, enabled=cfg.otp_hash_codes),
    }
    if store_config.backend == "redis":
        if redis_client is None:
            raise ValueError("OTP_BACKEND=redis requires REDIS_URL")
        store: OtpStore = RedisOtpStore(
            redis_client,
            expired_retention_seconds=cfg.otp_expired_retention_seconds,
            **store_kwargs,
        )
    elif store_config.backend == "database":
        store = DatabaseOtpStore(
            session_factory,
            expired_retention_seconds=cfg.otp_expired_retention_seconds,
            **store_kwargs,
        )
    else:
        store = MemoryOtpStore(**store_kwargs)

    inner: Throttle = RedisThrottle(redis_client) if redis_client is not None else MemoryThrottle()
    throttle = FailOpenThrottle(inner)

    issuer = OtpIssuer(
        store,
        throttle,
        notifier or Notifier(cfg),
        ttl_seconds=cfg.otp_ttl_seconds,
        code_length=cfg.otp_length,
        ip_rule=ThrottleRule(
            "otp_ip", cfg.otp_ip_limit, cfg.otp_ip_window_seconds, cfg.otp_block_seconds
        ),
        identifier_rule=ThrottleRule(
            "otp_identifier",
            cfg.otp_identifier_limit,
            cfg.otp_identifier_window_seconds,
            cfg.otp_block_seconds,
        ),
    )
    verifier = OtpVerifier(
        store,
        code_length=cfg.otp_length,
        throttle=throttle,
        verify_rule=ThrottleRule(
            "otp_verify", cfg.otp_verify_limit, cfg.otp_verify_window_seconds
        ),
        on_verified=on_verified,
    )
    LOGGER.info("OTP service ready store=%s throttle=%s", store.name, throttle.name)
    return OtpService(
        issuer=issuer,
        verifier=verifier,
        store=store,
        throttle=throttle,
        ttl_seconds=cfg.otp_ttl_seconds,
    )
