from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
import hashlib
import json
import logging
import math
import secrets
import threading
from typing import Any, Callable, Mapping

from redis import Redis
from redis.exceptions import RedisError, WatchError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from qwiksale_auth.database import session_scope
from qwiksale_auth.models.otp import OtpEntry

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConsumeResult(str, Enum):
    OK = "ok"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    MISSING = "missing"


@dataclass(frozen=True)
class OtpRecord:
    identifier: str
    code: str
    expires_at: datetime
    channel: str = "email"
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class CodeDigest:
    """Turns a plain code into the value kept at rest.

    With hashing enabled the store only ever sees a peppered SHA-256 digest
    bound to the identifier, so a dump of the store does not disclose live codes.
    """

    def __init__(self, pepper: str = "", enabled: bool = True) -> None:
        self._pepper = pepper
        self._enabled = enabled

    def seal(self, identifier: str, code: str) -> str:
        if not self._enabled:
            return code
        raw = f"{self._pepper}:{identifier}:{code}".encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    def matches(self, identifier: str, supplied: str, stored: str) -> bool:
        return secrets.compare_digest(
            self.seal(identifier, supplied).encode("utf-8"),
            stored.encode("utf-8"),
        )


class OtpStore(ABC):
    """Holds at most one live code per identifier."""

    name = "abstract"

    def __init__(
        self,
        *,
        ttl_floor_seconds: int = 60,
        digest: CodeDigest | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self._ttl_floor_seconds = ttl_floor_seconds
        self._digest = digest or CodeDigest(enabled=False)
        self._clock = clock

    def _expiry(self, now: datetime, ttl_seconds: int) -> datetime:
        return now + timedelta(seconds=max(ttl_seconds, self._ttl_floor_seconds))

    def _channel(self, meta: Mapping[str, Any] | None) -> str:
        if meta and meta.get("channel"):
            return str(meta["channel"])
        return "email"

    @abstractmethod
    def put(
        self,
        identifier: str,
        code: str,
        ttl_seconds: int,
        meta: Mapping[str, Any] | None = None,
    ) -> OtpRecord:
        """Overwrite any record for ``identifier`` with a fresh code."""

    @abstractmethod
    def get(self, identifier: str) -> OtpRecord | None:
        """Return the live record, evicting it if it has expired."""

    @abstractmethod
    def check(self, identifier: str, code: str) -> ConsumeResult:
        """Atomically compare ``code`` and delete the record on a match."""

    @abstractmethod
    def delete(self, identifier: str) -> None:
        ...

    @abstractmethod
    def purge_expired(self) -> int:
        ...

    def consume(self, identifier: str, code: str) -> bool:
        return self.check(identifier, code) is ConsumeResult.OK


class MemoryOtpStore(OtpStore):
    """Process-local store. Only correct for a single instance."""

    name = "memory"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._records: dict[str, OtpRecord] = {}
        self._lock = threading.Lock()

    def put(self, identifier, code, ttl_seconds, meta=None) -> OtpRecord:
        now = self._clock()
        record = OtpRecord(
            identifier=identifier,
            code=self._digest.seal(identifier, code),
            expires_at=self._expiry(now, ttl_seconds),
            channel=self._channel(meta),
        )
        with self._lock:
            self._purge_locked(now)
            self._records[identifier] = record
        return record

    def get(self, identifier: str) -> OtpRecord | None:
        now = self._clock()
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                return None
            if record.is_expired(now):
                self._records.pop(identifier, None)
                return None
            return record

    def check(self, identifier: str, code: str) -> ConsumeResult:
        now = self._clock()
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                return ConsumeResult.MISSING
            if record.is_expired(now):
                self._records.pop(identifier, None)
                return ConsumeResult.EXPIRED
            if not self._digest.matches(identifier, code, record.code):
                self._records[identifier] = replace(record, attempts=record.attempts + 1)
                return ConsumeResult.MISMATCH
            self._records.pop(identifier, None)
            return ConsumeResult.OK

    def delete(self, identifier: str) -> None:
        with self._lock:
            self._records.pop(identifier, None)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: datetime) -> int:
        expired = [key for key, record in self._records.items() if record.is_expired(now)]
        for key in expired:
            del self._records[key]
        return len(expired)


class RedisOtpStore(OtpStore):
    """Redis-backed store relying on native key expiry.

    Keys outlive the code by ``expired_retention_seconds`` so a late attempt is
    still reported as expired rather than missing.
    """

    name = "redis"

    def __init__(
        self,
        client: Redis,
        *,
        prefix: str = "otp:",
        expired_retention_seconds: int = 600,
        max_watch_retries: int = 10,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._client = client
        self._prefix = prefix
        self._retention_seconds = max(0, expired_retention_seconds)
        self._max_watch_retries = max(1, max_watch_retries)

    def _key(self, identifier: str) -> str:
        return f"{self._prefix}{identifier}"

    def _encode(self, record: OtpRecord) -> str:
        return json.dumps(
            {
                "code": record.code,
                "channel": record.channel,
                "attempts": record.attempts,
                "expires_at": record.expires_at.timestamp(),
            }
        )

    def _decode(self, identifier: str, raw: str | bytes) -> OtpRecord:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        return OtpRecord(
            identifier=identifier,
            code=data["code"],
            expires_at=datetime.fromtimestamp(float(data["expires_at"]), tz=timezone.utc),
            channel=data.get("channel", "email"),
            attempts=int(data.get("attempts", 0)),
        )

    def put(self, identifier, code, ttl_seconds, meta=None) -> OtpRecord:
        now = self._clock()
        record = OtpRecord(
            identifier=identifier,
            code=self._digest.seal(identifier, code),
            expires_at=self._expiry(now, ttl_seconds),
            channel=self._channel(meta),
        )
        lifetime = (record.expires_at - now).total_seconds() + self._retention_seconds
        self._client.set(
            self._key(identifier), self._encode(record), px=math.ceil(lifetime * 1000)
        )
        return record

    def get(self, identifier: str) -> OtpRecord | None:
        key = self._key(identifier)
        raw = self._client.get(key)
        if raw is None:
            return None
        record = self._decode(identifier, raw)
        if record.is_expired(self._clock()):
            self._client.delete(key)
            return None
        return record

    def check(self, identifier: str, code: str) -> ConsumeResult:
        key = self._key(identifier)
        with self._client.pipeline() as pipe:
            for _ in range(self._max_watch_retries):
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        return ConsumeResult.MISSING
                    record = self._decode(identifier, raw)
                    pipe.multi()
                    if record.is_expired(self._clock()):
                        pipe.delete(key)
                        outcome = ConsumeResult.EXPIRED
                    elif not self._digest.matches(identifier, code, record.code):
                        bumped = replace(record, attempts=record.attempts + 1)
                        pipe.set(key, self._encode(bumped), keepttl=True)
                        outcome = ConsumeResult.MISMATCH
                    else:
                        pipe.delete(key)
                        outcome = ConsumeResult.OK
                    pipe.execute()
                    return outcome
                except WatchError:
                    LOGGER.debug("OTP record for %s changed during check; retrying", identifier)
                    continue
        raise RedisError(f"OTP record for {identifier} kept changing during check")

    def delete(self, identifier: str) -> None:
        self._client.delete(self._key(identifier))

    def purge_expired(self) -> int:
        return 0


class DatabaseOtpStore(OtpStore):
    """SQL-backed store on the ``otp_codes`` table."""

    name = "database"

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        *,
        expired_retention_seconds: int = 600,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._session_factory = session_factory
        self._retention = timedelta(seconds=max(0, expired_retention_seconds))

    def _to_record(self, entry: OtpEntry) -> OtpRecord:
        return OtpRecord(
            identifier=entry.identifier,
            code=entry.code,
            expires_at=_aware(entry.expires_at),
            channel=entry.channel,
            attempts=entry.attempts or 0,
        )

    def put(self, identifier, code, ttl_seconds, meta=None) -> OtpRecord:
        now = self._clock()
        record = OtpRecord(
            identifier=identifier,
            code=self._digest.seal(identifier, code),
            expires_at=self._expiry(now, ttl_seconds),
            channel=self._channel(meta),
        )
        for attempt in range(2):
            try:
                with session_scope(self._session_factory) as session:
                    session.execute(
                        delete(OtpEntry).where(OtpEntry.expires_at <= now - self._retention)
                    )
                    session.execute(delete(OtpEntry).where(OtpEntry.identifier == identifier))
                    session.add(
                        OtpEntry(
                            identifier=identifier,
                            channel=record.channel,
                            code=record.code,
                            attempts=0,
                            expires_at=record.expires_at,
                            created_at=now,
                        )
                    )
                return record
            except IntegrityError:
                # A concurrent put for the same identifier won the insert.
                if attempt:
                    raise
                LOGGER.debug("Retrying OTP insert for %s after a concurrent put", identifier)
        return record

    def get(self, identifier: str) -> OtpRecord | None:
        now = self._clock()
        with session_scope(self._session_factory) as session:
            entry = session.execute(
                select(OtpEntry).where(OtpEntry.identifier == identifier)
            ).scalar_one_or_none()
            if entry is None:
                return None
            record = self._to_record(entry)
            if record.is_expired(now):
                session.delete(entry)
                return None
            return record

    def check(self, identifier: str, code: str) -> ConsumeResult:
        now = self._clock()
        with session_scope(self._session_factory) as session:
            entry = session.execute(
                select(OtpEntry).where(OtpEntry.identifier == identifier)
            ).scalar_one_or_none()
            if entry is None:
                return ConsumeResult.MISSING
            record = self._to_record(entry)
            if record.is_expired(now):
                session.execute(delete(OtpEntry).where(OtpEntry.id == entry.id))
                return ConsumeResult.EXPIRED
            if not self._digest.matches(identifier, code, record.code):
                session.execute(
                    update(OtpEntry)
                    .where(OtpEntry.id == entry.id)
                    .values(attempts=OtpEntry.attempts + 1)
                )
                return ConsumeResult.MISMATCH
            result = session.execute(
                delete(OtpEntry).where(
                    OtpEntry.id == entry.id, OtpEntry.code == record.code
                )
            )
            if result.rowcount != 1:
                return ConsumeResult.MISSING
            return ConsumeResult.OK

    def delete(self, identifier: str) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(delete(OtpEntry).where(OtpEntry.identifier == identifier))

    def purge_expired(self) -> int:
        now = self._clock()
        with session_scope(self._session_factory) as session:
            result = session.execute(delete(OtpEntry).where(OtpEntry.expires_at < now))
            return result.rowcount or 0
