from datetime import timedelta
import threading

import pytest
from redis.exceptions import RedisError

from qwiksale_auth.database import build_engine, build_session_factory, init_db
from qwiksale_auth.services.otp_store import (
    CodeDigest,
    ConsumeResult,
    DatabaseOtpStore,
    MemoryOtpStore,
    RedisOtpStore,
)

KEY = "email:user@example.com"


@pytest.fixture(params=["memory", "redis", "database"])
def store(request, clock, digest, redis_client, session_factory):
    kwargs = {"ttl_floor_seconds": 60, "digest": digest, "clock": clock}
    if request.param == "memory":
        return MemoryOtpStore(**kwargs)
    if request.param == "redis":
        return RedisOtpStore(redis_client, expired_retention_seconds=600, **kwargs)
    return DatabaseOtpStore(session_factory, expired_retention_seconds=600, **kwargs)


def test_check_before_put_is_missing(store):
    assert store.check(KEY, "123456") is ConsumeResult.MISSING
    assert store.get(KEY) is None


def test_put_sets_expiry_and_channel(store, clock):
    record = store.put(KEY, "123456", 600, {"channel": "email"})
    assert record.expires_at == clock() + timedelta(seconds=600)
    fetched = store.get(KEY)
    assert fetched is not None
    assert fetched.channel == "email"
    assert fetched.attempts == 0


def test_ttl_floor_applies(store, clock):
    record = store.put(KEY, "123456", 5)
    assert (record.expires_at - clock()).total_seconds() == 60


def test_code_is_not_kept_in_plain_text(store):
    store.put(KEY, "123456", 600)
    assert store.get(KEY).code != "123456"


def test_match_consumes_once(store):
    store.put(KEY, "123456", 600)
    assert store.check(KEY, "123456") is ConsumeResult.OK
    assert store.check(KEY, "123456") is ConsumeResult.MISSING
    assert store.get(KEY) is None


def test_mismatch_keeps_record_and_counts_attempts(store):
    store.put(KEY, "123456", 600)
    assert store.check(KEY, "000000") is ConsumeResult.MISMATCH
    assert store.check(KEY, "999999") is ConsumeResult.MISMATCH
    assert store.get(KEY).attempts == 2
    assert store.consume(KEY, "123456") is True


def test_expired_record_reports_expired_then_missing(store, clock):
    store.put(KEY, "123456", 600)
    clock.advance(601)
    assert store.check(KEY, "123456") is ConsumeResult.EXPIRED
    assert store.check(KEY, "123456") is ConsumeResult.MISSING


def test_get_evicts_expired_record(store, clock):
    store.put(KEY, "123456", 600)
    clock.advance(601)
    assert store.get(KEY) is None
    assert store.check(KEY, "123456") is ConsumeResult.MISSING


def test_record_is_live_at_exact_expiry(store, clock):
    store.put(KEY, "123456", 600)
    clock.advance(600)
    assert store.check(KEY, "123456") is ConsumeResult.OK


def test_put_overwrites_previous_code(store):
    store.put(KEY, "111111", 600)
    store.put(KEY, "222222", 600)
    assert store.check(KEY, "111111") is ConsumeResult.MISMATCH
    assert store.check(KEY, "222222") is ConsumeResult.OK


def test_identifiers_are_independent(store):
    store.put(KEY, "111111", 600)
    store.put("tel:254712345678", "111111", 600)
    assert store.consume(KEY, "111111") is True
    assert store.get("tel:254712345678") is not None


def test_delete_removes_record(store):
    store.put(KEY, "123456", 600)
    store.delete(KEY)
    assert store.check(KEY, "123456") is ConsumeResult.MISSING


def test_memory_purge_expired(clock):
    store = MemoryOtpStore(clock=clock)
    store.put("email:a@example.com", "111111", 60)
    store.put("email:b@example.com", "222222", 600)
    clock.advance(120)
    assert store.purge_expired() == 1
    assert store.get("email:b@example.com") is not None


def test_database_purge_expired(clock, session_factory):
    store = DatabaseOtpStore(session_factory, clock=clock)
    store.put("email:a@example.com", "111111", 60)
    store.put("email:b@example.com", "222222", 600)
    clock.advance(120)
    assert store.purge_expired() == 1
    assert store.get("email:b@example.com") is not None


def test_redis_key_is_namespaced_with_native_ttl(redis_client, clock):
    store = RedisOtpStore(redis_client, expired_retention_seconds=600, clock=clock)
    store.put(KEY, "123456", 600)
    assert redis_client.exists(f"otp:{KEY}") == 1
    ttl = redis_client.pttl(f"otp:{KEY}")
    assert 1_100_000 < ttl <= 1_200_000


def test_raw_codes_when_hashing_disabled(clock):
    store = MemoryOtpStore(digest=CodeDigest(enabled=False), clock=clock)
    store.put(KEY, "123456", 600)
    assert store.get(KEY).code == "123456"


def test_digest_is_bound_to_identifier():
    digest = CodeDigest(pepper="pepper")
    sealed = digest.seal("email:a@example.com", "123456")
    assert digest.matches("email:a@example.com", "123456", sealed)
    assert not digest.matches("email:b@example.com", "123456", sealed)


def _race_consumers(store, workers=8):
    barrier = threading.Barrier(workers)
    results = []

    def worker():
        barrier.wait()
        results.append(store.check(KEY, "123456"))

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


def test_concurrent_consumers_see_a_single_success(clock):
    store = MemoryOtpStore(clock=clock)
    store.put(KEY, "123456", 600)

    results = _race_consumers(store)
    assert results.count(ConsumeResult.OK) == 1
    assert set(results) <= {ConsumeResult.OK, ConsumeResult.MISSING}


def test_database_concurrent_consumers_see_a_single_success(tmp_path, clock):
    engine = build_engine(f"sqlite:///{tmp_path / 'otp.db'}")
    init_db(engine)
    store = DatabaseOtpStore(build_session_factory(engine), clock=clock)
    store.put(KEY, "123456", 600)

    results = _race_consumers(store)
    engine.dispose()
    assert len(results) == 8
    assert results.count(ConsumeResult.OK) == 1
    assert set(results) <= {ConsumeResult.OK, ConsumeResult.MISSING}


def test_redis_check_retries_when_record_changes_underneath(redis_client, clock, monkeypatch):
    store = RedisOtpStore(redis_client, clock=clock)
    store.put(KEY, "123456", 600)
    original_decode = store._decode
    raced = []

    def decode_while_another_consumer_wins(identifier, raw):
        if not raced:
            raced.append(True)
            redis_client.delete(f"otp:{KEY}")
        return original_decode(identifier, raw)

    monkeypatch.setattr(store, "_decode", decode_while_another_consumer_wins)
    assert store.check(KEY, "123456") is ConsumeResult.MISSING


def test_redis_check_gives_up_under_constant_contention(redis_client, clock, monkeypatch):
    store = RedisOtpStore(redis_client, max_watch_retries=3, clock=clock)
    store.put(KEY, "123456", 600)
    original_decode = store._decode
    rewrites = []

    def decode_while_another_writer_interferes(identifier, raw):
        rewrites.append(True)
        redis_client.set(f"otp:{KEY}", raw)
        return original_decode(identifier, raw)

    monkeypatch.setattr(store, "_decode", decode_while_another_writer_interferes)
    with pytest.raises(RedisError):
        store.check(KEY, "123456")
    assert len(rewrites) == 3
    assert store.get(KEY) is not None
