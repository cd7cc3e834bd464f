import threading
import time
from unittest.mock import Mock

import fakeredis
import pytest
import redis
from fastapi import HTTPException

from utils.rate_limiter import (
    AttemptState, AuthRateLimiter, LocalAttemptStore, RedisAttemptStore, TOO_MANY_ATTEMPTS_DETAIL
)

WINDOW_MS = 60_000
BLOCK_MS = 120_000


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def assert_blocked(limiter, keys):
    with pytest.raises(HTTPException) as exc:
        limiter.assert_allowed(keys)
    assert exc.value.status_code == 429
    assert exc.value.detail == TOO_MANY_ATTEMPTS_DETAIL


def test_local_blocks_exactly_at_max_attempts():
    limiter = AuthRateLimiter(local=LocalAttemptStore(WINDOW_MS, 3, BLOCK_MS))

    for _ in range(2):
        limiter.register_failure("login:ip:1.2.3.4")
        limiter.assert_allowed("login:ip:1.2.3.4")

    limiter.register_failure("login:ip:1.2.3.4")
    assert_blocked(limiter, "login:ip:1.2.3.4")


def test_success_unblocks_immediately():
    limiter = AuthRateLimiter(local=LocalAttemptStore(WINDOW_MS, 2, BLOCK_MS))
    limiter.register_failure("k")
    limiter.register_failure("k")
    assert_blocked(limiter, "k")

    limiter.register_success("k")
    limiter.assert_allowed("k")


def test_block_on_any_key_rejects_request():
    limiter = AuthRateLimiter(local=LocalAttemptStore(WINDOW_MS, 1, BLOCK_MS))
    limiter.register_failure("login:identifier:ana@example.com")

    assert_blocked(limiter, ["login:ip:9.9.9.9", "login:identifier:ana@example.com"])
    limiter.assert_allowed(["login:ip:9.9.9.9"])


def test_keys_are_trimmed_and_deduplicated():
    limiter = AuthRateLimiter(local=LocalAttemptStore(WINDOW_MS, 2, BLOCK_MS))

    # One failure per distinct key, even when repeated in a single call
    limiter.register_failure([" k ", "k", "", "   "])
    limiter.assert_allowed("k")
    assert list(limiter.local.attempts) == ["k"]


def test_window_expiry_resets_counter():
    clock = FakeClock()
    store = LocalAttemptStore(WINDOW_MS, 3, BLOCK_MS, clock=clock)
    limiter = AuthRateLimiter(local=store)

    limiter.register_failure("k")
    limiter.register_failure("k")
    clock.advance(61)
    limiter.register_failure("k")

    limiter.assert_allowed("k")
    assert store.attempts["k"].count == 1


def test_block_expires_and_failures_while_blocked_are_ignored():
    clock = FakeClock()
    store = LocalAttemptStore(WINDOW_MS, 2, BLOCK_MS, clock=clock)
    limiter = AuthRateLimiter(local=store)

    limiter.register_failure("k")
    limiter.register_failure("k")
    blocked_until = store.attempts["k"].blocked_until

    clock.advance(30)
    limiter.register_failure("k")
    assert store.attempts["k"].blocked_until == blocked_until

    clock.advance(91)
    limiter.assert_allowed("k")

    # First failure after the block starts a fresh count
    limiter.register_failure("k")
    limiter.assert_allowed("k")


def test_expired_entries_are_swept():
    clock = FakeClock()
    store = LocalAttemptStore(WINDOW_MS, 5, BLOCK_MS, clock=clock)
    store.register_failure("a")
    store.register_failure("b")

    clock.advance(61)
    store.is_blocked("c")
    assert store.attempts == {}


def test_redis_store_blocks_and_clears():
    client = fakeredis.FakeRedis(decode_responses=True)
    store = RedisAttemptStore(client, WINDOW_MS, 3, BLOCK_MS, prefix="test:rl")
    limiter = AuthRateLimiter(distributed=store)

    limiter.register_failure("login:ip:1.1.1.1")
    limiter.register_failure("login:ip:1.1.1.1")
    assert client.get("test:rl:counter:login:ip:1.1.1.1") == "2"
    assert 0 < client.ttl("test:rl:counter:login:ip:1.1.1.1") <= 60
    limiter.assert_allowed("login:ip:1.1.1.1")

    limiter.register_failure("login:ip:1.1.1.1")
    assert_blocked(limiter, "login:ip:1.1.1.1")
    assert client.exists("test:rl:counter:login:ip:1.1.1.1") == 0
    assert 0 < client.pttl("test:rl:blocked:login:ip:1.1.1.1") <= BLOCK_MS

    # Failures while blocked do not start a new counter
    limiter.register_failure("login:ip:1.1.1.1")
    assert client.exists("test:rl:counter:login:ip:1.1.1.1") == 0

    limiter.register_success("login:ip:1.1.1.1")
    limiter.assert_allowed("login:ip:1.1.1.1")
    assert limiter.local.attempts == {}


def test_falls_back_to_local_when_redis_is_down():
    client = Mock()
    client.exists.side_effect = redis.exceptions.ConnectionError("down")
    client.incr.side_effect = redis.exceptions.ConnectionError("down")
    client.delete.side_effect = redis.exceptions.ConnectionError("down")
    store = RedisAttemptStore(client, WINDOW_MS, 2, BLOCK_MS)
    limiter = AuthRateLimiter(distributed=store, local=LocalAttemptStore(WINDOW_MS, 2, BLOCK_MS))

    limiter.assert_allowed("k")
    limiter.register_failure("k")
    limiter.register_failure("k")
    assert_blocked(limiter, "k")

    limiter.register_success("k")
    limiter.assert_allowed("k")


def test_login_endpoint_blocks_after_max_failures(client, test_user, rate_limiter):
    payload = {"identifier": "test@example.com", "password": "wrong-password"}

    for _ in range(7):
        response = client.post("/auth/login", json=payload)
        assert response.status_code == 401

    response = client.post("/auth/login", json=payload)
    assert response.status_code == 429
    assert response.json()["detail"] == TOO_MANY_ATTEMPTS_DETAIL

    # Correct password is rejected too while blocked
    response = client.post("/auth/login", json={"identifier": "test@example.com", "password": "password123"})
    assert response.status_code == 429


def test_login_identifier_key_is_normalized(client, test_user, rate_limiter):
    for identifier in ["TEST@example.com", " test@EXAMPLE.com", "test@example.com"]:
        client.post("/auth/login", json={"identifier": identifier, "password": "nope-nope"})

    state = rate_limiter.local.attempts["login:identifier:test@example.com"]
    assert state.count == 3


def test_successful_login_clears_failures(client, test_user, rate_limiter):
    for _ in range(3):
        client.post("/auth/login", json={"identifier": "test@example.com", "password": "wrong-password"})

    response = client.post("/auth/login", json={"identifier": "test@example.com", "password": "password123"})
    assert response.status_code == 200
    assert "login:identifier:test@example.com" not in rate_limiter.local.attempts


def test_local_store_is_consistent_across_threads():
    store = LocalAttemptStore(WINDOW_MS, 10_000_000, BLOCK_MS)
    errors = []

    def fail_many():
        try:
            for _ in range(2000):
                store.register_failure("shared")
        except Exception as e:
            errors.append(e)

    def sweep():
        try:
            for index in range(2000):
                store.is_blocked(f"other:{index}")
        except Exception as e:
            errors.append(e)

    # Expired entries give the sweep something to delete while writers run
    clock_start = time.time() - 3600
    for index in range(5000):
        store.attempts[f"old:{index}"] = AttemptState(count=1, first_attempt_at=clock_start)

    threads = [threading.Thread(target=fail_many) for _ in range(4)]
    threads += [threading.Thread(target=sweep) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert store.attempts["shared"].count == 8000
    assert not any(key.startswith("old:") for key in store.attempts)
