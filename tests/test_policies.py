from __future__ import annotations

import pytest

from ratekeeper.policies import (
    RATE_LIMITS,
    UnknownEndpoint,
    apply_rate_limit,
    bucket_key,
    check_rate_limit,
    policy_for,
)


def test_policy_table_defines_expected_endpoints():
    assert set(RATE_LIMITS) == {
        "login",
        "register",
        "passwordReset",
        "api",
        "search",
        "upload",
        "vote",
        "comment",
        "report",
        "download",
    }
    assert (RATE_LIMITS["login"].limit, RATE_LIMITS["login"].window_ms) == (10, 60_000)
    assert (RATE_LIMITS["register"].limit, RATE_LIMITS["register"].window_ms) == (5, 600_000)
    assert (RATE_LIMITS["passwordReset"].limit, RATE_LIMITS["passwordReset"].window_ms) == (3, 3_600_000)
    assert (RATE_LIMITS["report"].limit, RATE_LIMITS["report"].window_ms) == (10, 3_600_000)


def test_auth_endpoints_are_stricter_than_general_api():
    assert RATE_LIMITS["login"].limit < RATE_LIMITS["api"].limit
    register, login = RATE_LIMITS["register"], RATE_LIMITS["login"]
    assert register.limit * login.window_ms < login.limit * register.window_ms


def test_unknown_endpoint_fails_fast(limiter):
    with pytest.raises(UnknownEndpoint):
        policy_for("logn")
    with pytest.raises(KeyError):
        apply_rate_limit(limiter, "1.2.3.4", "logn")  # type: ignore[arg-type]
    assert limiter.stats().bucket_count == 0


def test_apply_rate_limit_uses_endpoint_policy(limiter, store):
    result = apply_rate_limit(limiter, "client123", "login")
    assert result.allowed is True
    assert result.remaining == RATE_LIMITS["login"].limit - 1

    bucket = store.peek("login:client123")
    assert bucket is not None
    assert bucket.window_ms == RATE_LIMITS["login"].window_ms


def test_buckets_are_per_client_and_endpoint(limiter):
    apply_rate_limit(limiter, "client1", "login")
    apply_rate_limit(limiter, "client2", "login")
    apply_rate_limit(limiter, "client1", "register")
    assert limiter.stats().bucket_count == 3
    assert bucket_key("register", "client1") == "register:client1"


def test_password_reset_exhausts_after_three(limiter):
    results = [apply_rate_limit(limiter, "9.9.9.9", "passwordReset") for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert results[-1].retry_after_seconds == 3600


def test_check_rate_limit_does_not_consume(limiter):
    apply_rate_limit(limiter, "c", "vote")
    for _ in range(3):
        assert check_rate_limit(limiter, "c", "vote").remaining == RATE_LIMITS["vote"].limit - 1
