import pytest
from conftest import ScriptedBackend

from chatrelay import (
    AllCredentialsExhausted,
    BackendError,
    BackendTransportError,
    Candidate,
    EmptyResponse,
    GenerationConfig,
    GenerationDispatcher,
    GenerationResult,
    InvalidCredential,
    NetworkError,
    QuotaExhaustedPermanent,
    RateLimited,
    RequestThrottle,
    RetryConfig,
    SafetyBlocked,
    ThrottleConfig,
    UnknownBackendError,
)

QUOTA_ZERO = BackendError(
    '[429 RESOURCE_EXHAUSTED] {"error": {"code": 429, "details": [{"metadata": '
    '{"quota_limit_value": "0"}}]}}',
    429,
    "RESOURCE_EXHAUSTED",
)
RATE_LIMIT = BackendError("rate limit exceeded for this key")


def _dispatcher(pool, sleeps, **kwargs):
    return GenerationDispatcher(pool, sleep=sleeps, **kwargs)


@pytest.mark.asyncio
async def test_success_records_usage(make_pool, clock, sleeps):
    backend = ScriptedBackend("  hello there  ")
    pool = make_pool(1, handles=[backend])
    text = await _dispatcher(pool, sleeps).generate("hi")
    assert text == "  hello there  "
    (entry,) = pool.entries
    assert entry.last_used_at == clock.now
    assert entry.successes == 1
    # pacing delay only
    assert sleeps.delays == [1.0]


@pytest.mark.asyncio
async def test_generation_parameters_are_fixed(make_pool, sleeps):
    backend = ScriptedBackend("ok")
    pool = make_pool(1, handles=[backend])
    gen = GenerationConfig(model="gemini-test", temperature=0.2, max_output_tokens=64)
    await _dispatcher(pool, sleeps, generation=gen).generate("prompt text")
    assert backend.calls == [("prompt text", gen)]


@pytest.mark.asyncio
async def test_quota_zero_then_rate_limit_exhausts_pool(make_pool, clock, sleeps):
    a = ScriptedBackend(QUOTA_ZERO)
    b = ScriptedBackend(RATE_LIMIT)
    pool = make_pool(2, handles=[a, b])
    throttle = RequestThrottle(pool, ThrottleConfig(global_cooldown=20.0), clock=clock)
    dispatcher = _dispatcher(pool, sleeps, throttle=throttle)

    with pytest.raises(AllCredentialsExhausted) as info:
        await dispatcher.generate("hi", max_retries=2)

    assert info.value.attempts == 2  # noqa: PLR2004
    assert len(a.calls) == 1
    assert len(b.calls) == 1
    first, second = pool.entries
    assert first.limited_until == clock.now + 86400.0
    assert second.limited_until == clock.now + 120.0
    # pacing, backoff 2s, pacing, backoff 4s
    assert sleeps.delays == [1.0, 2.0, 1.0, 4.0]
    assert throttle.cooldown_remaining() == 20.0  # noqa: PLR2004


@pytest.mark.asyncio
async def test_network_error_is_retried_without_marking(make_pool, sleeps):
    backend = ScriptedBackend(BackendTransportError("fetch failed: ConnectError()"), "recovered")
    pool = make_pool(1, handles=[backend])
    text = await _dispatcher(pool, sleeps).generate("hi")
    assert text == "recovered"
    assert len(backend.calls) == 2  # noqa: PLR2004
    (entry,) = pool.entries
    assert entry.limited is False
    assert entry.failures == 0
    assert sleeps.delays == [1.0, 2.0, 1.0]


@pytest.mark.asyncio
async def test_retry_moves_to_a_different_credential(make_pool, sleeps):
    a = ScriptedBackend(BackendTransportError("fetch failed"))
    b = ScriptedBackend("from b")
    pool = make_pool(2, handles=[a, b])
    assert await _dispatcher(pool, sleeps).generate("hi") == "from b"
    assert len(a.calls) == 1


@pytest.mark.asyncio
async def test_safety_block_is_terminal(make_pool, sleeps):
    backend = ScriptedBackend(GenerationResult([Candidate("SAFETY", "")]))
    pool = make_pool(1, handles=[backend])
    with pytest.raises(SafetyBlocked) as info:
        await _dispatcher(pool, sleeps).generate("hi")
    assert info.value.attempts == 1
    assert len(backend.calls) == 1
    (entry,) = pool.entries
    assert entry.limited is False
    assert entry.successes == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("reason", ["PROHIBITED_CONTENT", "BLOCKLIST", "SPII"])
async def test_other_safety_finish_reasons_are_terminal(make_pool, sleeps, reason):
    backend = ScriptedBackend(GenerationResult([Candidate(reason, "")]))
    pool = make_pool(2, handles=[backend, backend])
    with pytest.raises(SafetyBlocked):
        await _dispatcher(pool, sleeps).generate("hi")
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_blocked_prompt_is_a_safety_block(make_pool, sleeps):
    backend = ScriptedBackend(GenerationResult([], block_reason="SAFETY"))
    pool = make_pool(1, handles=[backend])
    with pytest.raises(SafetyBlocked) as info:
        await _dispatcher(pool, sleeps).generate("hi")
    assert "SAFETY" in str(info.value)
    assert pool.entries[0].limited is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "result",
    [GenerationResult([]), GenerationResult([Candidate("STOP", "   \n")])],
)
async def test_empty_response_is_terminal(make_pool, sleeps, result):
    backend = ScriptedBackend(result)
    pool = make_pool(1, handles=[backend])
    with pytest.raises(EmptyResponse):
        await _dispatcher(pool, sleeps).generate("hi")
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_unknown_error_is_terminal(make_pool, sleeps):
    backend = ScriptedBackend(BackendError("[500 INTERNAL] boom", 500, "INTERNAL"))
    pool = make_pool(2, handles=[backend, ScriptedBackend("never")])
    with pytest.raises(UnknownBackendError) as info:
        await _dispatcher(pool, sleeps).generate("hi")
    assert isinstance(info.value.__cause__, BackendError)
    assert len(backend.calls) == 1
    assert all(not e.limited for e in pool.entries)


@pytest.mark.asyncio
async def test_invalid_key_is_terminal(make_pool, sleeps):
    backend = ScriptedBackend(BackendError("[400 INVALID_ARGUMENT] reason: API_KEY_INVALID", 400))
    pool = make_pool(1, handles=[backend])
    with pytest.raises(InvalidCredential) as info:
        await _dispatcher(pool, sleeps).generate("hi")
    assert info.value.status_code == 401  # noqa: PLR2004


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (BackendTransportError("fetch failed"), NetworkError),
        (RATE_LIMIT, RateLimited),
        (QUOTA_ZERO, QuotaExhaustedPermanent),
    ],
)
async def test_retry_budget_is_never_exceeded(make_pool, clock, sleeps, error, expected):
    backend = ScriptedBackend(error)
    pool = make_pool(1, handles=[backend])
    # limits expire before the next attempt so the single key stays eligible
    retry = RetryConfig(rate_limit_cooldown=0.0, quota_zero_cooldown=0.0)

    async def _sleep(seconds):
        clock.advance(seconds + 0.01)

    dispatcher = GenerationDispatcher(pool, retry=retry, sleep=_sleep)
    with pytest.raises(expected) as info:
        await dispatcher.generate("hi", max_retries=2)
    assert info.value.attempts == 3  # noqa: PLR2004
    assert len(backend.calls) == 3  # noqa: PLR2004


@pytest.mark.asyncio
async def test_no_backend_call_without_eligible_credentials(make_pool, sleeps):
    backend = ScriptedBackend("unused")
    pool = make_pool(1, handles=[backend])
    pool.mark_limited(pool.entries[0], 60)
    with pytest.raises(AllCredentialsExhausted) as info:
        await _dispatcher(pool, sleeps).generate("hi")
    assert info.value.attempts == 0
    assert backend.calls == []
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_zero_retries(make_pool, sleeps):
    pool = make_pool(2, handles=[ScriptedBackend(RATE_LIMIT), ScriptedBackend("ok")])
    dispatcher = _dispatcher(pool, sleeps, retry=RetryConfig(max_retries=0))
    with pytest.raises(RateLimited) as info:
        await dispatcher.generate("hi")
    assert info.value.attempts == 1
