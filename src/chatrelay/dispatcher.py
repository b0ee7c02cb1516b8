import asyncio
import logging
from typing import Awaitable, Callable, Union

from .backends import GenerationResult
from .errors import (
    EXHAUSTED_RETRY_ERRORS,
    AllCredentialsExhausted,
    EmptyResponse,
    FailureClass,
    InvalidCredential,
    RelayError,
    SafetyBlocked,
    UnknownBackendError,
    classify_failure,
)
from .pool import CredentialPool
from .state import CredentialEntry
from .throttle import RequestThrottle
from .types import GenerationConfig, RetryConfig

SAFETY_FINISH_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"})


class GenerationDispatcher:
    """Runs one logical "generate text" request against the credential pool.

    Each attempt picks a credential, waits the pacing delay, calls the backend
    and validates the answer. Rate-limit, quota and network failures are retried
    on another credential with linear backoff; everything else ends the request.
    """

    def __init__(
        self,
        pool: CredentialPool,
        generation: Union[GenerationConfig, None] = None,
        retry: Union[RetryConfig, None] = None,
        throttle: Union[RequestThrottle, None] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pool = pool
        self.generation = generation or GenerationConfig()
        self.retry = retry or RetryConfig()
        self.throttle = throttle
        self._sleep = sleep
        self._logger = logging.getLogger("chatrelay")

    @staticmethod
    def _validate(result: GenerationResult, attempts: int) -> str:
        if result.block_reason:
            raise SafetyBlocked(f"prompt blocked by backend: {result.block_reason}", attempts)
        if not result.candidates:
            raise EmptyResponse("no response candidates received from backend", attempts)
        if result.candidates[0].finish_reason in SAFETY_FINISH_REASONS:
            raise SafetyBlocked("response blocked by safety filters", attempts)
        text = result.text
        if not text or not text.strip():
            raise EmptyResponse("empty response received from backend", attempts)
        return text

    def _limit_for(self, failure: FailureClass) -> Union[float, None]:
        if failure is FailureClass.QUOTA_ZERO:
            return self.retry.quota_zero_cooldown
        if failure is FailureClass.RATE_LIMITED:
            return self.retry.rate_limit_cooldown
        return None

    async def generate(self, prompt: str, max_retries: Union[int, None] = None) -> str:
        if max_retries is None:
            max_retries = self.retry.max_retries
        attempt = 0
        previous: Union[CredentialEntry, None] = None
        while True:
            entry = self.pool.acquire(excluding=previous)
            if entry is None:
                if self.throttle is not None:
                    self.throttle.trigger_global_cooldown()
                self._logger.error(f"all credentials limited after {attempt} attempt(s)")
                raise AllCredentialsExhausted(
                    "all backend credentials are currently rate limited", attempt
                )

            self._logger.info(
                f"attempt {attempt + 1}/{max_retries + 1} using key={entry.name} "
                f"index={entry.index}/{len(self.pool)}"
            )
            await self._sleep(self.retry.pacing_delay)
            try:
                result = await entry.handle.invoke(prompt, self.generation)
                text = self._validate(result, attempt + 1)
            except RelayError as e:
                self._logger.warning(f"key={entry.name} returned unusable response: {e}")
                raise
            except Exception as e:
                failure = classify_failure(e)
                self._logger.warning(
                    f"attempt {attempt + 1} failed on key={entry.name} ({failure.value}): {e}"
                )
                duration = self._limit_for(failure)
                if duration is not None:
                    self.pool.mark_limited(entry, duration)
                if not failure.retryable:
                    error_cls = (
                        InvalidCredential
                        if failure is FailureClass.INVALID_CREDENTIAL
                        else UnknownBackendError
                    )
                    raise error_cls(
                        f"backend request failed after {attempt + 1} attempt(s): {e}", attempt + 1
                    ) from e
                if attempt >= max_retries:
                    self._logger.error(f"giving up after {attempt + 1} attempt(s)")
                    raise EXHAUSTED_RETRY_ERRORS[failure](
                        f"backend request failed after {attempt + 1} attempt(s): {e}", attempt + 1
                    ) from e
                delay = self.retry.retry_delay * (attempt + 1)
                self._logger.info(f"retrying with a different key in {delay:.1f}s")
                await self._sleep(delay)
                attempt += 1
                previous = entry
                continue

            self.pool.record_success(entry)
            self._logger.info(f"successful response from key={entry.name} index={entry.index}")
            return text
