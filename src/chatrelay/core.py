import contextlib
import logging
import time
from typing import Any, Callable, Literal, Union

import aiohttp
import httpx

from .backends import DEFAULT_TIMEOUT, GEMINI_BASE_URL, AiohttpGeminiClient, HttpxGeminiClient
from .dispatcher import GenerationDispatcher
from .env import load_credentials_from_env
from .pool import CredentialPool
from .throttle import RequestThrottle
from .types import AuthConfig, CredentialConfig, GenerationConfig, RetryConfig, ThrottleConfig


class RelayCore:
    """One pool, one throttle and one dispatcher, built once at startup.

    This is the whole surface the request-handling layer talks to:
    :meth:`allow`, :meth:`generate`, :meth:`health_snapshot` and
    :meth:`retry_after`.
    """

    def __init__(
        self,
        pool: CredentialPool,
        throttle: Union[RequestThrottle, None] = None,
        dispatcher: Union[GenerationDispatcher, None] = None,
        transport: Any = None,
    ):
        """Initialize a RelayCore.

        Raises:
            ValueError: if ``dispatcher`` is already wired to a different throttle
        """
        self._logger = logging.getLogger("chatrelay")
        self.pool = pool
        self.throttle = throttle or RequestThrottle(pool)
        self.dispatcher = dispatcher or GenerationDispatcher(pool, throttle=self.throttle)
        if self.dispatcher.throttle is None:
            self._logger.debug("wiring dispatcher to the relay throttle")
            self.dispatcher.throttle = self.throttle
        elif self.dispatcher.throttle is not self.throttle:
            raise ValueError("dispatcher is wired to a different throttle than the relay")
        self._transport = transport

    @classmethod
    def from_keys(
        cls,
        keys: list[CredentialConfig],
        backend: Literal["httpx", "aiohttp"] = "httpx",
        generation: Union[GenerationConfig, None] = None,
        retry: Union[RetryConfig, None] = None,
        throttle_config: Union[ThrottleConfig, None] = None,
        auth_config: Union[AuthConfig, None] = None,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.time,
        log_level: Union[int, None] = None,
    ) -> "RelayCore":
        """Build the core with one shared HTTP transport for every key.

        The transport is opened on the first backend call, so a failed build
        leaves nothing to close.

        Raises:
            ConfigurationError: if ``keys`` is empty
            ValueError: if ``backend`` is not "httpx" or "aiohttp"
        """
        retry = retry or RetryConfig()
        if backend == "httpx":
            transport = _LazyTransport(lambda: httpx.AsyncClient(timeout=timeout))

            def factory(cfg: CredentialConfig):
                return _SharedHttpxClient(
                    transport, cfg.token, base_url=base_url, auth_config=auth_config
                )

        elif backend == "aiohttp":
            # ClientSession binds to the running loop, so it is opened on first use.
            transport = _LazyTransport(
                lambda: aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout))
            )

            def factory(cfg: CredentialConfig):
                return _SharedSessionClient(
                    transport, cfg.token, base_url=base_url, auth_config=auth_config
                )

        else:
            raise ValueError("backend must be 'httpx' or 'aiohttp'")

        pool = CredentialPool(
            keys,
            handle_factory=factory,
            rotation_delay=retry.rotation_delay,
            clock=clock,
            log_level=log_level,
        )
        limiter = RequestThrottle(pool, throttle_config, clock=clock)
        dispatcher = GenerationDispatcher(pool, generation, retry, throttle=limiter)
        return cls(pool, limiter, dispatcher, transport=transport)

    @classmethod
    def from_env(
        cls,
        names=None,
        prefix: Union[str, None] = None,
        env_path: Union[str, None] = None,
        **kwargs,
    ) -> "RelayCore":
        """Read keys from the environment (GOOGLE_API_KEY by default) and build the core."""
        loader_keys = {
            k: kwargs.pop(k)
            for k in list(kwargs.keys())
            if k in {"to_lower_names", "split_commas", "strip_prefix"}
        }
        keys = load_credentials_from_env(
            names=names, prefix=prefix, env_path=env_path, **loader_keys
        )
        return cls.from_keys(keys, **kwargs)

    # ---------- contracts for the request-handling layer ----------

    def allow(self, client_key: str) -> bool:
        return self.throttle.allow(client_key)

    async def generate(self, prompt: str) -> str:
        return await self.dispatcher.generate(prompt)

    def health_snapshot(self) -> dict:
        return self.pool.snapshot()

    def retry_after(self) -> int:
        return self.throttle.retry_after()

    # ---------- lifecycle ----------

    async def aclose(self):
        transport, self._transport = self._transport, None
        if transport is None:
            return
        if isinstance(transport, httpx.AsyncClient):
            await transport.aclose()
        else:
            await transport.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False


class _LazyTransport:
    """An HTTP client shared by every key, opened on first request."""

    def __init__(self, opener: Callable[[], Any]):
        self._opener = opener
        self.client: Any = None
        self.opened = 0

    def _is_closed(self) -> bool:
        # httpx exposes is_closed, aiohttp exposes closed
        client = self.client
        return bool(getattr(client, "is_closed", False) or getattr(client, "closed", False))

    def get(self):
        if self.client is None or self._is_closed():
            self.client = self._opener()
            self.opened += 1
        return self.client

    async def close(self):
        client, self.client = self.client, None
        if client is None:
            return
        with contextlib.suppress(Exception):
            if isinstance(client, httpx.AsyncClient):
                await client.aclose()
            else:
                await client.close()


class _SharedHttpxClient(HttpxGeminiClient):
    def __init__(self, shared: _LazyTransport, token: str, **kwargs):
        super().__init__(token, **kwargs)
        self._shared = shared

    def _get_client(self) -> httpx.AsyncClient:
        return self._shared.get()


class _SharedSessionClient(AiohttpGeminiClient):
    def __init__(self, shared: _LazyTransport, token: str, **kwargs):
        super().__init__(token, **kwargs)
        self._shared = shared

    def _get_session(self) -> aiohttp.ClientSession:
        return self._shared.get()
