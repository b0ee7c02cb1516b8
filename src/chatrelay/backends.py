import asyncio
import contextlib
import json
from dataclasses import dataclass, field
from typing import Any, Union

import aiohttp
import httpx

from .errors import BackendError, BackendTransportError
from .types import AuthConfig, GenerationConfig

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT = 60.0


@dataclass
class Candidate:
    finish_reason: Union[str, None]
    text: str


@dataclass
class GenerationResult:
    candidates: list[Candidate] = field(default_factory=list)
    # promptFeedback.blockReason, set when the prompt itself was rejected
    block_reason: Union[str, None] = None

    @property
    def text(self) -> str:
        return self.candidates[0].text if self.candidates else ""


# ---------- wire format ----------


def build_generate_payload(prompt: str, config: GenerationConfig) -> dict[str, Any]:
    return {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {
            "temperature": config.temperature,
            "maxOutputTokens": config.max_output_tokens,
        },
    }


def parse_generate_response(data: dict[str, Any]) -> GenerationResult:
    candidates = []
    for raw in data.get("candidates") or []:
        parts = (raw.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        candidates.append(Candidate(finish_reason=raw.get("finishReason"), text=text))
    block_reason = (data.get("promptFeedback") or {}).get("blockReason")
    return GenerationResult(candidates=candidates, block_reason=block_reason)


def _error_from_response(status_code: int, body: str) -> BackendError:
    # Keep the raw body in the message: classification looks for markers in it.
    status = None
    with contextlib.suppress(ValueError, AttributeError, TypeError):
        status = json.loads(body).get("error", {}).get("status")
    return BackendError(f"[{status_code} {status or 'ERROR'}] {body}", status_code, status)


def _auth_parts(auth: AuthConfig, token: str) -> tuple[dict[str, str], dict[str, str]]:
    if auth.in_ == "query":
        return {}, {auth.query_param: token}
    return {auth.header: f"{auth.scheme} {token}".strip()}, {}


# ---------- httpx (async) ----------
class HttpxGeminiClient:
    """Backend handle bound to one key, sending through an httpx.AsyncClient.

    Pass ``client`` to share one connection pool between keys; otherwise a
    private client is created on first use and closed by :meth:`aclose`.
    """

    def __init__(
        self,
        token: str,
        client: Union[httpx.AsyncClient, None] = None,
        base_url: str = GEMINI_BASE_URL,
        auth_config: Union[AuthConfig, None] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.token = token
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.auth_config = auth_config or AuthConfig()
        self.timeout = timeout
        self._internal_client: Union[httpx.AsyncClient, None] = None

    def _get_client(self) -> httpx.AsyncClient:
        client = self.client or self._internal_client
        if client is None:
            self._internal_client = client = httpx.AsyncClient(timeout=self.timeout)
        return client

    async def invoke(self, prompt: str, config: GenerationConfig) -> GenerationResult:
        client = self._get_client()
        headers, params = _auth_parts(self.auth_config, self.token)
        headers["Content-Type"] = "application/json"
        url = f"{self.base_url}/models/{config.model}:generateContent"
        try:
            resp = await client.post(
                url, headers=headers, params=params, json=build_generate_payload(prompt, config)
            )
        except httpx.TransportError as e:
            raise BackendTransportError(f"fetch failed: {e!r}") from e
        if resp.status_code >= 400:  # noqa: PLR2004, http status code can be constant
            raise _error_from_response(resp.status_code, resp.text)
        return parse_generate_response(resp.json())

    async def aclose(self):
        if self._internal_client is not None:
            await self._internal_client.aclose()
            self._internal_client = None


# ---------- aiohttp (async) ----------
class AiohttpGeminiClient:
    """Same contract as :class:`HttpxGeminiClient` over an aiohttp.ClientSession."""

    def __init__(
        self,
        token: str,
        session: Union[aiohttp.ClientSession, None] = None,
        base_url: str = GEMINI_BASE_URL,
        auth_config: Union[AuthConfig, None] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.token = token
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.auth_config = auth_config or AuthConfig()
        self.timeout = timeout
        self._own_session: Union[aiohttp.ClientSession, None] = None

    def _get_session(self) -> aiohttp.ClientSession:
        session = self.session or self._own_session
        if session is None:
            self._own_session = session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return session

    async def invoke(self, prompt: str, config: GenerationConfig) -> GenerationResult:
        session = self._get_session()
        headers, params = _auth_parts(self.auth_config, self.token)
        url = f"{self.base_url}/models/{config.model}:generateContent"
        try:
            async with session.post(
                url, headers=headers, params=params, json=build_generate_payload(prompt, config)
            ) as resp:
                body = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BackendTransportError(f"fetch failed: {e!r}") from e
        if status >= 400:  # noqa: PLR2004, http status code can be constant
            raise _error_from_response(status, body)
        return parse_generate_response(json.loads(body))

    async def aclose(self):
        if self._own_session is not None:
            await self._own_session.close()
            self._own_session = None
