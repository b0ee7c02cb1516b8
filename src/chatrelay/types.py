from dataclasses import dataclass
from typing import Literal, Union


@dataclass
class CredentialConfig:
    name: str
    token: str


@dataclass(frozen=True)
class AuthConfig:
    # Gemini accepts the key either as a header or as ?key=...
    header: str = "x-goog-api-key"
    scheme: str = ""
    in_: Literal["header", "query"] = "header"
    query_param: str = "key"


@dataclass(frozen=True)
class GenerationConfig:
    model: str = "gemini-1.5-flash"
    temperature: float = 0.7
    max_output_tokens: int = 500


@dataclass(frozen=True)
class RetryConfig:
    # retries after the first attempt
    max_retries: int = 2
    # linear backoff: retry_delay * (attempt + 1)
    retry_delay: float = 2.0
    # pause before every backend call
    pacing_delay: float = 1.0

    # soft minimum spacing between successful uses of one key
    rotation_delay: float = 1.5

    # how long a key is sidelined per failure class
    rate_limit_cooldown: float = 120.0
    quota_zero_cooldown: float = 86400.0


@dataclass(frozen=True)
class ThrottleConfig:
    window: float = 60.0
    max_requests: int = 15
    min_interval: float = 3.0
    global_cooldown: float = 20.0
    # how often allow() sweeps idle client windows; None -> window
    sweep_interval: Union[float, None] = None
