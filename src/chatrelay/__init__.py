from .backends import (
    AiohttpGeminiClient,
    Candidate,
    GenerationResult,
    HttpxGeminiClient,
    parse_generate_response,
)
from .core import RelayCore
from .dispatcher import GenerationDispatcher
from .env import load_credentials_from_env
from .errors import (
    AllCredentialsExhausted,
    BackendError,
    BackendTransportError,
    ConfigurationError,
    EmptyResponse,
    FailureClass,
    InvalidCredential,
    NetworkError,
    QuotaExhaustedPermanent,
    RateLimited,
    RelayError,
    SafetyBlocked,
    UnknownBackendError,
    classify_failure,
)
from .policies import (
    KeyFunctionPolicy,
    LeastRecentlyUsedPolicy,
    RandomPolicy,
    SelectionPolicy,
    coerce_policy,
)
from .pool import CredentialPool
from .state import CredentialEntry
from .throttle import RequestThrottle
from .types import AuthConfig, CredentialConfig, GenerationConfig, RetryConfig, ThrottleConfig

__all__ = [
    "CredentialConfig",
    "AuthConfig",
    "GenerationConfig",
    "RetryConfig",
    "ThrottleConfig",
    "CredentialEntry",
    "CredentialPool",
    "RequestThrottle",
    "GenerationDispatcher",
    "RelayCore",
    "SelectionPolicy",
    "LeastRecentlyUsedPolicy",
    "RandomPolicy",
    "KeyFunctionPolicy",
    "coerce_policy",
    "HttpxGeminiClient",
    "AiohttpGeminiClient",
    "Candidate",
    "GenerationResult",
    "parse_generate_response",
    "load_credentials_from_env",
    "RelayError",
    "AllCredentialsExhausted",
    "RateLimited",
    "QuotaExhaustedPermanent",
    "SafetyBlocked",
    "EmptyResponse",
    "NetworkError",
    "UnknownBackendError",
    "InvalidCredential",
    "ConfigurationError",
    "BackendError",
    "BackendTransportError",
    "FailureClass",
    "classify_failure",
]
