"""Typed error taxonomy for the AI orchestration layer.

Every adapter failure surfaces as an AIError subclass, so callers can tell a
rejected credential from a quota hit from a transport failure without
inspecting messages.
"""

from __future__ import annotations

from app.gateway.types import AIProvider


class AIError(Exception):
    """Base class for all orchestration-layer errors."""

    code = "API_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        provider: AIProvider | None = None,
        code: str | None = None,
        retryable: bool | None = None,
        status_code: int = 0,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.status_code = status_code

    def __str__(self) -> str:
        if self.provider is None:
            return self.message
        return f"[{self.provider.value}] {self.message}"

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "provider": self.provider.value if self.provider else None,
            "retryable": self.retryable,
        }


class AuthenticationError(AIError):
    """Credential missing or rejected (401/403). Never retried on the same adapter."""

    code = "AUTH_ERROR"


class RateLimitError(AIError):
    """Quota exceeded (429). Retried on a different adapter until reset."""

    code = "RATE_LIMIT"
    retryable = True

    def __init__(
        self,
        message: str,
        provider: AIProvider | None = None,
        retry_after: float = 60.0,
        reset_time: float | None = None,
        status_code: int = 429,
    ):
        super().__init__(message, provider, status_code=status_code)
        self.retry_after = retry_after
        self.reset_time = reset_time


class NetworkError(AIError):
    """Transport failure or 5xx from the vendor."""

    code = "NETWORK_ERROR"
    retryable = True


class ProviderTimeoutError(NetworkError):
    code = "TIMEOUT"

    def __init__(self, provider: AIProvider | None, timeout: float):
        super().__init__(f"Request timed out after {timeout:g}s", provider)
        self.timeout = timeout


class ModelNotAvailableError(AIError):
    code = "MODEL_NOT_AVAILABLE"

    def __init__(self, model: str, provider: AIProvider | None = None, status_code: int = 0):
        super().__init__(f"Model {model} is not available", provider, status_code=status_code)
        self.model = model


class UnsupportedProviderError(AIError):
    code = "UNSUPPORTED_PROVIDER"

    def __init__(self, provider_name: str):
        super().__init__(f"Unsupported provider: {provider_name}")
        self.provider_name = provider_name


class CircuitOpenError(AIError):
    """Raised when a breaker fast-fails a call without touching the network."""

    code = "CIRCUIT_BREAKER_OPEN"
    retryable = True

    def __init__(self, provider: AIProvider):
        super().__init__("Circuit breaker is open", provider)


class AllProvidersFailedError(AIError):
    """Every viable candidate was skipped or failed for one logical request."""

    code = "ALL_ATTEMPTS_FAILED"

    def __init__(
        self,
        attempts: int,
        providers_attempted: list[AIProvider],
        last_error: AIError | None,
    ):
        cause = str(last_error) if last_error else "no providers available"
        super().__init__(f"All providers failed after {attempts} attempt(s); last error: {cause}")
        self.attempts = attempts
        self.providers_attempted = list(providers_attempted)
        self.last_error = last_error

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["attempts"] = self.attempts
        data["providers_attempted"] = [p.value for p in self.providers_attempted]
        data["last_error"] = self.last_error.to_dict() if self.last_error else None
        return data
