from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for engine exceptions.

    Each exception class carries a stable ``error_code`` that is recorded in
    run error lists and structured log lines:
    - configuration_error
    - tool_error
    - provider_error / rate_limited / provider_unavailable
    - schema_parse_error
    - cancelled
    """

    error_code: str = "server_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(ServiceError):
    """Workflow, routing, credential or guardrail misconfiguration. Never retried."""
    error_code = "configuration_error"


class ToolExecutionError(ServiceError):
    """A tool handler failed; reported back to the model as data."""
    error_code = "tool_error"


class ProviderError(ServiceError):
    """The model provider rejected the call or returned an unusable body."""
    error_code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message, detail=detail, error_code=error_code)
        self.status_code = status_code
        self.provider = provider


class RateLimitedError(ProviderError):
    """Provider returned 429."""
    error_code = "rate_limited"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    """Provider overloaded, timed out or unreachable."""
    error_code = "provider_unavailable"
    retryable = True


class SchemaParseError(ServiceError):
    """Model output did not parse as the requested JSON shape."""
    error_code = "schema_parse_error"


class RunCancelledError(ServiceError):
    """The run's cancellation token was set."""
    error_code = "cancelled"


__all__ = [
    "ServiceError",
    "ConfigurationError",
    "ToolExecutionError",
    "ProviderError",
    "RateLimitedError",
    "TransientProviderError",
    "SchemaParseError",
    "RunCancelledError",
]
