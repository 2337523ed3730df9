from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from chatcore.service.rate_limit import RateLimitDecision


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``;
    clients branch on the code, never on the message text.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class MessageTooLargeError(ValidationError):
    """The user message alone does not fit the prompt budget."""


class ToolArgumentError(ValidationError):
    """Tool arguments do not match the tool's input schema."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        decision: Optional["RateLimitDecision"] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.decision = decision
        if decision is not None:
            self.detail.setdefault("retry_after", decision.reset_seconds)


class UnknownToolError(ServiceError):
    """No tool is registered under the requested name."""
    status_code = 404
    error_code = "unknown_tool"


class ToolUnavailableError(ServiceError):
    """The tool exists but its availability predicate is false."""
    status_code = 400
    error_code = "tool_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Deployment configuration is invalid; raised at startup."""
    error_code = "configuration_error"


class DuplicateToolError(ConfigurationError):
    """A tool name was registered twice."""


class ContextBudgetExceededError(ServerError):
    """System instructions alone exceed the prompt ceiling."""
    error_code = "context_budget_exceeded"


class ToolLoopExceededError(ServerError):
    """The model kept requesting tools past the configured round limit."""
    error_code = "tool_loop_exceeded"


class TurnTimeoutError(ServerError):
    """The turn ran past its wall-clock limit."""
    status_code = 504
    error_code = "turn_timeout"


class TurnCancelledError(ServiceError):
    """The client cancelled the turn or went away."""
    status_code = 499
    error_code = "cancelled"


class ProviderError(ServiceError):
    """Normalized upstream model provider failure.

    ``kind`` is one of ``rate_limited``, ``auth_failed``, ``content_filtered``,
    ``invalid_request``, ``server_error``, ``timeout``, ``network`` or
    ``unknown``. Authentication, content-filter and invalid-request failures
    are never retryable, whatever the caller passes.
    """

    status_code = 502
    error_code = "provider_error"

    NON_RETRYABLE_KINDS = frozenset({"auth_failed", "content_filtered", "invalid_request"})

    def __init__(
        self,
        message: str,
        *,
        kind: str = "unknown",
        provider: Optional[str] = None,
        retryable: bool = False,
        retry_after: Optional[float] = None,
        upstream_status: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.kind = kind
        self.provider = provider
        self.retryable = retryable and kind not in self.NON_RETRYABLE_KINDS
        self.retry_after = retry_after
        self.upstream_status = upstream_status

    def user_message(self) -> str:
        """Short, safe summary for end users."""
        return _PROVIDER_USER_MESSAGES.get(self.kind, _PROVIDER_USER_MESSAGES["unknown"])


_PROVIDER_USER_MESSAGES = {
    "rate_limited": "the model provider is busy, please retry shortly",
    "auth_failed": "the model provider rejected our credentials",
    "content_filtered": "the request was blocked by the provider's content policy",
    "invalid_request": "the model provider rejected the request",
    "server_error": "the model provider had an internal error",
    "timeout": "the model provider timed out",
    "network": "the model provider could not be reached",
    "unknown": "the model provider failed unexpectedly",
}


__all__ = [
    "ServiceError",
    "ValidationError",
    "MessageTooLargeError",
    "ToolArgumentError",
    "AuthenticationError",
    "NotFoundError",
    "RateLimitedError",
    "UnknownToolError",
    "ToolUnavailableError",
    "ServerError",
    "ConfigurationError",
    "DuplicateToolError",
    "ContextBudgetExceededError",
    "ToolLoopExceededError",
    "TurnTimeoutError",
    "TurnCancelledError",
    "ProviderError",
]
