"""Package specific exception hierarchy."""

from __future__ import annotations


class SwitchboardError(Exception):
    """Base exception for llm_switchboard package."""


class ConfigurationError(SwitchboardError):
    """Raised when provider or orchestration configuration is invalid."""


class AttachmentError(SwitchboardError):
    """Raised when attachments fail validation or cannot be encoded."""

    def __init__(self, message: str, failures: list[tuple[str, str]] | None = None) -> None:
        super().__init__(message)
        self.failures = failures or []


class NoProviderAvailable(SwitchboardError):
    """Raised when no configured and healthy provider can serve a request."""


class CapabilityMismatch(NoProviderAvailable):
    """Raised when no provider declares the required capabilities."""

    def __init__(self, required: list[str], provider: str | None = None) -> None:
        joined = ", ".join(sorted(set(required)))
        target = f"{provider}: " if provider else ""
        super().__init__(f"{target}no provider supports: {joined}")
        self.required = required
        self.provider = provider


class NotConfiguredError(SwitchboardError):
    """Raised when an explicitly requested provider cannot be used."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider '{provider}' is not configured.")
        self.provider = provider


class InvalidTransition(SwitchboardError):
    """Raised on an illegal request session state change."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move session from '{current}' to '{target}'.")


class ProviderError(SwitchboardError):
    """Represents provider-specific HTTP or API errors."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider}: {message}{suffix}")
        self.provider = provider
        self.status_code = status_code


class AuthError(ProviderError):
    """Credential rejected by the provider."""


class RateLimitError(ProviderError):
    """Provider asked the caller to slow down."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(provider, message, status_code)
        self.retry_after = retry_after


class NotFoundError(ProviderError):
    """Requested model or endpoint does not exist."""


class RequestTimeoutError(ProviderError):
    """Request exceeded its deadline."""


class ProtocolError(ProviderError):
    """Provider returned a response that could not be understood."""


class NetworkError(ProviderError):
    """Transport failure or transient server-side error."""


# Transient failures that may be retried while no content has been produced.
RETRYABLE_ERRORS: tuple[type[ProviderError], ...] = (
    NetworkError,
    RequestTimeoutError,
    RateLimitError,
)
