"""Exception types raised across the relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigurationError(RelayError):
    """Required runtime configuration (usually a provider credential) is missing."""


class RequestValidationError(RelayError):
    """Incoming request body is malformed."""


class UpstreamError(RelayError):
    """Provider returned a non-2xx status, an error event, or was unreachable."""

    def __init__(self, message: str, *, status_code: int | None = None, provider: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider = provider

    def __str__(self) -> str:
        return self.message


class MediaProcessingError(RelayError):
    """A media content block could not be built from the supplied payload."""


class TitleGenerationError(RelayError):
    """Conversation title could not be generated."""
