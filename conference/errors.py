from __future__ import annotations


class ConferenceError(Exception):
    """Base class for every error raised by the conference engine."""


class ConfigurationError(ConferenceError):
    """Setup rejected before any network call (topic, roster, credentials)."""


class ConnectivityError(ConferenceError):
    """Pre-flight connection test failed for a character."""


class ProviderConfigError(ConfigurationError):
    """A provider binding cannot be turned into a request."""


class ProviderError(ConferenceError):
    """The provider answered with an error or an unreadable body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(ConferenceError):
    """Writing to the key-value store failed."""


class InvalidTransition(ConferenceError, ValueError):
    """A character status change that the status machine does not allow."""
