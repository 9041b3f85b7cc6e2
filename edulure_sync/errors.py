"""Exceptions raised by the sync engine."""


class SyncEngineError(Exception):
    """Base class for sync engine errors."""


class ConfigurationError(SyncEngineError):
    """Invalid or missing configuration. Fatal at startup."""


class IntegrationRequestError(SyncEngineError):
    """A CRM API request failed."""

    def __init__(self, message, status_code=None, details=None, retryable=False):
        super().__init__(message)
        self.status_code = status_code
        self.details = details
        self.retryable = retryable


class IntegrationAuthError(IntegrationRequestError):
    """A CRM rejected our credentials or token exchange."""
