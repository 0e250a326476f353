"""
Netatmo Crawler - Error taxonomy
Typed failures surfaced by the collector and absorbed by the run coordinator.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class CrawlerError(Exception):
    """Base class for every failure the crawler classifies."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(CrawlerError):
    """No usable station references in the configuration."""

    kind = ErrorKind.CONFIGURATION


class AuthenticationError(CrawlerError):
    """Token exchange failed, or the provider rejected the token (401/403)."""

    kind = ErrorKind.AUTHENTICATION


class TransientError(CrawlerError):
    """Timeouts, 5xx and transport failures. Eligible for one retry."""

    kind = ErrorKind.TRANSIENT


class PermanentError(CrawlerError):
    """Non-auth 4xx for a station. Not retried within the run."""

    kind = ErrorKind.PERMANENT
