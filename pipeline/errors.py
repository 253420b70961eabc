"""
Error types shared by the ingestion pipeline, the store and analytics.

Configuration and validation errors always reach the caller. Remote and
persistence errors for a single entity are turned into skip records by the
importer; country-level failures carry the country code and stage.
"""

from typing import Optional


class AirQualityError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(AirQualityError):
    """Missing or invalid credentials, connection string or config file."""


class ValidationError(AirQualityError):
    """A request argument is out of range or unknown."""


class RemoteError(AirQualityError):
    """A call to the remote measurement API failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class TransientRemoteError(RemoteError):
    """Timeouts, transport errors, HTTP 5xx and 429. Worth retrying."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: str = "",
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, url=url)
        self.retry_after = retry_after


class PermanentRemoteError(RemoteError):
    """HTTP 4xx (other than 429) or an undecodable response body."""


class RetryExhaustedError(AirQualityError):
    """Every attempt of a retried call failed with a transient error."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class PersistenceError(AirQualityError):
    """A database operation failed (other than an ignored duplicate)."""


class CountryImportError(AirQualityError):
    """The import of one country could not continue."""

    def __init__(self, country_code: str, stage: str, cause: Exception):
        super().__init__(f"{country_code}: {stage} stage failed: {cause}")
        self.country_code = country_code
        self.stage = stage
        self.cause = cause
