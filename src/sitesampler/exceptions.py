"""Custom exceptions for sitesampler."""

from enum import StrEnum


class SiteSamplerError(Exception):
    """Base exception for all sitesampler errors."""


class ConfigError(SiteSamplerError):
    """Raised when configuration is invalid or cannot be loaded."""


class ErrorClassification(StrEnum):
    """How a remote browser failure should be treated by the retry loop."""

    RETRYABLE = "retryable"
    FRAME_DETACHED = "frame_detached"
    FATAL = "fatal"


class FetchError(SiteSamplerError):
    """Raised when a page cannot be rendered by the remote browser.

    Attributes:
        url: URL that was being fetched
        classification: Classification of the last error seen
        attempts: Number of attempts made before giving up
    """

    def __init__(
        self,
        message: str,
        *,
        url: str,
        classification: ErrorClassification,
        attempts: int,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.classification = classification
        self.attempts = attempts


class SitemapError(SiteSamplerError):
    """Raised when sitemap parsing fails."""


class CrawlError(SiteSamplerError):
    """Raised when a pipeline stage cannot proceed."""


class StoreError(SiteSamplerError):
    """Raised when the job store rejects an operation."""


class JobNotFoundError(StoreError):
    """Raised when a job id does not exist in the store."""


class JobStateError(SiteSamplerError):
    """Raised when a job is not in a state that allows processing."""
