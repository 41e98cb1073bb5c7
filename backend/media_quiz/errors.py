from typing import Any, Optional


class QuizMediaError(Exception):
    """
    Base error for everything the media pipeline can fail with.
    `reason` is the machine-readable string returned to callers.
    """

    def __init__(self, reason: str, message: Optional[str] = None, details: Any = None):
        self.reason = reason
        self.details = details
        super().__init__(message or reason)


class ValidationError(QuizMediaError):
    """Bad or missing caller input. Never retried."""


class ConfigurationError(QuizMediaError):
    """A required external collaborator is not configured."""


class PayloadTooLarge(QuizMediaError):
    """Source exceeded the configured byte ceiling."""


class UnsupportedContent(QuizMediaError):
    """Sniffed content is not acceptable for the requested channel."""


class PermanentUpstreamError(QuizMediaError):
    """Upstream answered with a non-retryable failure (4xx other than 429)."""

    def __init__(self, reason: str, message: Optional[str] = None, details: Any = None,
                 upstream_status: Optional[int] = None):
        super().__init__(reason, message, details)
        self.upstream_status = upstream_status


class TransientUpstreamError(QuizMediaError):
    """429 or 5xx from upstream, surfaced after the retry budget ran out."""

    def __init__(self, reason: str, message: Optional[str] = None, details: Any = None,
                 upstream_status: Optional[int] = None):
        super().__init__(reason, message, details)
        self.upstream_status = upstream_status


class RateLimitedError(TransientUpstreamError):
    """Upstream explicitly signalled a rate limit."""

    def __init__(self, reason: str, message: Optional[str] = None, details: Any = None):
        super().__init__(reason, message, details, upstream_status=429)


class NetworkError(TransientUpstreamError):
    """Transport-level failure with no HTTP response at all."""


def upstream_error_for_status(status: int, reason: str, details: Any = None) -> QuizMediaError:
    """Pick the taxonomy class for a final non-success upstream status."""
    if status == 429:
        return RateLimitedError(reason, details=details)
    if 500 <= status < 600:
        return TransientUpstreamError(reason, details=details, upstream_status=status)
    return PermanentUpstreamError(reason, details=details, upstream_status=status)
