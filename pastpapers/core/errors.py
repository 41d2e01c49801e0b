"""Error taxonomy shared by every pipeline stage."""

import httpx


class PipelineError(Exception):
    """Base class for errors raised by the ingestion pipeline."""


class FormatError(PipelineError):
    """A URL or filename does not follow a recognised source convention."""


class ValidationError(PipelineError):
    """Schema, size or dimensionality violation. Never retried."""


class HttpError(PipelineError):
    """Non-2xx response from a remote collaborator."""

    def __init__(
        self,
        status: int,
        url: str = "",
        message: str = "",
        retry_after: float | None = None,
    ):
        self.status = status
        self.url = url
        self.retry_after = retry_after
        super().__init__(message or f"HTTP {status} for {url}")

    @property
    def retryable(self) -> bool:
        # 429 and 5xx recover on their own; other 4xx won't
        return self.status == 429 or self.status >= 500


class RateLimited(PipelineError):
    """Collaborator asked us to slow down."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class InvalidInput(PipelineError):
    """Vectorizer rejected the input text."""


class StorageConflict(PipelineError):
    """Natural key already present in the record store."""


def is_retryable(exc: BaseException) -> bool:
    """True for transient failures worth another attempt."""
    if isinstance(exc, (ValidationError, FormatError, InvalidInput, StorageConflict)):
        return False
    if isinstance(exc, RateLimited):
        return True
    if isinstance(exc, HttpError):
        return exc.retryable
    # a bad scheme or malformed request fails the same way every time
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.LocalProtocolError)):
        return False
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False
