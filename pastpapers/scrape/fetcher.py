"""HTTP page fetcher with bounded retry, shared by discovery and downloads."""

import logging
import time

import httpx

from pastpapers.core.config import PipelineConfig
from pastpapers.core.errors import HttpError, ValidationError, is_retryable

logger = logging.getLogger(__name__)

_PAGE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


class PageFetcher:
    """Fetch listing pages and PDF payloads over a pooled ``httpx.Client``."""

    def __init__(self, config: PipelineConfig, client: httpx.Client | None = None):
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.Client(
            headers={"User-Agent": config.user_agent},
            follow_redirects=True,
            timeout=config.request_timeout_seconds,
        )

    # ── Public API ───────────────────────────────────────────

    def fetch(self, url: str) -> str:
        """Return the decoded body of ``url``. Raises ``HttpError`` on non-2xx."""
        return self._with_retry(url, self._get_text)

    def fetch_bytes(self, url: str, max_bytes: int | None = None) -> bytes:
        """Stream a binary payload, aborting once it exceeds ``max_bytes``."""
        return self._with_retry(url, lambda u: self._get_bytes(u, max_bytes))

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "PageFetcher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Requests ─────────────────────────────────────────────

    def _get_text(self, url: str) -> str:
        response = self._client.get(url, headers=_PAGE_HEADERS)
        _raise_for_status(response, url)
        return response.text

    def _get_bytes(self, url: str, max_bytes: int | None) -> bytes:
        with self._client.stream(
            "GET", url, timeout=self.config.download_timeout_seconds
        ) as response:
            _raise_for_status(response, url)

            declared = int(response.headers.get("content-length") or 0)
            if max_bytes is not None and declared > max_bytes:
                raise ValidationError(
                    f"PDF too large: {declared / 1024 / 1024:.2f}MB "
                    f"(max {max_bytes / 1024 / 1024:.2f}MB) at {url}"
                )

            chunks: list[bytes] = []
            total = 0
            for chunk in response.iter_bytes():
                total += len(chunk)
                if max_bytes is not None and total > max_bytes:
                    raise ValidationError(
                        f"PDF too large: more than {max_bytes / 1024 / 1024:.2f}MB at {url}"
                    )
                chunks.append(chunk)
        return b"".join(chunks)

    # ── Retry ────────────────────────────────────────────────

    def _with_retry(self, url: str, func):
        max_retries = self.config.max_retries
        for attempt in range(1, max_retries + 1):
            try:
                return func(url)
            except Exception as exc:
                if not is_retryable(exc) or attempt == max_retries:
                    raise
                wait = self._backoff(exc, attempt)
                logger.warning(
                    "Request failed for %s (attempt %d/%d): %s, retrying in %.1fs",
                    url,
                    attempt,
                    max_retries,
                    exc,
                    wait,
                )
                time.sleep(wait)

    def _backoff(self, exc: Exception, attempt: int) -> float:
        if isinstance(exc, HttpError) and exc.status == 429:
            if exc.retry_after is not None:
                return exc.retry_after
            return self.config.rate_limit_base_seconds * 2 ** (attempt - 1)
        return self.config.retry_base_seconds * 2 ** (attempt - 1)


# ── Helpers ──────────────────────────────────────────────────────────


def _raise_for_status(response: httpx.Response, url: str) -> None:
    if response.is_success:
        return
    retry_after = None
    if response.status_code == 429:
        retry_after = _parse_retry_after(response.headers.get("retry-after"))
    raise HttpError(response.status_code, url, retry_after=retry_after)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
