"""Metadata embeddings via Ollama, with request pacing and per-item retry."""

import logging
import math
import threading
import time
from collections import deque
from typing import Callable, Optional, Protocol

import ollama
from pydantic import BaseModel

from pastpapers.core.config import PipelineConfig
from pastpapers.core.errors import (
    HttpError,
    InvalidInput,
    RateLimited,
    ValidationError,
    is_retryable,
)
from pastpapers.scrape.models import INDEXABLE_TYPES, PaperIdentity

logger = logging.getLogger(__name__)


# ── Vectorizer ───────────────────────────────────────────────────────


class Vectorizer(Protocol):
    model: str

    def embed(self, text: str) -> list[float]: ...


class OllamaVectorizer:
    """``text -> vector`` through a local Ollama server."""

    def __init__(self, model: str = "nomic-embed-text", host: str | None = None):
        self.model = model
        self._client = ollama.Client(host=host)

    def embed(self, text: str) -> list[float]:
        try:
            response = self._client.embed(model=self.model, input=text)
        except ollama.ResponseError as exc:
            if exc.status_code == 429:
                raise RateLimited(f"Ollama rate limited: {exc.error}") from exc
            if exc.status_code == 400:
                raise InvalidInput(f"Ollama rejected input: {exc.error}") from exc
            raise HttpError(exc.status_code, message=f"Ollama error: {exc.error}") from exc

        embeddings = response.embeddings
        if not embeddings:
            raise ValidationError("No embedding data returned from Ollama")
        return list(embeddings[0])


# ── Search Document ──────────────────────────────────────────────────


def build_search_document(identity: PaperIdentity) -> str:
    """Metadata-only text that gets vectorized; the PDF is never opened."""
    is_qp = identity.paper_type == "qp"
    subject = identity.subject.lower()
    parts = [
        f"Subject: {identity.subject}",
        f"Exam Board: {identity.exam_board}",
        f"Level: {identity.level}",
        f"Subject Code: {identity.subject_code}",
        f"Year: {identity.year}",
        f"Session: {identity.session}",
        f"Paper Number: {identity.paper_number}",
        f"Paper Type: {'Question Paper' if is_qp else 'Mark Scheme'}",
        f"{identity.exam_board} {identity.level} {identity.subject}",
        f"{identity.year} {identity.session} examination",
        f"Paper {identity.paper_number} {'questions' if is_qp else 'marking scheme'}",
    ]

    # synonyms
    if "math" in subject:
        parts.append("mathematics maths")
    if "phys" in subject:
        parts.append("physics science")
    if "chem" in subject:
        parts.append("chemistry science")
    if "bio" in subject:
        parts.append("biology science")
    session = identity.session.lower()
    if "may" in session:
        parts.append("summer")
    if "oct" in session or "feb" in session:
        parts.append("winter")
    if "igcse" in identity.level.lower():
        parts.append("GCSE O-Level")
    if identity.level.lower() in {"a-level", "as", "a level"}:
        parts.append("Advanced Level")

    return " ".join(parts)


# ── Rate Limiting ────────────────────────────────────────────────────


class RequestWindow:
    """Minimum spacing between requests plus a rolling 60 s request cap."""

    def __init__(
        self,
        max_per_minute: int,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_per_minute = max_per_minute
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._times: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        """Block until another request may be issued, then record it."""
        with self._lock:
            now = self._clock()
            while self._times and self._times[0] <= now - 60.0:
                self._times.popleft()

            wait = 0.0
            if len(self._times) >= self.max_per_minute:
                wait = 60.0 - (now - self._times[0]) + 0.1
                logger.info("Request cap reached, waiting %.1fs", wait)
            if self._times and self.min_interval > 0:
                wait = max(wait, self.min_interval - (now - self._times[-1]))

            if wait > 0:
                self._sleep(wait)
            self._times.append(self._clock())

    def __len__(self) -> int:
        return len(self._times)


# ── Enrichment ───────────────────────────────────────────────────────


class EnrichmentOutcome(BaseModel):
    success: bool
    metadata: PaperIdentity
    vector: Optional[list[float]] = None
    vector_model: Optional[str] = None
    document: Optional[str] = None
    error: Optional[str] = None


class PaperEnricher:
    """Vectorize question papers and mark schemes one request at a time."""

    def __init__(
        self,
        vectorizer: Vectorizer,
        config: PipelineConfig,
        window: RequestWindow | None = None,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: threading.Event | None = None,
    ):
        self.vectorizer = vectorizer
        self.config = config
        self.expected_dimensions = config.embedding_dimensions
        self.window = window or RequestWindow(
            config.max_requests_per_minute,
            config.embedding_request_interval_seconds,
            sleep=sleep,
        )
        self._sleep = sleep
        self.cancel_event = cancel_event or threading.Event()

    def enrich(
        self,
        items: list[PaperIdentity],
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[EnrichmentOutcome]:
        """One outcome per ``qp``/``ms`` item; other types never reach the vectorizer."""
        eligible = [i for i in items if i.paper_type in INDEXABLE_TYPES]
        if len(eligible) < len(items):
            logger.info(
                "Skipping %d papers not indexed for search (types other than qp/ms)",
                len(items) - len(eligible),
            )

        batch_size = self.config.embedding_batch_size
        total = len(eligible)
        outcomes: list[EnrichmentOutcome] = []
        logger.info("Generating vectors for %d papers", total)

        for start in range(0, total, batch_size):
            if self.cancel_event.is_set():
                logger.warning("Enrichment cancelled after %d/%d papers", len(outcomes), total)
                break

            logger.info(
                "Processing batch %d/%d",
                start // batch_size + 1,
                math.ceil(total / batch_size),
            )
            for identity in eligible[start : start + batch_size]:
                outcomes.append(self.enrich_one(identity))
                if on_progress:
                    on_progress(len(outcomes), total)
                if self.config.embedding_item_delay_seconds > 0:
                    self._sleep(self.config.embedding_item_delay_seconds)

            if start + batch_size < total and self.config.embedding_batch_delay_seconds > 0:
                self._sleep(self.config.embedding_batch_delay_seconds)

        succeeded = sum(1 for o in outcomes if o.success)
        logger.info(
            "Enrichment complete: %d successful, %d failed",
            succeeded,
            len(outcomes) - succeeded,
        )
        return outcomes

    def enrich_one(self, identity: PaperIdentity) -> EnrichmentOutcome:
        document = build_search_document(identity)
        try:
            vector = self._embed_with_retry(document)
            if len(vector) != self.expected_dimensions:
                raise ValidationError(
                    f"Invalid vector dimensions: expected {self.expected_dimensions}, "
                    f"got {len(vector)}"
                )
        except Exception as exc:
            logger.error(
                "Failed to vectorize %s: %s", identity.natural_key_string(), exc
            )
            return EnrichmentOutcome(
                success=False, metadata=identity, document=document, error=str(exc)
            )
        return EnrichmentOutcome(
            success=True,
            metadata=identity,
            vector=vector,
            vector_model=self.vectorizer.model,
            document=document,
        )

    def _embed_with_retry(self, text: str) -> list[float]:
        max_retries = self.config.max_retries
        for attempt in range(1, max_retries + 1):
            self.window.acquire()
            try:
                return self.vectorizer.embed(text)
            except Exception as exc:
                if not is_retryable(exc) or attempt == max_retries:
                    raise
                if isinstance(exc, RateLimited) or (
                    isinstance(exc, HttpError) and exc.status == 429
                ):
                    wait = self.config.rate_limit_base_seconds * 2 ** (attempt - 1)
                else:
                    wait = self.config.retry_base_seconds * attempt
                logger.warning(
                    "Vectorizer call failed (attempt %d/%d): %s, retrying in %.1fs",
                    attempt,
                    max_retries,
                    exc,
                    wait,
                )
                self._sleep(wait)
