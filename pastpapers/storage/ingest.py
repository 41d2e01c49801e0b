"""Dedup-and-fetch: skip known papers, download the rest, store them as blobs."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from pydantic import BaseModel

from pastpapers.core.config import PipelineConfig
from pastpapers.core.database import PaperDatabase
from pastpapers.core.errors import ValidationError
from pastpapers.scrape.codec import render_storage_key
from pastpapers.scrape.fetcher import PageFetcher
from pastpapers.scrape.models import PaperIdentity, ScrapeResult
from pastpapers.storage.blobs import LocalBlobStore
from pastpapers.storage.cache import PdfCache

logger = logging.getLogger(__name__)


# ── Outcome Model ────────────────────────────────────────────────────


class StorageOutcome(BaseModel):
    """Result of one ingest attempt. ``skipped`` means already known, not an error."""

    success: bool
    metadata: PaperIdentity
    storage_key: Optional[str] = None
    storage_url: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    reused_blob: bool = False
    size_bytes: Optional[int] = None


# ── Ingestor ─────────────────────────────────────────────────────────


class PaperIngestor:
    """Check existence by natural key, fetch, validate and store each candidate."""

    def __init__(
        self,
        db: PaperDatabase,
        blobs: LocalBlobStore,
        fetcher: PageFetcher,
        config: PipelineConfig,
        cache: PdfCache | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.db = db
        self.blobs = blobs
        self.fetcher = fetcher
        self.config = config
        self.cache = cache
        self.cancel_event = cancel_event or threading.Event()

    # ── Public API ───────────────────────────────────────────

    def ingest(
        self,
        candidates: list[ScrapeResult],
        skip_if_exists: bool | None = None,
        concurrency_limit: int | None = None,
    ) -> list[StorageOutcome]:
        """Process candidates in fixed-width batches.

        Each batch fully resolves before the next starts. Cancellation stops
        new batches; outcomes for the batches already run are returned.
        """
        if skip_if_exists is None:
            skip_if_exists = self.config.skip_existing
        width = concurrency_limit or self.config.concurrency
        if width < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {width}")

        outcomes: list[StorageOutcome] = []
        total = len(candidates)
        logger.info("Ingesting %d papers (batch width %d)", total, width)

        with ThreadPoolExecutor(max_workers=width) as pool:
            for start in range(0, total, width):
                if self.cancel_event.is_set():
                    logger.warning(
                        "Ingest cancelled after %d/%d papers", len(outcomes), total
                    )
                    break

                batch = candidates[start : start + width]
                outcomes.extend(
                    pool.map(lambda c: self.store_one(c, skip_if_exists), batch)
                )
                logger.info("Ingested %d/%d papers", len(outcomes), total)

                if start + width < total and self.config.batch_delay_seconds > 0:
                    time.sleep(self.config.batch_delay_seconds)

        stored = sum(1 for o in outcomes if o.success and not o.skipped)
        skipped = sum(1 for o in outcomes if o.skipped)
        failed = sum(1 for o in outcomes if not o.success)
        logger.info(
            "Ingest complete: %d stored, %d skipped, %d failed", stored, skipped, failed
        )
        return outcomes

    def store_one(self, candidate: ScrapeResult, skip_if_exists: bool = True) -> StorageOutcome:
        """Ingest a single paper. Never raises; failures become outcomes."""
        identity = candidate.metadata
        try:
            key = render_storage_key(identity)

            if skip_if_exists:
                existing = self.db.find_by_natural_key(identity)
                if existing is not None:
                    return StorageOutcome(
                        success=True,
                        metadata=identity,
                        storage_key=existing["storage_key"],
                        storage_url=existing["storage_url"],
                        skipped=True,
                        skip_reason="already in record store",
                    )
                if self.blobs.exists(key):
                    # stored by an interrupted run but never persisted
                    return StorageOutcome(
                        success=True,
                        metadata=identity,
                        storage_key=key,
                        storage_url=self.blobs.url_for(key),
                        reused_blob=True,
                    )

            data = self._download(candidate.download_url)
            url = self.blobs.put(
                key,
                data,
                content_type="application/pdf",
                metadata={
                    "natural_key": identity.natural_key_string(),
                    "original_url": identity.original_url,
                    "filename": identity.filename,
                },
            )
            logger.debug("Stored %s at %s", identity.describe(), key)
            return StorageOutcome(
                success=True,
                metadata=identity,
                storage_key=key,
                storage_url=url,
                size_bytes=len(data),
            )
        except Exception as exc:
            logger.error(
                "Failed to ingest %s from %s: %s",
                identity.natural_key_string(),
                candidate.download_url,
                exc,
            )
            return StorageOutcome(success=False, metadata=identity, error=str(exc))

    # ── Download ─────────────────────────────────────────────

    def _download(self, url: str) -> bytes:
        max_bytes = self.config.max_file_size_bytes

        data = self.cache.get(url) if self.cache else None
        cached = data is not None
        if cached:
            logger.debug("Cache hit for %s", url)
        else:
            data = self.fetcher.fetch_bytes(url, max_bytes=max_bytes)

        if not data:
            raise ValidationError(f"Empty PDF payload from {url}")
        if len(data) > max_bytes:
            raise ValidationError(
                f"PDF too large: {len(data) / 1024 / 1024:.2f}MB "
                f"(max {self.config.max_file_size_mb:.2f}MB) at {url}"
            )

        if self.cache and not cached:
            self.cache.set(url, data)
        return data
