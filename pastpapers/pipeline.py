"""Pipeline context and stage sequencing: discover → dedup → ingest → enrich → persist."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx
from pydantic import BaseModel

from pastpapers.core.config import PipelineConfig
from pastpapers.core.database import PaperDatabase
from pastpapers.core.progress import ProgressTracker, session_id_for
from pastpapers.enrich.embedder import (
    EnrichmentOutcome,
    OllamaVectorizer,
    PaperEnricher,
    Vectorizer,
)
from pastpapers.scrape.codec import filename_from_url
from pastpapers.scrape.dedup import deduplicate
from pastpapers.scrape.discover import discoverer_for
from pastpapers.scrape.fetcher import PageFetcher
from pastpapers.scrape.models import PaperIdentity, ScrapeResult
from pastpapers.storage.blobs import LocalBlobStore
from pastpapers.storage.cache import PdfCache
from pastpapers.storage.ingest import PaperIngestor, StorageOutcome
from pastpapers.storage.persist import PersistResult, backfill_vectors, persist

logger = logging.getLogger(__name__)

STAGES = ("discover", "dedup", "ingest", "enrich", "persist")


# ── Context ──────────────────────────────────────────────────────────


@dataclass
class PipelineContext:
    """Collaborators for one process, built once and passed to every run."""

    config: PipelineConfig
    db: PaperDatabase
    blobs: LocalBlobStore
    fetcher: PageFetcher
    vectorizer: Optional[Vectorizer] = None
    cache: Optional[PdfCache] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    on_stage: Optional[Callable[[str, dict], None]] = None
    logger: logging.Logger = field(default_factory=lambda: logger)

    def report(self, stage: str, stats: dict) -> None:
        if self.on_stage is not None:
            self.on_stage(stage, stats)

    def close(self) -> None:
        self.fetcher.close()
        self.db.close()


def build_context(
    config: PipelineConfig,
    vectorizer: Vectorizer | None = None,
    client: httpx.Client | None = None,
) -> PipelineContext:
    """Open the record store, blob store, fetcher and (optionally) cache and vectorizer."""
    config.root.mkdir(parents=True, exist_ok=True)

    if vectorizer is None and config.generate_embeddings:
        vectorizer = OllamaVectorizer(config.embedding_model, host=config.ollama_host)

    cache = None
    if config.cache_enabled:
        cache = PdfCache(
            config.cache_dir,
            max_size_mb=config.cache_max_size_mb,
            max_age_hours=config.cache_max_age_hours,
        )

    return PipelineContext(
        config=config,
        db=PaperDatabase(config.database_path),
        blobs=LocalBlobStore(config.blob_root, config.blob_prefix, config.public_base_url),
        fetcher=PageFetcher(config, client=client),
        vectorizer=vectorizer,
        cache=cache,
    )


# ── Summary ──────────────────────────────────────────────────────────


class PipelineSummary(BaseModel):
    subject_url: str
    run_id: int
    status: str = "completed"
    discovered: int = 0
    duplicates: int = 0
    resumed: int = 0
    stored: int = 0
    skipped: int = 0
    failed: int = 0
    embedded: int = 0
    embed_failed: int = 0
    inserted: int = 0
    persist_failed: int = 0
    elapsed_seconds: float = 0.0
    stages: dict[str, dict] = {}


# ── Pipeline ─────────────────────────────────────────────────────────


def run_pipeline(subject_url: str, ctx: PipelineContext) -> PipelineSummary:
    """Run every stage for one subject URL.

    Root-discovery and configuration errors propagate; per-paper failures
    are counted in the summary.
    """
    t_start = time.time()
    config = ctx.config

    run_id = ctx.db.start_run(subject_url, config.config_hash())
    summary = PipelineSummary(subject_url=subject_url, run_id=run_id)
    progress = None
    if config.resume:
        progress = ProgressTracker(
            session_id_for(subject_url, config.config_hash()), config.progress_dir
        )

    try:
        discovered = _stage_discover(subject_url, ctx, summary)
        candidates = _stage_dedup(discovered, ctx, summary, progress)
        stored = _stage_ingest(candidates, ctx, summary, progress)
        enrichment = _stage_enrich(stored, ctx, summary, progress)
        _stage_persist(stored, enrichment, ctx, summary, progress)

        if ctx.cancel_event.is_set():
            summary.status = "cancelled"
        elif progress is not None and summary.failed == 0 and summary.persist_failed == 0:
            progress.cleanup()

    except Exception as exc:
        ctx.logger.error("Pipeline failed for %s: %s", subject_url, exc, exc_info=True)
        summary.status = "failed"
        summary.elapsed_seconds = time.time() - t_start
        ctx.db.finish_run(run_id, "failed", summary.model_dump())
        raise

    summary.elapsed_seconds = time.time() - t_start
    ctx.db.finish_run(run_id, summary.status, summary.model_dump())

    ctx.logger.info("=" * 60)
    ctx.logger.info("PIPELINE %s in %.1fs", summary.status.upper(), summary.elapsed_seconds)
    ctx.logger.info(
        "Discovered %d, stored %d, skipped %d, failed %d, embedded %d, inserted %d",
        summary.discovered,
        summary.stored,
        summary.skipped,
        summary.failed,
        summary.embedded,
        summary.inserted,
    )
    return summary


def run_backfill(ctx: PipelineContext) -> list[PersistResult]:
    """Vectorize rows that were persisted without a vector."""
    if ctx.vectorizer is None:
        raise ValueError("Vector backfill needs a vectorizer (embeddings are disabled)")

    rows = ctx.db.papers_missing_vectors()
    ctx.logger.info("Backfilling vectors for %d papers", len(rows))
    if not rows:
        return []

    enricher = PaperEnricher(ctx.vectorizer, ctx.config, cancel_event=ctx.cancel_event)
    outcomes = enricher.enrich([identity_from_row(r) for r in rows])
    return backfill_vectors(ctx.db, outcomes, ctx.config.embedding_dimensions)


def identity_from_row(row: dict) -> PaperIdentity:
    """Rebuild a PaperIdentity from a stored ``past_papers`` row."""
    url = row.get("original_url") or row["storage_url"]
    return PaperIdentity(
        exam_board=row["exam_board"],
        level=row["level"],
        subject=row["subject"],
        subject_code=row["subject_code"],
        year=row["year"],
        session=row["session"],
        paper_number=row["paper_number"],
        paper_type=row["paper_type"],
        original_url=url,
        download_url=url,
        filename=filename_from_url(url),
    )


# ── Stage Implementations ────────────────────────────────────────────


def _banner(ctx: PipelineContext, stage: str) -> float:
    ctx.logger.info("=" * 60)
    ctx.logger.info("STAGE: %s", stage.upper())
    return time.time()


def _stage_discover(
    subject_url: str, ctx: PipelineContext, summary: PipelineSummary
) -> list[ScrapeResult]:
    t = _banner(ctx, "discover")

    discoverer = discoverer_for(subject_url, ctx.fetcher, ctx.config)
    discovered = discoverer.discover(subject_url)
    summary.discovered = len(discovered)

    elapsed = time.time() - t
    ctx.logger.info("Discovery complete in %.1fs: %d papers", elapsed, summary.discovered)
    summary.stages["discover"] = {"discovered": summary.discovered, "elapsed": elapsed}
    ctx.report("discover", summary.stages["discover"])
    return discovered


def _stage_dedup(
    discovered: list[ScrapeResult],
    ctx: PipelineContext,
    summary: PipelineSummary,
    progress: ProgressTracker | None,
) -> list[ScrapeResult]:
    t = _banner(ctx, "dedup")

    dedup = deduplicate(discovered)
    candidates = dedup.unique_results
    summary.duplicates = dedup.stats["duplicates_found"]

    if progress is not None:
        before = len(candidates)
        candidates = [
            c for c in candidates if not progress.is_processed(c.metadata.natural_key_string())
        ]
        summary.resumed = before - len(candidates)
        if summary.resumed:
            ctx.logger.info("Resuming: %d papers already processed", summary.resumed)

    max_papers = ctx.config.max_papers
    if max_papers is not None and len(candidates) > max_papers:
        ctx.logger.info("Limiting to first %d of %d papers", max_papers, len(candidates))
        candidates = candidates[:max_papers]

    if progress is not None:
        progress.set_total(len(candidates) + summary.resumed)

    summary.stages["dedup"] = {
        **dedup.stats,
        "resumed": summary.resumed,
        "queued": len(candidates),
        "elapsed": time.time() - t,
    }
    ctx.report("dedup", summary.stages["dedup"])
    return candidates


def _stage_ingest(
    candidates: list[ScrapeResult],
    ctx: PipelineContext,
    summary: PipelineSummary,
    progress: ProgressTracker | None,
) -> list[StorageOutcome]:
    t = _banner(ctx, "ingest")
    if progress is not None:
        progress.set_step("ingest")

    ingestor = PaperIngestor(
        ctx.db,
        ctx.blobs,
        ctx.fetcher,
        ctx.config,
        cache=ctx.cache,
        cancel_event=ctx.cancel_event,
    )
    outcomes = ingestor.ingest(candidates)
    summary.stored = sum(1 for o in outcomes if o.success and not o.skipped)
    summary.skipped = sum(1 for o in outcomes if o.skipped)
    summary.failed = sum(1 for o in outcomes if not o.success)

    summary.stages["ingest"] = {
        "stored": summary.stored,
        "skipped": summary.skipped,
        "failed": summary.failed,
        "elapsed": time.time() - t,
    }
    ctx.report("ingest", summary.stages["ingest"])
    return outcomes


def _stage_enrich(
    stored: list[StorageOutcome],
    ctx: PipelineContext,
    summary: PipelineSummary,
    progress: ProgressTracker | None,
) -> list[EnrichmentOutcome]:
    fresh = [o.metadata for o in stored if o.success and not o.skipped]
    if not ctx.config.generate_embeddings or ctx.vectorizer is None or not fresh:
        ctx.logger.info("Skipping enrichment (disabled or nothing new)")
        summary.stages["enrich"] = {"embedded": 0, "failed": 0, "skipped_stage": True}
        ctx.report("enrich", summary.stages["enrich"])
        return []

    t = _banner(ctx, "enrich")
    if progress is not None:
        progress.set_step("enrich")

    enricher = PaperEnricher(ctx.vectorizer, ctx.config, cancel_event=ctx.cancel_event)
    outcomes = enricher.enrich(
        fresh,
        on_progress=lambda done, total: ctx.report("enrich", {"embedded": done, "total": total}),
    )
    summary.embedded = sum(1 for o in outcomes if o.success)
    summary.embed_failed = sum(1 for o in outcomes if not o.success)

    summary.stages["enrich"] = {
        "embedded": summary.embedded,
        "failed": summary.embed_failed,
        "elapsed": time.time() - t,
    }
    ctx.report("enrich", summary.stages["enrich"])
    return outcomes


def _stage_persist(
    stored: list[StorageOutcome],
    enrichment: list[EnrichmentOutcome],
    ctx: PipelineContext,
    summary: PipelineSummary,
    progress: ProgressTracker | None,
) -> None:
    t = _banner(ctx, "persist")
    if progress is not None:
        progress.set_step("persist")

    results = persist(ctx.db, stored, enrichment, ctx.config.embedding_dimensions)
    summary.inserted = sum(1 for r in results if r.success and not r.skipped)
    # storage failures pass through persist as failures too
    summary.persist_failed = sum(1 for r in results if not r.success) - summary.failed

    if progress is not None:
        progress.mark_processed([r.metadata.natural_key_string() for r in results if r.success])
        progress.complete_step("persist")

    summary.stages["persist"] = {
        "inserted": summary.inserted,
        "skipped": sum(1 for r in results if r.skipped),
        "failed": summary.persist_failed,
        "elapsed": time.time() - t,
    }
    ctx.report("persist", summary.stages["persist"])
