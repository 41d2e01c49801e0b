"""Persistence: merge storage and enrichment outcomes into record-store rows."""

import logging
import math
from typing import Optional

from pydantic import BaseModel

from pastpapers.core.database import PaperDatabase
from pastpapers.core.errors import StorageConflict, ValidationError
from pastpapers.enrich.embedder import EnrichmentOutcome
from pastpapers.scrape.models import NaturalKey, PaperIdentity
from pastpapers.storage.ingest import StorageOutcome

logger = logging.getLogger(__name__)


class PersistResult(BaseModel):
    success: bool
    metadata: PaperIdentity
    paper_id: Optional[int] = None
    skipped: bool = False
    error: Optional[str] = None


def validate_vector(vector: list, expected_dimensions: int) -> list[float]:
    """Exact length, every element a finite number. Raises ``ValidationError``."""
    if len(vector) != expected_dimensions:
        raise ValidationError(
            f"Invalid vector dimensions: expected {expected_dimensions}, got {len(vector)}"
        )
    for i, value in enumerate(vector):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"Vector element {i} is not a number: {value!r}")
        if not math.isfinite(value):
            raise ValidationError(f"Vector element {i} is not finite: {value!r}")
    return [float(v) for v in vector]


# ── Public API ───────────────────────────────────────────────────────


def persist(
    db: PaperDatabase,
    storage_outcomes: list[StorageOutcome],
    enrichment_outcomes: list[EnrichmentOutcome],
    expected_dimensions: int,
) -> list[PersistResult]:
    """Insert newly stored papers, attaching vectors where enrichment succeeded.

    Existing natural keys are skipped without a write. Failed or skipped
    storage outcomes pass through without an insert attempt.
    """
    vectors: dict[NaturalKey, EnrichmentOutcome] = {
        o.metadata.natural_key(): o for o in enrichment_outcomes if o.success and o.vector
    }

    results: list[PersistResult] = []
    for outcome in storage_outcomes:
        identity = outcome.metadata

        if not outcome.success:
            results.append(
                PersistResult(
                    success=False,
                    metadata=identity,
                    error=outcome.error or "storage failed",
                )
            )
            continue
        if outcome.skipped:
            results.append(PersistResult(success=True, metadata=identity, skipped=True))
            continue
        if not outcome.storage_url or not outcome.storage_key:
            results.append(
                PersistResult(
                    success=False, metadata=identity, error="storage outcome has no URL"
                )
            )
            continue

        enrichment = vectors.get(identity.natural_key())
        results.append(_insert_one(db, outcome, enrichment, expected_dimensions))

    inserted = sum(1 for r in results if r.success and not r.skipped)
    skipped = sum(1 for r in results if r.skipped)
    failed = sum(1 for r in results if not r.success)
    logger.info(
        "Persistence complete: %d inserted, %d skipped, %d failed", inserted, skipped, failed
    )
    return results


def backfill_vectors(
    db: PaperDatabase,
    enrichment_outcomes: list[EnrichmentOutcome],
    expected_dimensions: int,
) -> list[PersistResult]:
    """Attach vectors to rows that were persisted without one."""
    results: list[PersistResult] = []
    for outcome in enrichment_outcomes:
        identity = outcome.metadata
        if not outcome.success or outcome.vector is None:
            results.append(
                PersistResult(
                    success=False, metadata=identity, error=outcome.error or "no vector"
                )
            )
            continue

        try:
            row = db.find_by_natural_key(identity)
            if row is None:
                raise ValidationError(
                    f"Paper not found in record store: {identity.natural_key_string()}"
                )
            vector = validate_vector(outcome.vector, expected_dimensions)
            db.update_vector(row["id"], vector, outcome.vector_model or "unknown")
        except Exception as exc:
            logger.error(
                "Failed to update vector for %s: %s", identity.natural_key_string(), exc
            )
            results.append(PersistResult(success=False, metadata=identity, error=str(exc)))
            continue

        results.append(PersistResult(success=True, metadata=identity, paper_id=row["id"]))

    updated = sum(1 for r in results if r.success)
    logger.info("Vector backfill: %d updated, %d failed", updated, len(results) - updated)
    return results


# ── Helpers ──────────────────────────────────────────────────────────


def _insert_one(
    db: PaperDatabase,
    outcome: StorageOutcome,
    enrichment: EnrichmentOutcome | None,
    expected_dimensions: int,
) -> PersistResult:
    identity = outcome.metadata
    try:
        existing = db.find_by_natural_key(identity)
        if existing is not None:
            db.touch(existing["id"])
            return PersistResult(
                success=True, metadata=identity, paper_id=existing["id"], skipped=True
            )

        vector = model = None
        if enrichment is not None:
            vector = validate_vector(enrichment.vector, expected_dimensions)
            model = enrichment.vector_model

        paper_id = db.insert_paper(
            identity,
            storage_key=outcome.storage_key,
            storage_url=outcome.storage_url,
            vector=vector,
            vector_model=model,
        )
    except StorageConflict:
        # inserted concurrently between lookup and insert
        return PersistResult(success=True, metadata=identity, skipped=True)
    except Exception as exc:
        logger.error("Failed to persist %s: %s", identity.natural_key_string(), exc)
        return PersistResult(success=False, metadata=identity, error=str(exc))

    logger.debug("Inserted paper %d: %s", paper_id, identity.describe())
    return PersistResult(success=True, metadata=identity, paper_id=paper_id)
