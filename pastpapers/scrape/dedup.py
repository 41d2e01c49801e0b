"""Collapse duplicate discovery results by natural key."""

import logging

from pydantic import BaseModel

from pastpapers.scrape.models import ScrapeResult

logger = logging.getLogger(__name__)


# ── Result Model ─────────────────────────────────────────────────────


class DedupResult(BaseModel):
    """Result of deduplication within one discovery run."""

    unique_results: list[ScrapeResult]
    duplicate_pairs: list[tuple[str, str]]  # (kept URL, removed URL)
    stats: dict


# ── Public API ───────────────────────────────────────────────────────


def deduplicate(results: list[ScrapeResult]) -> DedupResult:
    """Keep the first result per natural key, preserving discovery order.

    Mirrors of one paper (a direct PDF link and a ``download_file.php``
    wrapper, or the same file on two sites) share a natural key but not a URL.
    """
    index: dict[tuple, int] = {}
    unique: list[ScrapeResult] = []
    duplicate_pairs: list[tuple[str, str]] = []

    for result in results:
        key = result.metadata.natural_key()
        if key in index:
            kept = unique[index[key]]
            duplicate_pairs.append((kept.download_url, result.download_url))
            logger.debug(
                "Duplicate %s: keeping %s, dropping %s",
                result.metadata.natural_key_string(),
                kept.download_url,
                result.download_url,
            )
            continue
        index[key] = len(unique)
        unique.append(result)

    stats = {
        "discovered_total": len(results),
        "duplicates_found": len(duplicate_pairs),
        "unique_total": len(unique),
    }

    logger.info(
        "Deduplication: %d discovered → %d unique (%d duplicates removed)",
        stats["discovered_total"],
        stats["unique_total"],
        stats["duplicates_found"],
    )

    return DedupResult(
        unique_results=unique,
        duplicate_pairs=duplicate_pairs,
        stats=stats,
    )
