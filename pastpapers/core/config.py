"""Pipeline configuration: YAML loader, Pydantic model, and config hashing."""

import hashlib
import json
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

DEFAULT_SITE_BASE = "https://pastpapers.papacambridge.com/"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class PipelineConfig(BaseModel):
    """Every recognised option of an ingestion run, with its default.

    Out-of-range values are rejected, never clamped.
    """

    model_config = {"extra": "forbid", "frozen": True}

    # ── Discovery ────────────────────────────────────────────
    start_year: int = Field(default=2024, ge=2000, le=2030, description="Latest year scraped")
    end_year: int = Field(default=2014, ge=2000, le=2030, description="Earliest year scraped")
    site_base_url: str = DEFAULT_SITE_BASE
    link_extractor: Literal["dom", "regex"] = "dom"
    year_delay_seconds: float = Field(default=2.0, ge=0)
    user_agent: str = DEFAULT_USER_AGENT

    # ── HTTP ─────────────────────────────────────────────────
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    download_timeout_seconds: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_base_seconds: float = Field(default=1.0, ge=0)
    rate_limit_base_seconds: float = Field(default=5.0, ge=0)

    # ── Ingest ───────────────────────────────────────────────
    skip_existing: bool = True
    max_papers: Optional[int] = Field(default=None, ge=1, description="Cap per run")
    concurrency: int = Field(default=5, ge=1, le=20)
    batch_delay_seconds: float = Field(default=1.0, ge=0)
    max_file_size_mb: float = Field(default=50.0, gt=0)

    # ── Enrichment ───────────────────────────────────────────
    generate_embeddings: bool = True
    embedding_model: str = "nomic-embed-text"
    embedding_dimensions: int = Field(default=768, ge=1)
    ollama_host: Optional[str] = None
    embedding_batch_size: int = Field(default=10, ge=1)
    embedding_item_delay_seconds: float = Field(default=0.1, ge=0)
    embedding_batch_delay_seconds: float = Field(default=2.0, ge=0)
    embedding_request_interval_seconds: float = Field(default=1.0, ge=0)
    max_requests_per_minute: int = Field(default=50, ge=1)

    # ── Storage ──────────────────────────────────────────────
    data_root: str = "data"
    database_name: str = "papers.db"
    blob_prefix: str = "past-papers"
    public_base_url: Optional[str] = None
    cache_enabled: bool = True
    cache_max_size_mb: float = Field(default=500.0, gt=0)
    cache_max_age_hours: float = Field(default=24.0, gt=0)
    resume: bool = True

    @model_validator(mode="after")
    def valid_year_range(self) -> "PipelineConfig":
        if self.start_year < self.end_year:
            raise ValueError(
                f"start_year ({self.start_year}) must be >= end_year ({self.end_year})"
            )
        return self

    # ── Derived paths ────────────────────────────────────────

    @property
    def root(self) -> Path:
        return Path(self.data_root)

    @property
    def database_path(self) -> Path:
        return self.root / self.database_name

    @property
    def blob_root(self) -> Path:
        return self.root / "blobs"

    @property
    def cache_dir(self) -> Path:
        return self.root / "cache" / "pdfs"

    @property
    def progress_dir(self) -> Path:
        return self.root / "progress"

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)

    # ── Overrides & hashing ──────────────────────────────────

    def with_overrides(self, **overrides) -> "PipelineConfig":
        """Return a re-validated copy with non-None overrides applied."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return PipelineConfig.model_validate(data)

    def config_hash(self) -> str:
        """SHA-256 of the config (canonical JSON)."""
        return _canonical_hash(self.model_dump())


# ── Helpers ──────────────────────────────────────────────────────────


def _canonical_hash(data: dict) -> str:
    """Deterministic SHA-256 hash of a dict via sorted-key JSON."""
    blob = json.dumps(data, sort_keys=True, default=str).encode()
    return hashlib.sha256(blob).hexdigest()


def load_pipeline_config(path: str | Path | None = None) -> PipelineConfig:
    """Load a YAML pipeline config from disk and return a validated model."""
    if path is None:
        return PipelineConfig()
    path = Path(path)
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    return PipelineConfig.model_validate(raw)
