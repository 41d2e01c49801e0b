"""
HTTP trigger for the ingestion pipeline.

- POST /api/scrape accepts ``{url, config}``, answers 202 with a job id and
  runs the pipeline as a background task.
- GET /api/jobs/{job_id} reports job status and per-stage progress.
- GET /api/health and GET / are cheap and make no external calls.
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable, Optional

import pydantic
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from pastpapers.core.config import PipelineConfig, load_pipeline_config
from pastpapers.core.database import PaperDatabase
from pastpapers.core.errors import FormatError
from pastpapers.pipeline import PipelineContext, build_context, run_pipeline
from pastpapers.scrape.discover import validate_source_url

logger = logging.getLogger("pastpapers.api")

SERVICE_NAME = "pastpapers-worker"

app = FastAPI(title="Past Paper Ingestion Worker", version="0.1.0")


# ── Request / Response Models ────────────────────────────────────────


class ScrapeOptions(BaseModel):
    """Per-job overrides, accepted in camelCase or snake_case."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    start_year: Optional[int] = Field(default=None, alias="startYear", ge=2000, le=2030)
    end_year: Optional[int] = Field(default=None, alias="endYear", ge=2000, le=2030)
    generate_embeddings: Optional[bool] = Field(default=None, alias="generateEmbeddings")
    max_papers: Optional[int] = Field(default=None, alias="maxPapers", ge=1)
    concurrency: Optional[int] = Field(default=None, ge=1, le=20)


class ScrapeRequest(BaseModel):
    url: str
    config: ScrapeOptions = ScrapeOptions()


class ScrapeAccepted(BaseModel):
    job_id: str
    status: str = "accepted"
    url: str
    status_url: str
    message: str


# ── Runner ───────────────────────────────────────────────────────────


class JobRunner:
    """Base config, the job table, and how to build a context for one job."""

    def __init__(
        self,
        config: PipelineConfig,
        context_factory: Callable[[PipelineConfig], PipelineContext] = build_context,
    ):
        self.config = config
        self.context_factory = context_factory
        config.root.mkdir(parents=True, exist_ok=True)
        self.db = PaperDatabase(config.database_path)

    def run(self, job_id: str, url: str, config: PipelineConfig) -> None:
        """Background task body. Failures land in the job row, never in the response."""
        self.db.update_job(job_id, status="running", stage="discover")
        ctx = None
        try:
            ctx = self.context_factory(config)
            ctx.on_stage = lambda stage, stats: self.db.update_job(
                job_id, stage=stage, stats={stage: stats}
            )
            summary = run_pipeline(url, ctx)
        except Exception as exc:
            logger.error("Job %s failed for %s: %s", job_id, url, exc, exc_info=True)
            self.db.update_job(job_id, status="failed", error=str(exc))
            return
        finally:
            if ctx is not None:
                ctx.close()

        self.db.update_job(
            job_id,
            status="completed",
            stage="done",
            stats={"summary": summary.model_dump()},
        )
        logger.info("Job %s completed: %d papers inserted", job_id, summary.inserted)


@lru_cache(maxsize=1)
def get_runner() -> JobRunner:
    """Process-wide runner; config path from ``PASTPAPERS_CONFIG`` if set."""
    return JobRunner(load_pipeline_config(os.environ.get("PASTPAPERS_CONFIG")))


# ── Endpoints ────────────────────────────────────────────────────────


@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/")
def index():
    return {
        "service": SERVICE_NAME,
        "endpoints": {
            "POST /api/scrape": "Start ingestion: {url, config?: {startYear, endYear, "
            "generateEmbeddings, maxPapers, concurrency}}",
            "GET /api/jobs/{job_id}": "Job status and per-stage progress",
            "GET /api/health": "Health check",
        },
    }


@app.post("/api/scrape", response_model=ScrapeAccepted, status_code=202)
def scrape(
    request: ScrapeRequest,
    background_tasks: BackgroundTasks,
    runner: JobRunner = Depends(get_runner),
):
    try:
        validate_source_url(request.url)
    except FormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    overrides = request.config.model_dump(exclude_none=True)
    try:
        config = runner.config.with_overrides(**overrides)
    except pydantic.ValidationError as exc:
        detail = exc.errors(include_url=False, include_context=False)
        raise HTTPException(status_code=422, detail=detail) from exc

    job_id = str(uuid.uuid4())
    runner.db.create_job(job_id, request.url)
    background_tasks.add_task(runner.run, job_id, request.url, config)
    logger.info("Accepted job %s for %s", job_id, request.url)

    return ScrapeAccepted(
        job_id=job_id,
        url=request.url,
        status_url=f"/api/jobs/{job_id}",
        message="Scraping started in background",
    )


@app.get("/api/jobs/{job_id}")
def job_status(job_id: str, runner: JobRunner = Depends(get_runner)):
    job = runner.db.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


def serve() -> None:
    """Run the worker under uvicorn; ``PORT`` defaults to 8000."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))


if __name__ == "__main__":
    serve()
