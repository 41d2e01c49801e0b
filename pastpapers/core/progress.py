"""Resumable progress marker: natural keys already handled by an interrupted run."""

import hashlib
import json
import logging
import time
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ProgressState(BaseModel):
    session_id: str
    start_time: float = Field(default_factory=time.time)
    last_update: float = Field(default_factory=time.time)
    total_papers: int = 0
    processed: list[str] = []
    completed_steps: list[str] = []
    current_step: str = "initializing"


def session_id_for(subject_url: str, config_hash: str) -> str:
    """Stable id so a re-run of the same URL and config resumes the same marker."""
    digest = hashlib.sha256(f"{subject_url}|{config_hash}".encode()).hexdigest()
    return digest[:16]


class ProgressTracker:
    """JSON-file progress marker under ``progress_dir/<session_id>.json``.

    Purely an optimisation: the natural-key check in the record store is
    what guarantees idempotence.
    """

    def __init__(self, session_id: str, progress_dir: str | Path):
        self.progress_dir = Path(progress_dir)
        self.progress_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.progress_dir / f"{session_id}.json"
        self.state = self._load() or ProgressState(session_id=session_id)
        self._seen = set(self.state.processed)

    def _load(self) -> ProgressState | None:
        if not self.path.exists():
            return None
        try:
            state = ProgressState.model_validate_json(self.path.read_text())
        except ValueError as exc:
            logger.warning("Ignoring unreadable progress file %s: %s", self.path, exc)
            return None
        logger.info(
            "Loaded progress: %d/%d papers processed",
            len(state.processed),
            state.total_papers,
        )
        return state

    def save(self) -> None:
        self.state.last_update = time.time()
        self.path.write_text(json.dumps(self.state.model_dump(), indent=2))

    # ── Updates ──────────────────────────────────────────────

    def set_total(self, total: int) -> None:
        self.state.total_papers = total
        self.save()

    def mark_processed(self, keys: list[str]) -> None:
        new = [k for k in keys if k not in self._seen]
        if not new:
            return
        self._seen.update(new)
        self.state.processed.extend(new)
        self.save()

    def is_processed(self, key: str) -> bool:
        return key in self._seen

    def set_step(self, step: str) -> None:
        self.state.current_step = step
        self.save()

    def complete_step(self, step: str) -> None:
        if step not in self.state.completed_steps:
            self.state.completed_steps.append(step)
        self.save()

    # ── Reporting ────────────────────────────────────────────

    def percentage(self) -> int:
        if self.state.total_papers == 0:
            return 0
        return round(len(self.state.processed) / self.state.total_papers * 100)

    def stats(self) -> dict:
        return {
            "processed": len(self.state.processed),
            "total": self.state.total_papers,
            "percentage": self.percentage(),
            "current_step": self.state.current_step,
            "completed_steps": list(self.state.completed_steps),
        }

    def cleanup(self) -> None:
        """Remove the marker file once a run has fully completed."""
        if self.path.exists():
            self.path.unlink()
            logger.info("Removed progress file %s", self.path)
