"""SQLite record store: past-paper rows keyed by natural key, plus run and job tracking."""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from pastpapers.core.errors import StorageConflict
from pastpapers.scrape.models import NaturalKey, PaperIdentity

logger = logging.getLogger(__name__)

RUN_STATUSES = ("running", "completed", "failed", "cancelled")
JOB_STATUSES = ("queued", "running", "completed", "failed")

# ── Schema DDL ───────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS past_papers (
    id              INTEGER PRIMARY KEY,
    natural_key     TEXT NOT NULL UNIQUE,
    exam_board      TEXT NOT NULL,
    subject         TEXT NOT NULL,
    subject_code    TEXT NOT NULL,
    level           TEXT NOT NULL,
    year            INTEGER NOT NULL,
    session         TEXT NOT NULL,
    paper_number    TEXT NOT NULL,
    paper_type      TEXT NOT NULL DEFAULT 'qp'
                    CHECK (paper_type IN ('qp', 'ms', 'gt', 'er', 'ci')),
    storage_key     TEXT NOT NULL,
    storage_url     TEXT NOT NULL,
    original_url    TEXT,
    vector          TEXT,          -- JSON array of floats
    vector_model    TEXT,
    created_at      TEXT NOT NULL,
    last_updated    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_papers_subject ON past_papers(subject_code, year);
CREATE INDEX IF NOT EXISTS idx_papers_type    ON past_papers(paper_type);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    id              INTEGER PRIMARY KEY,
    subject_url     TEXT NOT NULL,
    config_hash     TEXT NOT NULL,
    started_at      TEXT NOT NULL,
    completed_at    TEXT,
    status          TEXT NOT NULL DEFAULT 'running'
                    CHECK (status IN ('running', 'completed', 'failed', 'cancelled')),
    stats           TEXT NOT NULL DEFAULT '{}'  -- JSON summary
);

CREATE TABLE IF NOT EXISTS jobs (
    id              TEXT PRIMARY KEY,
    url             TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'queued'
                    CHECK (status IN ('queued', 'running', 'completed', 'failed')),
    stage           TEXT,
    stats           TEXT NOT NULL DEFAULT '{}',  -- JSON per-stage progress
    error           TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);
"""

_PAPER_FILTERS = ("exam_board", "subject", "subject_code", "level", "year", "session", "paper_type")


# ── PaperDatabase ────────────────────────────────────────────────────


class PaperDatabase:
    """SQLite store for ingested papers.

    One connection is shared by the ingest worker threads and the HTTP worker;
    every statement runs under ``self._lock``.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    # ── Papers ───────────────────────────────────────────────

    def find_by_natural_key(self, key: NaturalKey | PaperIdentity) -> dict | None:
        """Return the row for a natural key (or identity), or None."""
        key_string = _key_string(key)
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM past_papers WHERE natural_key = ?", (key_string,)
            ).fetchone()
        return _paper_row(row) if row else None

    def insert_paper(
        self,
        identity: PaperIdentity,
        storage_key: str,
        storage_url: str,
        vector: list[float] | None = None,
        vector_model: str | None = None,
    ) -> int:
        """Insert a new paper. Raises ``StorageConflict`` if the key exists."""
        now = _now()
        with self._lock:
            try:
                cur = self._conn.execute(
                    """INSERT INTO past_papers
                       (natural_key, exam_board, subject, subject_code, level, year,
                        session, paper_number, paper_type, storage_key, storage_url,
                        original_url, vector, vector_model, created_at, last_updated)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        identity.natural_key_string(),
                        identity.exam_board,
                        identity.subject,
                        identity.subject_code,
                        identity.level,
                        identity.year,
                        identity.session,
                        identity.paper_number,
                        identity.paper_type,
                        storage_key,
                        storage_url,
                        identity.original_url,
                        json.dumps(vector) if vector is not None else None,
                        vector_model if vector is not None else None,
                        now,
                        now,
                    ),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise StorageConflict(
                    f"Paper already exists: {identity.natural_key_string()}"
                ) from exc
        return cur.lastrowid

    def update_vector(self, paper_id: int, vector: list[float], model: str) -> bool:
        """Set vector and model on an existing row. Returns False if the id is unknown."""
        with self._lock:
            cur = self._conn.execute(
                """UPDATE past_papers
                   SET vector = ?, vector_model = ?, last_updated = ?
                   WHERE id = ?""",
                (json.dumps(vector), model, _now(), paper_id),
            )
            self._conn.commit()
        return cur.rowcount > 0

    def touch(self, paper_id: int) -> None:
        """Bump ``last_updated`` after a re-insert attempt."""
        with self._lock:
            self._conn.execute(
                "UPDATE past_papers SET last_updated = ? WHERE id = ?",
                (_now(), paper_id),
            )
            self._conn.commit()

    def get_papers(self, limit: int | None = None, **criteria) -> list[dict]:
        """Rows matching equality filters, e.g. ``get_papers(year=2024, paper_type="ms")``."""
        unknown = set(criteria) - set(_PAPER_FILTERS)
        if unknown:
            raise ValueError(f"Unknown filter(s): {', '.join(sorted(unknown))}")

        clauses = [f"{field} = ?" for field, value in criteria.items() if value is not None]
        params: list = [value for value in criteria.values() if value is not None]
        sql = "SELECT * FROM past_papers"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY year DESC, session, paper_number, paper_type"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_paper_row(r) for r in rows]

    def papers_missing_vectors(self, indexable_only: bool = True) -> list[dict]:
        """Rows that still need a vector (backfill candidates)."""
        sql = "SELECT * FROM past_papers WHERE vector IS NULL"
        if indexable_only:
            sql += " AND paper_type IN ('qp', 'ms')"
        with self._lock:
            rows = self._conn.execute(sql).fetchall()
        return [_paper_row(r) for r in rows]

    def delete_paper(self, paper_id: int) -> bool:
        """Admin-only removal. The pipeline itself never deletes rows."""
        with self._lock:
            cur = self._conn.execute("DELETE FROM past_papers WHERE id = ?", (paper_id,))
            self._conn.commit()
        return cur.rowcount > 0

    def get_stats(self) -> dict:
        """Totals by vector presence and paper type."""
        with self._lock:
            total = self._conn.execute("SELECT COUNT(*) FROM past_papers").fetchone()[0]
            with_vectors = self._conn.execute(
                "SELECT COUNT(*) FROM past_papers WHERE vector IS NOT NULL"
            ).fetchone()[0]
            by_type = {
                r["paper_type"]: r["cnt"]
                for r in self._conn.execute(
                    "SELECT paper_type, COUNT(*) AS cnt FROM past_papers GROUP BY paper_type"
                ).fetchall()
            }
        return {
            "total_papers": total,
            "papers_with_vectors": with_vectors,
            "question_papers": by_type.get("qp", 0),
            "mark_schemes": by_type.get("ms", 0),
            "by_type": by_type,
        }

    # ── Pipeline Runs ────────────────────────────────────────

    def start_run(self, subject_url: str, config_hash: str) -> int:
        with self._lock:
            cur = self._conn.execute(
                """INSERT INTO pipeline_runs (subject_url, config_hash, started_at, status)
                   VALUES (?, ?, ?, 'running')""",
                (subject_url, config_hash, _now()),
            )
            self._conn.commit()
        return cur.lastrowid

    def finish_run(self, run_id: int, status: str, stats: dict | None = None) -> None:
        if status not in RUN_STATUSES:
            raise ValueError(f"Invalid run status: {status}")
        with self._lock:
            self._conn.execute(
                """UPDATE pipeline_runs SET status = ?, completed_at = ?, stats = ?
                   WHERE id = ?""",
                (status, _now(), json.dumps(stats or {}, default=str), run_id),
            )
            self._conn.commit()

    def get_run(self, run_id: int) -> dict | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pipeline_runs WHERE id = ?", (run_id,)
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["stats"] = json.loads(data["stats"])
        return data

    # ── Jobs ─────────────────────────────────────────────────

    def create_job(self, job_id: str, url: str) -> None:
        now = _now()
        with self._lock:
            self._conn.execute(
                """INSERT INTO jobs (id, url, status, stats, created_at, updated_at)
                   VALUES (?, ?, 'queued', '{}', ?, ?)""",
                (job_id, url, now, now),
            )
            self._conn.commit()

    def update_job(
        self,
        job_id: str,
        status: str | None = None,
        stage: str | None = None,
        stats: dict | None = None,
        error: str | None = None,
    ) -> None:
        """Update whichever job fields are given; ``stats`` is merged, not replaced."""
        if status is not None and status not in JOB_STATUSES:
            raise ValueError(f"Invalid job status: {status}")

        with self._lock:
            row = self._conn.execute(
                "SELECT stats FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None:
                raise ValueError(f"Job {job_id} not found")

            merged = json.loads(row["stats"])
            if stats:
                merged.update(stats)

            self._conn.execute(
                """UPDATE jobs
                   SET status = COALESCE(?, status),
                       stage = COALESCE(?, stage),
                       stats = ?,
                       error = COALESCE(?, error),
                       updated_at = ?
                   WHERE id = ?""",
                (status, stage, json.dumps(merged, default=str), error, _now(), job_id),
            )
            self._conn.commit()

    def get_job(self, job_id: str) -> dict | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["stats"] = json.loads(data["stats"])
        return data

    # ── Cleanup ──────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()


# ── Helpers ──────────────────────────────────────────────────────────


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _key_string(key: NaturalKey | PaperIdentity) -> str:
    if isinstance(key, PaperIdentity):
        return key.natural_key_string()
    return "|".join(str(part) for part in key)


def _paper_row(row: sqlite3.Row) -> dict:
    data = dict(row)
    if data.get("vector") is not None:
        data["vector"] = json.loads(data["vector"])
    return data
