"""Shared data models for discovery and the downstream stages."""

from typing import Literal, Optional

from pydantic import BaseModel, Field

PaperType = Literal["qp", "ms", "gt", "er", "ci"]

INDEXABLE_TYPES: frozenset[str] = frozenset({"qp", "ms"})

NaturalKey = tuple[str, str, str, int, str, str, str]


class PaperIdentity(BaseModel):
    """Canonical identity of one physical past paper."""

    model_config = {"frozen": True}

    exam_board: str
    level: str
    subject: str
    subject_code: str
    year: int = Field(ge=1980, le=2030)
    session: str
    paper_number: str = "1"
    paper_type: PaperType = "qp"
    original_url: str
    download_url: str
    filename: str
    title: Optional[str] = None

    def natural_key(self) -> NaturalKey:
        """Fields that identify the document regardless of URL or filename."""
        return (
            self.exam_board.casefold(),
            self.level.casefold(),
            self.subject_code,
            self.year,
            self.session.casefold(),
            self.paper_number,
            self.paper_type,
        )

    def natural_key_string(self) -> str:
        return "|".join(str(part) for part in self.natural_key())

    def describe(self) -> str:
        return (
            f"{self.subject} {self.subject_code} {self.year} {self.session} "
            f"Paper {self.paper_number} ({self.paper_type})"
        )


class ScrapeResult(BaseModel):
    """One downloadable paper found during discovery."""

    download_url: str
    metadata: PaperIdentity


class SubjectInfo(BaseModel):
    """Components of a subject-root directory URL."""

    exam_board: str
    level: str
    subject: str
    syllabus: str


class YearFolder(BaseModel):
    """A year/session listing page under a subject root."""

    url: str
    year: int
    session: str


class FilenameInfo(BaseModel):
    paper_type: PaperType
    paper_number: str
