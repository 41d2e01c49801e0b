"""Metadata codec: source URLs and filenames → canonical PaperIdentity, and back to storage keys."""

import logging
import re
from urllib.parse import parse_qs, unquote, urlsplit

import pydantic

from pastpapers.core.errors import FormatError, ValidationError
from pastpapers.scrape.models import (
    INDEXABLE_TYPES,
    FilenameInfo,
    PaperIdentity,
    SubjectInfo,
    YearFolder,
)

logger = logging.getLogger(__name__)

DEFAULT_EXAM_BOARD = "Cambridge"

EXAM_BOARDS: dict[str, str] = {
    "cie": "Cambridge",
    "caie": "Cambridge",
}

SESSION_CODES: dict[str, str] = {
    "m": "March",
    "s": "May-June",
    "w": "Oct-Nov",
    "sp": "Feb-March",
    "su": "May-June",
    "au": "Oct-Nov",
    "march": "March",
    "may-june": "May-June",
    "oct-nov": "Oct-Nov",
    "feb-march": "Feb-March",
    "october-november": "Oct-Nov",
    "february-march": "Feb-March",
}

PAPER_TYPE_CODES = ("qp", "ms", "gt", "er", "ci")

MIN_YEAR = 1980
MAX_YEAR = 2030

# ── Patterns ─────────────────────────────────────────────────────────

# 0580_s24_ms_12.pdf  (variant optional)
_STRICT_FILENAME_RE = re.compile(
    r"(?<!\d)(\d{4})_([a-z]+)(\d{2})_([a-z]+)(?:_(\d+))?\.pdf$"
)
# pastpapers.co always carries the variant
_CANONICAL_FILENAME_RE = re.compile(r"^(\d+)_([a-z]+)(\d{2})_([a-z]+)_(\d+)\.pdf$")
_PAPER_NUMBER_RE = re.compile(r"(?:paper|p)[-_]?(\d+)")
_TRAILING_NUMBER_RE = re.compile(r"(\d+)(?:\.pdf)?$")

_SUBJECT_SLUG_RE = re.compile(r"^([a-z]+)-(.+)-(\d+)$")
_SUBJECT_CODE_RE = re.compile(r"^(.+)-(\d+)$")
_YEAR_SESSION_SEGMENT_RE = re.compile(r"^(\d{4})-(.+)$")

_YEAR = r"(19[89]\d|20[0-3]\d)"
_SESSION_TOKENS = r"may-june|oct-nov|march|feb-mar|june|nov"
_YEAR_WITH_SESSION_RE = re.compile(rf"(?<!\d){_YEAR}[-\s]*({_SESSION_TOKENS})", re.IGNORECASE)
_YEAR_ONLY_RE = re.compile(rf"(?<!\d){_YEAR}(?!\d)")

_DOWNLOAD_FILES_RE = re.compile(r"files=.*?([^/=]+\.pdf)(?:$|[?&#])", re.IGNORECASE)
_UNSAFE_SESSION_RE = re.compile(r"[/\\\s]+")


# ── Filenames ────────────────────────────────────────────────────────


def parse_filename(filename: str) -> FilenameInfo:
    """Infer paper type and number from a bare filename.

    Unrecognised names fall back to ``qp`` / ``"1"`` instead of failing.
    """
    name = filename.lower()

    strict = _STRICT_FILENAME_RE.search(name)
    if strict:
        type_code, variant = strict.group(4), strict.group(5)
        paper_type = type_code if type_code in PAPER_TYPE_CODES else "qp"
        return FilenameInfo(paper_type=paper_type, paper_number=variant or "1")

    if "ms" in name or "mark" in name:
        paper_type = "ms"
    elif "gt" in name or "grade" in name or "threshold" in name:
        paper_type = "gt"
    elif "er" in name or "examiner" in name:
        paper_type = "er"
    elif "ci" in name or "confidential" in name:
        paper_type = "ci"
    else:
        paper_type = "qp"

    paper_number = "1"
    match = _PAPER_NUMBER_RE.search(name)
    if match:
        paper_number = match.group(1)
    else:
        trailing = _TRAILING_NUMBER_RE.search(name)
        if trailing:
            paper_number = trailing.group(1)

    return FilenameInfo(paper_type=paper_type, paper_number=paper_number)


def filename_from_url(url: str) -> str:
    """Basename of the PDF a URL points at, unwrapping download_file.php."""
    if "download_file.php" in url and "files=" in url:
        match = _DOWNLOAD_FILES_RE.search(url)
        if match:
            return unquote(match.group(1))
    path = urlsplit(url).path
    name = unquote(path.rstrip("/").rsplit("/", 1)[-1])
    return name or "unknown.pdf"


# ── Directory URLs ───────────────────────────────────────────────────


def normalize_exam_board(code: str) -> str:
    return EXAM_BOARDS.get(code.strip().lower(), code.strip())


def _title_words(slug: str) -> str:
    """'english-as-a-second-language' → 'English As A Second Language'."""
    text = slug.replace("-", " ")
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), text)


def parse_directory_url(url: str) -> SubjectInfo:
    """Split a subject root like ``.../papers/caie/igcse-mathematics-0580``."""
    segments = [s for s in urlsplit(url.strip()).path.split("/") if s]
    if not segments:
        raise FormatError(f"Invalid subject URL format: {url}")

    match = _SUBJECT_SLUG_RE.match(segments[-1])
    if not match:
        raise FormatError(f"Invalid subject URL format: {url}")

    exam_board = DEFAULT_EXAM_BOARD
    if len(segments) > 1 and segments[-2].lower() in EXAM_BOARDS:
        exam_board = normalize_exam_board(segments[-2])

    return SubjectInfo(
        exam_board=exam_board,
        level=match.group(1).upper(),
        subject=_title_words(match.group(2)),
        syllabus=match.group(3),
    )


def parse_year_session(text: str) -> tuple[int, str]:
    """Pull ``(year, session)`` out of a folder URL or link text.

    A year followed by a session token wins over a bare year; a bare year
    gets session ``"annual"``.
    """
    match = _YEAR_WITH_SESSION_RE.search(text)
    if match:
        year, session = int(match.group(1)), match.group(2).lower()
    else:
        bare = _YEAR_ONLY_RE.search(text)
        if not bare:
            raise FormatError(f"Could not parse year from: {text}")
        year, session = int(bare.group(1)), "annual"

    if year < MIN_YEAR or year > MAX_YEAR:
        raise FormatError(f"Invalid year {year} parsed from: {text}")
    return year, session


def parse_folder_year_session(folder_url: str, syllabus: str | None = None) -> tuple[int, str]:
    """``parse_year_session`` on the last path segment of a year folder URL.

    Everything up to and including ``-<syllabus>-`` is dropped first, so a
    year-like syllabus code (``...-literature-in-english-2010-2019``) is not
    read as the year.
    """
    segment = unquote(urlsplit(folder_url).path.rstrip("/").rsplit("/", 1)[-1])
    if syllabus:
        marker = f"-{syllabus}-"
        if marker in segment:
            segment = segment.split(marker, 1)[1]
        elif segment.endswith(f"-{syllabus}"):
            raise FormatError(f"No year after syllabus code in: {folder_url}")
    return parse_year_session(segment or folder_url)


def extract_base_url(url: str) -> str:
    """``https://pastpapers.co/cie/?dir=IGCSE/Mathematics-0580`` → directory URL.

    Shell-escaped ``\\?`` / ``\\=`` / ``\\&`` from command lines are tolerated.
    """
    cleaned = re.sub(r"\\([?=&])", r"\1", url.strip())
    parts = urlsplit(cleaned)
    dirs = parse_qs(parts.query).get("dir")
    if not dirs:
        raise FormatError(f"No dir parameter found in URL: {url}")
    directory = dirs[0].strip("/")
    return f"{parts.scheme}://{parts.netloc}{parts.path}{directory}/"


# ── Identity construction ────────────────────────────────────────────


def identity_from_listing(
    download_url: str,
    subject: SubjectInfo,
    folder: YearFolder,
    filename: str | None = None,
) -> PaperIdentity:
    """Build the identity of a paper found on a PapaCambridge year page."""
    filename = filename or filename_from_url(download_url)
    info = parse_filename(filename)
    title = (
        f"{subject.subject} {subject.syllabus} - {folder.year} {folder.session} - "
        f"Paper {info.paper_number} ({info.paper_type.upper()})"
    )
    try:
        return PaperIdentity(
            exam_board=subject.exam_board,
            level=subject.level,
            subject=subject.subject,
            subject_code=subject.syllabus,
            year=folder.year,
            session=folder.session,
            paper_number=info.paper_number,
            paper_type=info.paper_type,
            original_url=download_url,
            download_url=download_url,
            filename=filename,
            title=title,
        )
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid metadata for {download_url}: {exc}") from exc


def parse_canonical_pdf_url(pdf_url: str) -> PaperIdentity:
    """Parse ``/<board>/<level>/<Subject>-<code>/<year>-<session>/<file>.pdf``.

    Subject-code and year disagreements between path and filename are logged;
    the path wins. Only question papers and mark schemes are accepted.
    """
    parts = [unquote(p) for p in urlsplit(pdf_url.strip()).path.split("/") if p]
    if len(parts) < 5:
        raise FormatError(f"Invalid URL structure: {pdf_url}")
    board, level, subject_with_code, year_session, filename = parts[-5:]

    subject_match = _SUBJECT_CODE_RE.match(subject_with_code)
    if not subject_match:
        raise FormatError(f"Cannot parse subject and code from: {subject_with_code}")
    subject, subject_code = _title_words(subject_match.group(1)), subject_match.group(2)

    ys_match = _YEAR_SESSION_SEGMENT_RE.match(year_session)
    if not ys_match:
        raise FormatError(f"Cannot parse year and session from: {year_session}")
    year, path_session = ys_match.group(1), ys_match.group(2)

    file_match = _CANONICAL_FILENAME_RE.match(filename.lower())
    if not file_match:
        raise FormatError(f"Cannot parse filename: {filename}")
    file_code, session_code, year_code, paper_type, paper_number = file_match.groups()

    if file_code != subject_code:
        logger.warning(
            "Subject code mismatch in %s: path has %s, filename has %s",
            pdf_url,
            subject_code,
            file_code,
        )
    if f"20{year_code}" != year:
        logger.warning(
            "Year mismatch in %s: path has %s, filename suggests 20%s",
            pdf_url,
            year,
            year_code,
        )

    if paper_type not in INDEXABLE_TYPES:
        raise ValidationError(
            f"Unsupported paper type '{paper_type}' in {pdf_url} (expected qp or ms)"
        )

    try:
        return PaperIdentity(
            exam_board=normalize_exam_board(board),
            level=level,
            subject=subject,
            subject_code=subject_code,
            year=int(year),
            session=SESSION_CODES.get(session_code, path_session),
            paper_number=paper_number,
            paper_type=paper_type,
            original_url=pdf_url,
            download_url=pdf_url,
            filename=filename,
            title=f"{subject} {year} {path_session} Paper {paper_number}",
        )
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid metadata for {pdf_url}: {exc}") from exc


# ── Storage keys ─────────────────────────────────────────────────────


def render_storage_key(identity: PaperIdentity) -> str:
    """Deterministic blob path derived from the natural key only."""
    session = _UNSAFE_SESSION_RE.sub("-", identity.session.strip())
    segments = [
        identity.exam_board,
        identity.level,
        identity.subject_code,
        str(identity.year),
        session,
        f"{identity.paper_number}_{identity.paper_type}.pdf",
    ]
    return "/".join(s.lower() for s in segments)
