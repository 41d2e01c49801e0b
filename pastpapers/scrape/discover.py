"""Paper discovery: walk a subject's year/session folders and collect PDF links.

Two URL families are supported:

* PapaCambridge subject roots (``.../papers/caie/igcse-mathematics-0580``),
  whose year folders list ``download_file.php?files=...`` or direct PDF links.
* pastpapers.co listings (``https://pastpapers.co/cie/?dir=IGCSE/Mathematics-0580``),
  whose ``?dir=`` folders name files in the canonical
  ``<code>_<session><yy>_<type>_<n>.pdf`` form.

Both return a flat list of ``ScrapeResult``. A failing year folder is logged
and skipped; a failing root page propagates.
"""

import logging
import re
import time
from typing import Callable
from urllib.parse import parse_qs, urlsplit

import httpx

from pastpapers.core.config import PipelineConfig
from pastpapers.core.errors import FormatError, PipelineError
from pastpapers.scrape.codec import (
    extract_base_url,
    identity_from_listing,
    parse_canonical_pdf_url,
    parse_directory_url,
    parse_folder_year_session,
    parse_year_session,
)
from pastpapers.scrape.fetcher import PageFetcher
from pastpapers.scrape.links import Link, get_extractor, page_text
from pastpapers.scrape.models import ScrapeResult, SubjectInfo, YearFolder

logger = logging.getLogger(__name__)

_YEAR_TOKEN_RE = re.compile(r"(?<!\d)(?:19[89]\d|20[0-3]\d)(?!\d)")
_VALID_PAPER_FILENAME_RE = re.compile(r"^\d{4}_[a-z]+\d{2}_(qp|ms)_\d+\.pdf$", re.IGNORECASE)
_PAPER_FILENAME_IN_TEXT_RE = re.compile(r"\d{4}_[a-z]+\d{2}_[a-z]+_\d+\.pdf", re.IGNORECASE)
_SUBJECT_DIR_RE = re.compile(r"[^/]+/[^/]+-\d+/\d{4}")
_PDF_IN_HREF_RE = re.compile(r"([^/=?&#]+\.pdf)", re.IGNORECASE)


def _is_pdf_href(href: str) -> bool:
    lowered = href.lower()
    return "download_file.php" in lowered or lowered.split("?", 1)[0].endswith(".pdf")


def _in_window(year: int, config: PipelineConfig) -> bool:
    """Inclusive ``[end_year, start_year]`` filter."""
    return config.end_year <= year <= config.start_year


class _Discoverer:
    """Shared plumbing: fetcher, link extractor and folder pacing."""

    def __init__(
        self,
        fetcher: PageFetcher,
        config: PipelineConfig,
        extractor: Callable[[str], list[Link]] | None = None,
    ):
        self.fetcher = fetcher
        self.config = config
        self.extract_links = extractor or get_extractor(config.link_extractor)

    def _pause(self) -> None:
        if self.config.year_delay_seconds > 0:
            time.sleep(self.config.year_delay_seconds)


# ── PapaCambridge ────────────────────────────────────────────────────


class PapaCambridgeDiscoverer(_Discoverer):
    """Subject root → year folders → PDF links."""

    def discover(self, subject_url: str) -> list[ScrapeResult]:
        subject = parse_directory_url(subject_url)
        logger.info(
            "Discovering %s %s (%s) between %d and %d",
            subject.level,
            subject.subject,
            subject.syllabus,
            self.config.end_year,
            self.config.start_year,
        )

        root_html = self.fetcher.fetch(subject_url)
        folders = self.year_folders(root_html, subject.syllabus)
        logger.info("Found %d year folders", len(folders))

        results: list[ScrapeResult] = []
        for folder in folders:
            if not _in_window(folder.year, self.config):
                logger.debug(
                    "Skipping %d %s (outside %d-%d)",
                    folder.year,
                    folder.session,
                    self.config.end_year,
                    self.config.start_year,
                )
                continue

            try:
                year_html = self.fetcher.fetch(folder.url)
            except (PipelineError, httpx.HTTPError) as exc:
                logger.error("Failed to fetch year folder %s: %s", folder.url, exc)
            else:
                papers = self.papers_in_folder(year_html, subject, folder)
                logger.info(
                    "Found %d papers for %d %s", len(papers), folder.year, folder.session
                )
                results.extend(papers)
            finally:
                self._pause()

        logger.info("Discovery complete: %d papers", len(results))
        return results

    def year_folders(self, markup: str, syllabus: str | None = None) -> list[YearFolder]:
        """Year/session folder links on a subject root page, deduplicated by URL.

        With ``syllabus`` given, the code is skipped when reading the year, so
        a code like ``2010`` is never taken for one.
        """
        folders: dict[str, YearFolder] = {}
        for link in self.extract_links(markup):
            if _is_pdf_href(link.href):
                continue
            if not (_YEAR_TOKEN_RE.search(link.text) or _YEAR_TOKEN_RE.search(link.href)):
                continue

            url = self._resolve(link.href)
            if url in folders:
                continue
            try:
                year, session = parse_folder_year_session(url, syllabus)
            except FormatError:
                try:
                    year, session = parse_year_session(link.text)
                except FormatError as exc:
                    logger.warning("Skipping folder link %s: %s", url, exc)
                    continue
            folders[url] = YearFolder(url=url, year=year, session=session)
        return list(folders.values())

    def papers_in_folder(
        self, markup: str, subject: SubjectInfo, folder: YearFolder
    ) -> list[ScrapeResult]:
        candidates: dict[str, str | None] = {}
        for link in self.extract_links(markup):
            if _is_pdf_href(link.href):
                candidates.setdefault(self._resolve(link.href), None)
            elif link.text.lower().endswith(".pdf"):
                candidates.setdefault(self._resolve(link.href), link.text)

        results: list[ScrapeResult] = []
        for url, filename in candidates.items():
            try:
                identity = identity_from_listing(url, subject, folder, filename)
            except PipelineError as exc:
                logger.warning("Skipping paper %s: %s", url, exc)
                continue
            results.append(ScrapeResult(download_url=url, metadata=identity))
        return results

    def _resolve(self, href: str) -> str:
        return str(httpx.URL(self.config.site_base_url).join(href))


# ── pastpapers.co ────────────────────────────────────────────────────


class PastPapersCoDiscoverer(_Discoverer):
    """``?dir=`` listing → year/session directories → canonical filenames."""

    def discover(self, listing_url: str) -> list[ScrapeResult]:
        extract_base_url(listing_url)  # rejects listings without ?dir=
        listing_url = re.sub(r"\\([?=&])", r"\1", listing_url.strip())

        root_html = self.fetcher.fetch(listing_url)
        directories = self.session_directories(root_html, listing_url)
        logger.info("Found %d relevant directories", len(directories))

        results: list[ScrapeResult] = []
        for directory in directories:
            try:
                folder_html = self.fetcher.fetch(directory)
            except (PipelineError, httpx.HTTPError) as exc:
                logger.error("Failed to scrape directory %s: %s", directory, exc)
            else:
                papers = self.papers_in_directory(folder_html, directory)
                logger.info("Directory %s: %d papers", directory, len(papers))
                results.extend(papers)
            finally:
                self._pause()

        logger.info("Discovery complete: %d papers", len(results))
        return results

    def session_directories(self, markup: str, listing_url: str) -> list[str]:
        """Sorted ``?dir=`` folder URLs that fall inside the year window."""
        found: set[str] = set()
        for link in self.extract_links(markup):
            if "?dir=" not in link.href:
                continue
            url = str(httpx.URL(listing_url).join(link.href))
            dirs = parse_qs(urlsplit(url).query).get("dir")
            if not dirs:
                continue
            dir_path = dirs[0].strip("/")
            if not _SUBJECT_DIR_RE.search(dir_path):
                continue
            try:
                year, _ = parse_year_session(dir_path.rsplit("/", 1)[-1])
            except FormatError:
                continue
            if _in_window(year, self.config):
                found.add(url)
            else:
                logger.debug("Skipping %s (outside year window)", dir_path)
        return sorted(found)

    def papers_in_directory(self, markup: str, directory_url: str) -> list[ScrapeResult]:
        filenames: dict[str, None] = {}
        for link in self.extract_links(markup):
            if link.text.lower().endswith(".pdf"):
                filenames.setdefault(link.text, None)
            href_match = _PDF_IN_HREF_RE.search(link.href)
            if href_match:
                filenames.setdefault(href_match.group(1), None)
        for match in _PAPER_FILENAME_IN_TEXT_RE.findall(page_text(markup)):
            filenames.setdefault(match, None)

        base = extract_base_url(directory_url)
        results: list[ScrapeResult] = []
        for filename in filenames:
            if not _VALID_PAPER_FILENAME_RE.match(filename):
                logger.debug("Skipping non-paper file %s", filename)
                continue
            url = f"{base}{filename}"
            try:
                identity = parse_canonical_pdf_url(url)
            except PipelineError as exc:
                logger.warning("Failed to parse PDF filename %s: %s", filename, exc)
                continue
            results.append(ScrapeResult(download_url=url, metadata=identity))
        return results


# ── Selection ────────────────────────────────────────────────────────


def source_family(url: str) -> str:
    """``"papacambridge"`` or ``"pastpapers.co"``. Raises ``FormatError`` otherwise."""
    host = (urlsplit(url.strip()).hostname or "").lower()
    if "papacambridge" in host:
        return "papacambridge"
    if host == "pastpapers.co" or host.endswith(".pastpapers.co"):
        return "pastpapers.co"
    raise FormatError(f"Unsupported source URL: {url}")


def validate_source_url(url: str) -> str:
    """Check a discovery root without any network access; returns its family."""
    family = source_family(url)
    if family == "papacambridge":
        parse_directory_url(url)
    else:
        extract_base_url(url)
    return family


def discoverer_for(
    url: str, fetcher: PageFetcher, config: PipelineConfig
) -> PapaCambridgeDiscoverer | PastPapersCoDiscoverer:
    """Pick the discoverer for a URL's host."""
    if source_family(url) == "papacambridge":
        return PapaCambridgeDiscoverer(fetcher, config)
    return PastPapersCoDiscoverer(fetcher, config)
