"""Tests for both discoverers against canned listing pages."""

import pytest

from pastpapers.core.config import PipelineConfig
from pastpapers.core.errors import FormatError, HttpError
from pastpapers.scrape.discover import (
    PapaCambridgeDiscoverer,
    PastPapersCoDiscoverer,
    discoverer_for,
    validate_source_url,
)
from pastpapers.scrape.links import extract_links_regex

BASE = "https://pastpapers.papacambridge.com/"
SUBJECT_URL = BASE + "papers/caie/igcse-mathematics-0580"


class FakeFetcher:
    """Serves canned pages; unknown URLs raise HttpError(404)."""

    def __init__(self, pages: dict[str, str], failing: set[str] = frozenset()):
        self.pages = pages
        self.failing = failing
        self.requested: list[str] = []

    def fetch(self, url: str) -> str:
        self.requested.append(url)
        if url in self.failing:
            raise HttpError(503, url)
        if url not in self.pages:
            raise HttpError(404, url)
        return self.pages[url]


def _year_link(year, session=None):
    slug = f"{year}-{session}" if session else str(year)
    label = f"{year} {session}" if session else str(year)
    return f'<a href="papers/caie/igcse-mathematics-0580-{slug}">{label}</a>'


def _subject_page(*links):
    return "<html><body>" + "\n".join(links) + '<a href="/">Home</a></body></html>'


def _year_page(*filenames):
    rows = [
        f'<a href="download_file.php?files=https://pastpapers.papacambridge.com/directories/'
        f'CAIE/upload/{name}">{name}</a>'
        for name in filenames
    ]
    return "<html><body>" + "\n".join(rows) + "</body></html>"


def _config(**kw):
    kw.setdefault("year_delay_seconds", 0)
    return PipelineConfig(**kw)


# ── PapaCambridge ────────────────────────────────────────────────────


def test_discovers_papers_across_years():
    pages = {
        SUBJECT_URL: _subject_page(_year_link(2024, "may-june"), _year_link(2023, "oct-nov")),
        BASE + "papers/caie/igcse-mathematics-0580-2024-may-june": _year_page(
            "0580_s24_qp_12.pdf", "0580_s24_ms_12.pdf"
        ),
        BASE + "papers/caie/igcse-mathematics-0580-2023-oct-nov": _year_page("0580_w23_qp_42.pdf"),
    }
    discoverer = PapaCambridgeDiscoverer(FakeFetcher(pages), _config())

    results = discoverer.discover(SUBJECT_URL)

    assert len(results) == 3
    ms = next(r for r in results if r.metadata.paper_type == "ms")
    assert ms.metadata.year == 2024
    assert ms.metadata.session == "may-june"
    assert ms.metadata.paper_number == "12"
    assert ms.download_url.startswith(BASE + "download_file.php?files=")


def test_year_window_is_inclusive():
    years = [2025, 2024, 2022, 2020, 2019]
    pages = {SUBJECT_URL: _subject_page(*[_year_link(y) for y in years])}
    for y in years:
        pages[BASE + f"papers/caie/igcse-mathematics-0580-{y}"] = _year_page(f"0580_s{y % 100:02d}_qp_1.pdf")
    fetcher = FakeFetcher(pages)
    discoverer = PapaCambridgeDiscoverer(fetcher, _config(start_year=2024, end_year=2020))

    results = discoverer.discover(SUBJECT_URL)

    assert sorted(r.metadata.year for r in results) == [2020, 2022, 2024]
    assert not any(u.endswith("-2025") or u.endswith("-2019") for u in fetcher.requested)


def test_malformed_subject_url_makes_no_requests():
    fetcher = FakeFetcher({})
    discoverer = PapaCambridgeDiscoverer(fetcher, _config())
    with pytest.raises(FormatError):
        discoverer.discover(BASE + "papers/caie/mathematics")
    assert fetcher.requested == []


def test_root_failure_propagates():
    discoverer = PapaCambridgeDiscoverer(FakeFetcher({}, failing={SUBJECT_URL}), _config())
    with pytest.raises(HttpError):
        discoverer.discover(SUBJECT_URL)


def test_failed_year_is_skipped():
    bad = BASE + "papers/caie/igcse-mathematics-0580-2023-oct-nov"
    pages = {
        SUBJECT_URL: _subject_page(_year_link(2024, "may-june"), _year_link(2023, "oct-nov")),
        BASE + "papers/caie/igcse-mathematics-0580-2024-may-june": _year_page("0580_s24_qp_12.pdf"),
    }
    discoverer = PapaCambridgeDiscoverer(FakeFetcher(pages, failing={bad}), _config())

    results = discoverer.discover(SUBJECT_URL)

    assert [r.metadata.year for r in results] == [2024]


def test_duplicate_links_collapsed():
    link = _year_link(2024, "may-june")
    pages = {
        SUBJECT_URL: _subject_page(link, link),
        BASE + "papers/caie/igcse-mathematics-0580-2024-may-june": _year_page(
            "0580_s24_qp_12.pdf", "0580_s24_qp_12.pdf"
        ),
    }
    results = PapaCambridgeDiscoverer(FakeFetcher(pages), _config()).discover(SUBJECT_URL)
    assert len(results) == 1


def test_pdf_filename_in_link_text():
    pages = {
        SUBJECT_URL: _subject_page(_year_link(2024, "may-june")),
        BASE + "papers/caie/igcse-mathematics-0580-2024-may-june": (
            '<a href="/view?id=77">0580_s24_ms_22.pdf</a>'
        ),
    }
    results = PapaCambridgeDiscoverer(FakeFetcher(pages), _config()).discover(SUBJECT_URL)
    assert len(results) == 1
    assert results[0].metadata.filename == "0580_s24_ms_22.pdf"
    assert results[0].metadata.paper_type == "ms"
    assert results[0].download_url == BASE + "view?id=77"


def test_regex_extractor_gives_same_results():
    pages = {
        SUBJECT_URL: _subject_page(_year_link(2024, "may-june")),
        BASE + "papers/caie/igcse-mathematics-0580-2024-may-june": _year_page(
            "0580_s24_qp_12.pdf", "0580_s24_ms_12.pdf"
        ),
    }
    dom = PapaCambridgeDiscoverer(FakeFetcher(pages), _config()).discover(SUBJECT_URL)
    regex = PapaCambridgeDiscoverer(
        FakeFetcher(pages), _config(), extractor=extract_links_regex
    ).discover(SUBJECT_URL)
    assert dom == regex


def test_politeness_delay_after_each_year(monkeypatch):
    sleeps = []
    monkeypatch.setattr("pastpapers.scrape.discover.time.sleep", sleeps.append)
    pages = {
        SUBJECT_URL: _subject_page(_year_link(2024, "may-june"), _year_link(2023, "oct-nov")),
        BASE + "papers/caie/igcse-mathematics-0580-2024-may-june": _year_page("0580_s24_qp_12.pdf"),
        BASE + "papers/caie/igcse-mathematics-0580-2023-oct-nov": _year_page("0580_w23_qp_12.pdf"),
    }
    PapaCambridgeDiscoverer(FakeFetcher(pages), _config(year_delay_seconds=2.0)).discover(SUBJECT_URL)
    assert sleeps == [2.0, 2.0]


def test_politeness_delay_after_failed_year(monkeypatch):
    sleeps = []
    monkeypatch.setattr("pastpapers.scrape.discover.time.sleep", sleeps.append)
    bad = BASE + "papers/caie/igcse-mathematics-0580-2023-oct-nov"
    pages = {
        SUBJECT_URL: _subject_page(
            _year_link(2024, "may-june"), _year_link(2023, "oct-nov"), _year_link(2022, "may-june")
        ),
        BASE + "papers/caie/igcse-mathematics-0580-2024-may-june": _year_page("0580_s24_qp_12.pdf"),
        BASE + "papers/caie/igcse-mathematics-0580-2022-may-june": _year_page("0580_s22_qp_12.pdf"),
    }
    fetcher = FakeFetcher(pages, failing={bad})
    results = PapaCambridgeDiscoverer(fetcher, _config(year_delay_seconds=2.0)).discover(SUBJECT_URL)

    assert sorted(r.metadata.year for r in results) == [2022, 2024]
    assert sleeps == [2.0, 2.0, 2.0]


def test_year_like_syllabus_code_not_read_as_year():
    subject_url = BASE + "papers/caie/o-level-literature-in-english-2010"
    folder = subject_url + "-2019"
    pages = {
        subject_url: _subject_page(
            '<a href="papers/caie/o-level-literature-in-english-2010-2019">2019</a>'
        ),
        folder: _year_page("2010_s19_qp_1.pdf"),
    }
    discoverer = PapaCambridgeDiscoverer(FakeFetcher(pages), _config(start_year=2024, end_year=2015))

    results = discoverer.discover(subject_url)

    assert [r.metadata.year for r in results] == [2019]
    assert results[0].metadata.subject_code == "2010"
    assert results[0].metadata.session == "annual"


# ── pastpapers.co ────────────────────────────────────────────────────

CO_LISTING = "https://pastpapers.co/cie/?dir=IGCSE/Mathematics-0580"


def _co_listing_page():
    return """
    <a href="?dir=IGCSE/Mathematics-0580/2024-March">2024-March</a>
    <a href="?dir=IGCSE/Mathematics-0580/2024-May-June">2024-May-June</a>
    <a href="?dir=IGCSE/Mathematics-0580/2012-Oct-Nov">2012-Oct-Nov</a>
    <a href="?dir=IGCSE">Up</a>
    """


def test_pastpapers_co_discovery():
    march = "https://pastpapers.co/cie/?dir=IGCSE/Mathematics-0580/2024-March"
    may = "https://pastpapers.co/cie/?dir=IGCSE/Mathematics-0580/2024-May-June"
    pages = {
        CO_LISTING: _co_listing_page(),
        march: """
            <a href="?dir=IGCSE/Mathematics-0580/2024-March/0580_m24_qp_42.pdf">0580_m24_qp_42.pdf</a>
            <a href="#">0580_m24_gt.pdf</a>
            <p>Also: 0580_m24_ms_42.pdf</p>
        """,
        may: '<a href="0580_s24_ms_12.pdf">0580_s24_ms_12.pdf</a>',
    }
    fetcher = FakeFetcher(pages)
    results = PastPapersCoDiscoverer(fetcher, _config()).discover(CO_LISTING)

    urls = sorted(r.download_url for r in results)
    assert urls == [
        "https://pastpapers.co/cie/IGCSE/Mathematics-0580/2024-March/0580_m24_ms_42.pdf",
        "https://pastpapers.co/cie/IGCSE/Mathematics-0580/2024-March/0580_m24_qp_42.pdf",
        "https://pastpapers.co/cie/IGCSE/Mathematics-0580/2024-May-June/0580_s24_ms_12.pdf",
    ]
    assert all(r.metadata.exam_board == "Cambridge" for r in results)
    assert not any("2012" in u for u in fetcher.requested)


def test_pastpapers_co_delay_after_failed_directory(monkeypatch):
    sleeps = []
    monkeypatch.setattr("pastpapers.scrape.discover.time.sleep", sleeps.append)
    march = "https://pastpapers.co/cie/?dir=IGCSE/Mathematics-0580/2024-March"
    may = "https://pastpapers.co/cie/?dir=IGCSE/Mathematics-0580/2024-May-June"
    pages = {
        CO_LISTING: _co_listing_page(),
        may: '<a href="0580_s24_ms_12.pdf">0580_s24_ms_12.pdf</a>',
    }
    fetcher = FakeFetcher(pages, failing={march})
    results = PastPapersCoDiscoverer(fetcher, _config(year_delay_seconds=1.5)).discover(CO_LISTING)

    assert [r.metadata.session for r in results] == ["May-June"]
    assert sleeps == [1.5, 1.5]


def test_pastpapers_co_requires_dir_param():
    fetcher = FakeFetcher({})
    with pytest.raises(FormatError):
        PastPapersCoDiscoverer(fetcher, _config()).discover("https://pastpapers.co/cie/")
    assert fetcher.requested == []


# ── Selection ────────────────────────────────────────────────────────


def test_discoverer_for_host():
    config = _config()
    assert isinstance(discoverer_for(SUBJECT_URL, FakeFetcher({}), config), PapaCambridgeDiscoverer)
    assert isinstance(discoverer_for(CO_LISTING, FakeFetcher({}), config), PastPapersCoDiscoverer)
    with pytest.raises(FormatError):
        discoverer_for("https://example.com/igcse-mathematics-0580", FakeFetcher({}), config)


def test_validate_source_url():
    assert validate_source_url(SUBJECT_URL) == "papacambridge"
    assert validate_source_url(CO_LISTING) == "pastpapers.co"
    with pytest.raises(FormatError):
        validate_source_url(BASE + "papers/caie/not-a-subject")
