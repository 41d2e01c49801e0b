"""Tests for the metadata codec: filenames, directory URLs, canonical URLs, storage keys."""

import logging

import pytest

from pastpapers.core.errors import FormatError, ValidationError
from pastpapers.scrape.codec import (
    extract_base_url,
    filename_from_url,
    identity_from_listing,
    normalize_exam_board,
    parse_canonical_pdf_url,
    parse_directory_url,
    parse_filename,
    parse_folder_year_session,
    parse_year_session,
    render_storage_key,
)
from pastpapers.scrape.models import PaperIdentity, SubjectInfo, YearFolder


def _identity(**kw):
    defaults = dict(
        exam_board="Cambridge",
        level="IGCSE",
        subject="Mathematics",
        subject_code="0580",
        year=2024,
        session="may-june",
        paper_number="12",
        paper_type="ms",
        original_url="https://example.test/a.pdf",
        download_url="https://example.test/a.pdf",
        filename="0580_s24_ms_12.pdf",
    )
    defaults.update(kw)
    return PaperIdentity(**defaults)


# ── parse_filename: strict pattern ───────────────────────────────────


@pytest.mark.parametrize(
    "filename, paper_type, number",
    [
        ("0580_s24_ms_12.pdf", "ms", "12"),
        ("0580_w23_qp_42.pdf", "qp", "42"),
        ("0620_m22_gt.pdf", "gt", "1"),
        ("0580_s19_er.pdf", "er", "1"),
        ("9702_s21_ci_33.pdf", "ci", "33"),
        ("0580_S24_MS_12.PDF", "ms", "12"),
    ],
)
def test_strict_filenames(filename, paper_type, number):
    info = parse_filename(filename)
    assert (info.paper_type, info.paper_number) == (paper_type, number)


def test_strict_unknown_type_code_defaults_to_qp():
    info = parse_filename("0580_s24_in_12.pdf")
    assert info.paper_type == "qp"
    assert info.paper_number == "12"


@pytest.mark.parametrize("session", ["s", "w", "m"])
@pytest.mark.parametrize("paper_type", ["qp", "ms", "gt", "er", "ci"])
@pytest.mark.parametrize("variant", ["1", "12", "42"])
def test_strict_round_trip(session, paper_type, variant):
    info = parse_filename(f"0580_{session}24_{paper_type}_{variant}.pdf")
    assert (info.paper_type, info.paper_number) == (paper_type, variant)


# ── parse_filename: heuristics ───────────────────────────────────────


def test_heuristic_mark_scheme():
    info = parse_filename("Mathematics-Mark-Scheme-Paper-2.pdf")
    assert info.paper_type == "ms"
    assert info.paper_number == "2"


def test_heuristic_grade_threshold():
    assert parse_filename("grade_thresholds_june.pdf").paper_type == "gt"


def test_heuristic_examiner_report():
    assert parse_filename("examiner_report.pdf").paper_type == "er"


def test_heuristic_trailing_digits():
    info = parse_filename("specimen_7.pdf")
    assert info.paper_number == "7"


def test_ambiguous_filename_defaults_leniently():
    info = parse_filename("notes.pdf")
    assert info.paper_type == "qp"
    assert info.paper_number == "1"


# ── filename_from_url ────────────────────────────────────────────────


def test_filename_from_download_wrapper():
    url = (
        "https://pastpapers.papacambridge.com/download_file.php?"
        "files=https://pastpapers.papacambridge.com/directories/CAIE/upload/0580_s24_ms_12.pdf"
    )
    assert filename_from_url(url) == "0580_s24_ms_12.pdf"


def test_filename_from_direct_url():
    assert filename_from_url("https://x.test/a/b/0580_w23_qp_42.pdf") == "0580_w23_qp_42.pdf"


# ── parse_directory_url ──────────────────────────────────────────────


def test_directory_url():
    info = parse_directory_url("https://pastpapers.papacambridge.com/papers/caie/igcse-mathematics-0580")
    assert info.level == "IGCSE"
    assert info.subject == "Mathematics"
    assert info.syllabus == "0580"
    assert info.exam_board == "Cambridge"


def test_directory_url_multiword_subject():
    info = parse_directory_url(
        "https://pastpapers.papacambridge.com/papers/caie/igcse-english-as-a-second-language-0510/"
    )
    assert info.subject == "English As A Second Language"
    assert info.syllabus == "0510"


def test_directory_url_malformed():
    with pytest.raises(FormatError):
        parse_directory_url("https://pastpapers.papacambridge.com/papers/caie/mathematics")


# ── parse_year_session ───────────────────────────────────────────────


def test_year_with_session():
    url = "https://pastpapers.papacambridge.com/papers/caie/igcse-mathematics-0580-2024-may-june"
    assert parse_year_session(url) == (2024, "may-june")


def test_year_only_is_annual():
    assert parse_year_session("2015") == (2015, "annual")


def test_year_with_session_preferred_over_bare_year():
    assert parse_year_session("archive-1999/2021-oct-nov") == (2021, "oct-nov")


def test_year_missing():
    with pytest.raises(FormatError):
        parse_year_session("igcse-mathematics-0580")


def test_folder_year_skips_syllabus_code():
    url = "https://pastpapers.papacambridge.com/papers/caie/o-level-literature-in-english-2010-2019"
    assert parse_folder_year_session(url, "2010") == (2019, "annual")


def test_folder_year_with_session_after_syllabus_code():
    url = "https://pastpapers.papacambridge.com/papers/caie/igcse-mathematics-0580-2024-may-june"
    assert parse_folder_year_session(url, "0580") == (2024, "may-june")


def test_folder_year_subject_root_has_no_year():
    with pytest.raises(FormatError):
        parse_folder_year_session(
            "https://pastpapers.papacambridge.com/papers/caie/o-level-literature-in-english-2010",
            "2010",
        )


# ── extract_base_url ─────────────────────────────────────────────────


def test_extract_base_url():
    url = "https://pastpapers.co/cie/?dir=IGCSE/Mathematics-0580/2024-March"
    assert extract_base_url(url) == "https://pastpapers.co/cie/IGCSE/Mathematics-0580/2024-March/"


def test_extract_base_url_shell_escaped():
    url = r"https://pastpapers.co/cie/\?dir\=IGCSE/Mathematics-0580"
    assert extract_base_url(url) == "https://pastpapers.co/cie/IGCSE/Mathematics-0580/"


def test_extract_base_url_missing_dir():
    with pytest.raises(FormatError):
        extract_base_url("https://pastpapers.co/cie/")


# ── parse_canonical_pdf_url ──────────────────────────────────────────


def test_canonical_url():
    paper = parse_canonical_pdf_url(
        "https://site/cie/IGCSE/Mathematics-0580/2024-March/0580_m24_qp_42.pdf"
    )
    assert paper.exam_board == "Cambridge"
    assert paper.level == "IGCSE"
    assert paper.subject == "Mathematics"
    assert paper.subject_code == "0580"
    assert paper.year == 2024
    assert paper.session == "March"
    assert paper.paper_number == "42"
    assert paper.paper_type == "qp"


def test_canonical_url_unmapped_session_code_uses_path():
    paper = parse_canonical_pdf_url(
        "https://site/cie/IGCSE/Physics-0625/2023-Oct-Nov/0625_x23_ms_31.pdf"
    )
    assert paper.session == "Oct-Nov"


def test_canonical_url_mismatch_warns_and_path_wins(caplog):
    with caplog.at_level(logging.WARNING, logger="pastpapers.scrape.codec"):
        paper = parse_canonical_pdf_url(
            "https://site/cie/IGCSE/Mathematics-0580/2023-May-June/0606_s22_qp_12.pdf"
        )
    assert paper.subject_code == "0580"
    assert paper.year == 2023
    assert "Subject code mismatch" in caplog.text
    assert "Year mismatch" in caplog.text


def test_canonical_url_rejects_non_indexable_type():
    with pytest.raises(ValidationError):
        parse_canonical_pdf_url("https://site/cie/IGCSE/Mathematics-0580/2024-March/0580_m24_gt_1.pdf")


def test_canonical_url_too_short():
    with pytest.raises(FormatError):
        parse_canonical_pdf_url("https://site/0580_m24_qp_42.pdf")


def test_canonical_url_bad_filename():
    with pytest.raises(FormatError):
        parse_canonical_pdf_url("https://site/cie/IGCSE/Mathematics-0580/2024-March/syllabus.pdf")


# ── identity_from_listing (end to end) ───────────────────────────────


def test_listing_identity_end_to_end():
    subject = parse_directory_url("https://pastpapers.papacambridge.com/papers/caie/igcse-mathematics-0580")
    year, session = parse_year_session(
        "https://pastpapers.papacambridge.com/papers/caie/igcse-mathematics-0580-2024-may-june"
    )
    folder = YearFolder(url="https://x.test/2024", year=year, session=session)
    url = "https://pastpapers.papacambridge.com/directories/CAIE/upload/0580_s24_ms_12.pdf"

    paper = identity_from_listing(url, subject, folder)

    assert paper.level == "IGCSE"
    assert paper.subject == "Mathematics"
    assert paper.subject_code == "0580"
    assert paper.year == 2024
    assert paper.session == "may-june"
    assert paper.paper_number == "12"
    assert paper.paper_type == "ms"
    assert render_storage_key(paper).endswith("igcse/0580/2024/may-june/12_ms.pdf")


def test_listing_identity_invalid_year_raises_validation_error():
    subject = SubjectInfo(exam_board="Cambridge", level="IGCSE", subject="Maths", syllabus="0580")
    folder = YearFolder(url="https://x.test", year=1900, session="annual")
    with pytest.raises(ValidationError):
        identity_from_listing("https://x.test/0580_s24_qp_1.pdf", subject, folder)


# ── render_storage_key ───────────────────────────────────────────────


def test_storage_key_layout():
    assert render_storage_key(_identity()) == "cambridge/igcse/0580/2024/may-june/12_ms.pdf"


def test_storage_key_ignores_urls():
    a = _identity(original_url="https://a.test/x.pdf", download_url="https://a.test/x.pdf")
    b = _identity(original_url="https://b.test/y.pdf", download_url="https://b.test/y.pdf")
    assert render_storage_key(a) == render_storage_key(b)


def test_storage_key_sanitises_session():
    key = render_storage_key(_identity(session="May / June"))
    assert "/may-june/" in key


def test_natural_key_casefolds_session():
    assert _identity(session="May-June").natural_key() == _identity(session="may-june").natural_key()


def test_exam_board_normalisation():
    assert normalize_exam_board("cie") == "Cambridge"
    assert normalize_exam_board("CAIE") == "Cambridge"
    assert normalize_exam_board("edexcel") == "edexcel"
