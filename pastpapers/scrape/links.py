"""Anchor extraction from listing pages.

Two interchangeable strategies return the same ``Link`` list: BeautifulSoup
(``dom``) and a plain regex pass (``regex``) for environments without an HTML
parser. Both are exercised against the same fixtures in the test suite.
"""

import html
import re
from typing import Callable, NamedTuple

from bs4 import BeautifulSoup


class Link(NamedTuple):
    href: str
    text: str


_ANCHOR_RE = re.compile(
    r"<a\b[^>]*?\bhref\s*=\s*([\"'])(.*?)\1[^>]*>(.*?)</a\s*>",
    re.IGNORECASE | re.DOTALL,
)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


def extract_links_dom(markup: str) -> list[Link]:
    """All ``<a href>`` anchors via BeautifulSoup."""
    soup = BeautifulSoup(markup, "html.parser")
    links: list[Link] = []
    for a in soup.find_all("a", href=True):
        text = _SPACE_RE.sub(" ", a.get_text(" ", strip=True)).strip()
        links.append(Link(href=a["href"].strip(), text=text))
    return links


def extract_links_regex(markup: str) -> list[Link]:
    """All ``<a href>`` anchors via regex; no HTML parser required."""
    links: list[Link] = []
    for match in _ANCHOR_RE.finditer(markup):
        href = html.unescape(match.group(2)).strip()
        inner = _TAG_RE.sub(" ", match.group(3))
        text = _SPACE_RE.sub(" ", html.unescape(inner)).strip()
        links.append(Link(href=href, text=text))
    return links


def page_text(markup: str) -> str:
    """Visible text of a page, for filename patterns that aren't links."""
    return BeautifulSoup(markup, "html.parser").get_text(" ")


EXTRACTORS: dict[str, Callable[[str], list[Link]]] = {
    "dom": extract_links_dom,
    "regex": extract_links_regex,
}


def get_extractor(name: str) -> Callable[[str], list[Link]]:
    try:
        return EXTRACTORS[name]
    except KeyError:
        raise ValueError(
            f"Unknown link extractor: {name} (valid: {', '.join(EXTRACTORS)})"
        ) from None
