"""
Structural fingerprints of page regions.

A fingerprint is the sha256 of a region's markup with all text and every
attribute that differs between instances of the same template removed, so a
header rendered on two pages with different links, ids or copy hashes to the
same digest while any change in element structure does not.
"""
import hashlib
from typing import Dict, List, Optional

from bs4 import BeautifulSoup, NavigableString, Tag

from app.platform.logger import get_logger

logger = get_logger(__name__)

# Region name -> selectors tried in order; the first selector that matches wins.
REGION_SELECTORS: Dict[str, List[str]] = {
    "header": ["header", '[role="banner"]'],
    "nav": ["nav", '[role="navigation"]'],
    "footer": ["footer", '[role="contentinfo"]'],
    "aside": ["aside", '[role="complementary"]'],
    "main": ["main", '[role="main"]'],
    "body": ["body"],
}

REGIONS = list(REGION_SELECTORS)

VOLATILE_ATTRIBUTES = {"id", "style", "value", "action", "href", "src"}

VOID_ELEMENTS = {
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
}

# Keyword / ARIA role pairs checked against a violation's target selector.
_REGION_KEYWORDS = [
    ("header", ("header", '[role="banner"]')),
    ("nav", ("nav", '[role="navigation"]')),
    ("footer", ("footer", '[role="contentinfo"]')),
    ("aside", ("aside", '[role="complementary"]')),
    ("main", ("main", '[role="main"]')),
]

UNKNOWN_REGION = "unknown"


def sha256(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _first_element(html: str) -> Optional[Tag]:
    soup = BeautifulSoup(html, "html.parser")
    return soup.find(True)


def _is_volatile(name: str) -> bool:
    name = name.lower()
    return name in VOLATILE_ATTRIBUTES or name.startswith("data-")


def _attribute_value(name: str, value) -> str:
    if name == "class":
        tokens = value if isinstance(value, list) else str(value).split()
        return " ".join(sorted(t for t in tokens if t))
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


def _serialize(element: Tag, out: List[str]) -> None:
    name = element.name.lower()
    attrs = []
    for attr_name in sorted(element.attrs, key=str.lower):
        if _is_volatile(attr_name):
            continue
        value = _attribute_value(attr_name.lower(), element.attrs[attr_name])
        attrs.append(f' {attr_name.lower()}="{value}"')

    out.append(f"<{name}{''.join(attrs)}>")
    if name in VOID_ELEMENTS:
        return
    for child in element.children:
        # Text, comments and doctype are all NavigableString subclasses
        if isinstance(child, NavigableString):
            continue
        if isinstance(child, Tag):
            _serialize(child, out)
    out.append(f"</{name}>")


def normalize_html_structure(html: str) -> str:
    """
    Canonical, text-free form of the first element in `html`.

    Text nodes and comments are dropped, volatile attributes (id, style,
    value, action, href, src, data-*) removed, class tokens sorted, tag and
    attribute names lowercased and attributes emitted in name order. The
    result has no whitespace between tags.
    """
    root = _first_element(html)
    if root is None:
        return ""
    out: List[str] = []
    _serialize(root, out)
    return "".join(out)


def generate_fingerprint(html: str) -> str:
    return sha256(normalize_html_structure(html))


def extract_regions(document_html: str) -> Dict[str, str]:
    """
    Locate each landmark region in a full rendered document.

    Returns region name -> outer HTML of the first matching element.
    Regions that are not present on the page are omitted.
    """
    soup = BeautifulSoup(document_html, "html.parser")
    regions = {}
    for region, selectors in REGION_SELECTORS.items():
        for selector in selectors:
            element = soup.select_one(selector)
            if element is not None:
                regions[region] = str(element)
                break
    return regions


def compute_region_fingerprints(region_html: Dict[str, str]) -> Dict[str, str]:
    """Hash every extracted region; unknown region names are ignored."""
    fingerprints = {}
    for region, html in region_html.items():
        if region not in REGION_SELECTORS or html is None:
            continue
        fingerprints[region] = generate_fingerprint(html)
    return fingerprints


def detect_region_from_selector(selector: Optional[str]) -> str:
    """
    Classify a violation's target selector into a landmark region.

    Matches landmark tag names anywhere in the selector (so `.main-nav a`
    counts as nav) and the equivalent ARIA roles.
    """
    if not selector:
        return UNKNOWN_REGION
    lowered = selector.lower()
    for region, keywords in _REGION_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return region
    return UNKNOWN_REGION


def content_fingerprint(regions_fingerprint: Optional[Dict[str, str]]) -> Optional[str]:
    """
    Fingerprint used to compare whole pages: `main` when the page has a main
    landmark (even an empty one), otherwise `body`.
    """
    if not regions_fingerprint:
        return None
    if "main" in regions_fingerprint:
        return regions_fingerprint["main"]
    return regions_fingerprint.get("body")
