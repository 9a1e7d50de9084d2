"""
Deduplication layers.

Each layer is a pure function over snapshots: it receives the issues that
are still ungrouped and returns the groups it formed plus the issues left for
the next layer. Nothing here touches the database.

    Layer 1  region fingerprint   header/nav/footer/aside shared by >= min_pages
    Layer 2  repeated selector    same (rule, selector) on >= min_pages pages
    Layer 3  duplicate pages      pages with the same main (or body) digest
    Layer 4  issue signature      same title + same ungrouped issue keys
"""
import math
import re
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from app.features.scan.models.shared_component import GroupRegion
from app.features.scan.services.discovery.url_utils import url_path
from app.features.scan.services.fingerprint.fingerprint import content_fingerprint, sha256

SHARED_REGIONS = [GroupRegion.header, GroupRegion.nav, GroupRegion.footer, GroupRegion.aside]

REGION_LABELS = {
    GroupRegion.header: "Site Header",
    GroupRegion.nav: "Main Navigation",
    GroupRegion.footer: "Site Footer",
    GroupRegion.aside: "Sidebar",
}

IssueKey = Tuple[str, str]


class PageSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    url: str
    title: Optional[str] = None
    regions_fingerprint: Dict[str, str] = Field(default_factory=dict)


class IssueSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    page_id: str
    rule_id: str
    target_selector: Optional[str] = None
    dom_region: Optional[str] = None
    region_fingerprint: Optional[str] = None
    html_snippet: Optional[str] = None

    @property
    def key(self) -> IssueKey:
        return (self.rule_id, self.target_selector or "")


class GroupDraft(BaseModel):
    """A group before it is written; `issue_ids` are the members."""
    region: GroupRegion
    fingerprint: str
    label: str
    page_ids: List[str] = Field(default_factory=list)
    page_urls: List[str] = Field(default_factory=list)
    issue_ids: List[str] = Field(default_factory=list)
    keys: List[IssueKey] = Field(default_factory=list)
    sample_html: Optional[str] = None

    @property
    def page_count(self) -> int:
        return len(self.page_ids)

    @property
    def issue_count(self) -> int:
        return len(set(self.keys))


class LayerResult(BaseModel):
    groups: List[GroupDraft] = Field(default_factory=list)
    remaining: List[IssueSnapshot] = Field(default_factory=list)


def min_pages_for_shared(total_pages: int, threshold: float, min_shared_pages: int = 2) -> int:
    """
    Page count at which a region or selector counts as shared.

    `min_shared_pages=1` reduces this to the plain `ceil(total_pages * threshold)`;
    the default of 2 keeps a single page from ever counting as shared.
    """
    return max(min_shared_pages, math.ceil(total_pages * threshold))


def _group_by_key(issues: Iterable[IssueSnapshot]) -> "OrderedDict[IssueKey, List[IssueSnapshot]]":
    grouped: "OrderedDict[IssueKey, List[IssueSnapshot]]" = OrderedDict()
    for issue in issues:
        grouped.setdefault(issue.key, []).append(issue)
    return grouped


def _ordered_unique(values: Iterable[str]) -> List[str]:
    return list(OrderedDict.fromkeys(values))


def _add_members(group: GroupDraft, issues: Iterable[IssueSnapshot]) -> None:
    for issue in issues:
        group.issue_ids.append(issue.id)
        if issue.key not in group.keys:
            group.keys.append(issue.key)
        if group.sample_html is None and issue.html_snippet:
            group.sample_html = issue.html_snippet


# ── Layer 1 ─────────────────────────────────────


def group_by_region_fingerprint(
    pages: List[PageSnapshot],
    issues: List[IssueSnapshot],
    min_pages: int,
) -> LayerResult:
    """
    Every (region, digest) pair shared by at least `min_pages` pages becomes a
    group, whether or not any issue lands in it. Issues whose region and
    fingerprint match a shared pair join that group; repeats of the same
    (rule, selector) key count as one unique issue.
    """
    groups: Dict[Tuple[str, str], GroupDraft] = {}

    for region in SHARED_REGIONS:
        by_digest: "OrderedDict[str, List[PageSnapshot]]" = OrderedDict()
        for page in pages:
            digest = page.regions_fingerprint.get(region.value)
            if digest:
                by_digest.setdefault(digest, []).append(page)

        for digest, sharing in by_digest.items():
            if len(sharing) < min_pages:
                continue
            groups[(region.value, digest)] = GroupDraft(
                region=region,
                fingerprint=digest,
                label=REGION_LABELS[region],
                page_ids=[p.id for p in sharing],
                page_urls=[p.url for p in sharing],
            )

    remaining = []
    for issue in issues:
        group = groups.get((issue.dom_region, issue.region_fingerprint))
        if group is None:
            remaining.append(issue)
        else:
            _add_members(group, [issue])

    return LayerResult(groups=list(groups.values()), remaining=remaining)


# ── Layer 2 ─────────────────────────────────────


def _title_words(name: str, split_digits: bool) -> str:
    name = re.sub(r"[-_]", " ", name)
    if split_digits:
        name = re.sub(r"(\d+)", r" \1", name)
    return " ".join(w[:1].upper() + w[1:] for w in name.split())


def selector_label(selector: str) -> str:
    """`#button-addon2` -> "Repeated: Button Addon 2"."""
    id_match = re.search(r"#([\w-]+)", selector)
    class_match = re.search(r"\.([\w-]+)", selector)
    tag_match = re.match(r"(\w+)", selector)

    element_name = "Element"
    if id_match:
        element_name = _title_words(id_match.group(1), split_digits=True)
    elif class_match:
        element_name = _title_words(class_match.group(1), split_digits=False)
    elif tag_match:
        element_name = tag_match.group(1)[:1].upper() + tag_match.group(1)[1:]

    return f"Repeated: {element_name or 'Element'}"


def group_by_repeated_selector(
    pages: List[PageSnapshot],
    issues: List[IssueSnapshot],
    min_pages: int,
) -> LayerResult:
    urls = {p.id: p.url for p in pages}
    groups = []
    grouped_ids: Set[str] = set()

    for (rule_id, selector), members in _group_by_key(i for i in issues if i.target_selector).items():
        page_ids = _ordered_unique(i.page_id for i in members)
        if len(page_ids) < min_pages:
            continue
        group = GroupDraft(
            region=GroupRegion.repeated_element,
            fingerprint=f"selector:{rule_id}:{selector}",
            label=selector_label(selector),
            page_ids=page_ids,
            page_urls=[urls[pid] for pid in page_ids if pid in urls],
        )
        _add_members(group, members)
        groups.append(group)
        grouped_ids.update(i.id for i in members)

    return LayerResult(groups=groups, remaining=[i for i in issues if i.id not in grouped_ids])


# ── Layers 3 and 4 ──────────────────────────────


def _duplicate_page_group(
    candidates: List[PageSnapshot],
    issues: List[IssueSnapshot],
    fingerprint: str,
) -> Optional[GroupDraft]:
    """Fold the keys that recur on two or more of `candidates` into one group."""
    candidate_ids = {p.id for p in candidates}
    group = None

    for members in _group_by_key(i for i in issues if i.page_id in candidate_ids).values():
        if len({i.page_id for i in members}) < 2:
            continue
        if group is None:
            paths = [url_path(p.url) for p in candidates]
            group = GroupDraft(
                region=GroupRegion.duplicate_page,
                fingerprint=fingerprint,
                label=f"Duplicate Page: {', '.join(paths)}",
                page_ids=[p.id for p in candidates],
                page_urls=[p.url for p in candidates],
            )
        _add_members(group, members)

    return group


def _fold_candidate_sets(
    candidate_sets: Iterable[Tuple[str, List[PageSnapshot]]],
    issues: List[IssueSnapshot],
) -> LayerResult:
    groups = []
    grouped_ids: Set[str] = set()
    for fingerprint, candidates in candidate_sets:
        open_issues = [i for i in issues if i.id not in grouped_ids]
        group = _duplicate_page_group(candidates, open_issues, fingerprint)
        if group is not None:
            groups.append(group)
            grouped_ids.update(group.issue_ids)
    return LayerResult(groups=groups, remaining=[i for i in issues if i.id not in grouped_ids])


def group_duplicate_pages(pages: List[PageSnapshot], issues: List[IssueSnapshot]) -> LayerResult:
    """Pages keyed by their `main` digest, or `body` when the page has no main."""
    by_content: "OrderedDict[str, List[PageSnapshot]]" = OrderedDict()
    for page in pages:
        digest = content_fingerprint(page.regions_fingerprint)
        if digest:
            by_content.setdefault(digest, []).append(page)

    candidate_sets = [
        (f"main:{digest}", sharing) for digest, sharing in by_content.items() if len(sharing) >= 2
    ]
    return _fold_candidate_sets(candidate_sets, issues)


def group_by_issue_signature(
    pages: List[PageSnapshot],
    issues: List[IssueSnapshot],
    covered_urls: Set[str],
) -> LayerResult:
    """
    Second net for near-duplicates whose markup diverged: pages sharing a
    title and the exact set of ungrouped issue keys.
    """
    keys_by_page: Dict[str, List[str]] = {}
    for issue in issues:
        keys_by_page.setdefault(issue.page_id, []).append(f"{issue.rule_id}:{issue.target_selector or ''}")

    by_signature: "OrderedDict[str, List[PageSnapshot]]" = OrderedDict()
    for page in pages:
        if page.url in covered_urls or not page.title:
            continue
        keys = keys_by_page.get(page.id)
        if not keys:
            continue
        signature = f"{page.title}::{'|'.join(sorted(keys))}"
        by_signature.setdefault(signature, []).append(page)

    # One fingerprint per distinct signature
    candidate_sets = [
        (f"issue-sig:{sha256(signature)}", sharing)
        for signature, sharing in by_signature.items()
        if len(sharing) >= 2
    ]
    return _fold_candidate_sets(candidate_sets, issues)


# ── Pipeline ────────────────────────────────────


def run_layers(
    pages: List[PageSnapshot],
    issues: List[IssueSnapshot],
    threshold: float,
    min_shared_pages: int = 2,
) -> List[GroupDraft]:
    """Run all four layers in order over complete pages and their issues."""
    min_pages = min_pages_for_shared(len(pages), threshold, min_shared_pages)
    page_ids = {p.id for p in pages}
    remaining = [i for i in issues if i.page_id in page_ids]

    layer1 = group_by_region_fingerprint(pages, remaining, min_pages)
    layer2 = group_by_repeated_selector(pages, layer1.remaining, min_pages)
    layer3 = group_duplicate_pages(pages, layer2.remaining)

    covered_urls = {url for g in layer3.groups for url in g.page_urls}
    layer4 = group_by_issue_signature(pages, layer3.remaining, covered_urls)

    return layer1.groups + layer2.groups + layer3.groups + layer4.groups
