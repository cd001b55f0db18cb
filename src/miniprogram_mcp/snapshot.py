"""Page snapshots and selector queries.

Both walk a list of live elements, capture what can be read from each one and
record a selector map entry per UID so the returned UIDs are immediately
actionable. A failed read only drops that field; it never aborts the element
or the batch.

The two paths differ on purpose in how colliding UIDs are handled: a full
snapshot keeps bare UIDs (a later duplicate takes over the map entry), while a
selector query suffixes duplicates as ``uid[2]``, ``uid[3]``, ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .elements import Element, Page, Position
from .uids import ElementIdentity, SelectorMapEntry, UidAllocator

logger = logging.getLogger(__name__)

T = TypeVar("T")

WILDCARD_SELECTOR = "*"
ROOT_CHILDREN_SELECTOR = "page > *"
TAGS_SOURCE = "tags"

# Built-in mini program components, queried one by one when "*" finds nothing.
COMPONENT_TAGS = (
    "view",
    "text",
    "button",
    "image",
    "input",
    "textarea",
    "picker",
    "switch",
    "slider",
    "scroll-view",
    "swiper",
    "icon",
    "rich-text",
    "progress",
    "navigator",
    "form",
    "checkbox",
    "radio",
    "cover-view",
    "cover-image",
)

SNAPSHOT_ATTRIBUTES = ("class", "id")
QUERY_ATTRIBUTES = ("class", "id", "data-testid")


# =============================================================================
# Data model
# =============================================================================


@dataclass
class ElementDescriptor:
    """What was readable from one element at capture time."""

    uid: str
    tag_name: str
    text: str | None = None
    attributes: dict[str, str] | None = None
    position: Position | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"uid": self.uid, "tagName": self.tag_name}
        if self.text:
            data["text"] = self.text
        if self.attributes:
            data["attributes"] = dict(self.attributes)
        if self.position is not None:
            data["position"] = self.position.to_dict()
        return data


@dataclass
class PageSnapshot:
    path: str
    elements: list[ElementDescriptor] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "elements": [el.to_dict() for el in self.elements],
        }


@dataclass
class SnapshotResult:
    """A snapshot together with the selector map entries for its UIDs."""

    snapshot: PageSnapshot
    selector_map: dict[str, SelectorMapEntry]


@dataclass
class QueryResult:
    """Elements matched by a selector query and their selector map entries."""

    selector: str
    elements: list[ElementDescriptor]
    selector_map: dict[str, SelectorMapEntry]


@dataclass
class ElementCapture:
    identity: ElementIdentity
    text: str | None
    attributes: dict[str, str]
    position: Position | None


# =============================================================================
# Capture
# =============================================================================


async def _optional(read: Callable[[], Awaitable[T]], what: str) -> T | None:
    """Run one field read; any failure means the field is absent."""
    try:
        return await read()
    except Exception as e:
        logger.debug(f"Could not read {what}: {e}")
        return None


def _position(size: Any, offset: Any) -> Position | None:
    if not isinstance(size, dict) or not isinstance(offset, dict):
        return None
    try:
        position = Position(
            left=float(offset["left"]),
            top=float(offset["top"]),
            width=float(size["width"]),
            height=float(size["height"]),
        )
    except (KeyError, TypeError, ValueError):
        return None
    if min(position.left, position.top, position.width, position.height) < 0:
        return None
    return position


async def capture_element(
    element: Element, attribute_names: Sequence[str] = SNAPSHOT_ATTRIBUTES
) -> ElementCapture:
    """Read text, attributes, size and offset of one element concurrently."""
    tag_name = getattr(element, "tag_name", None) or "unknown"

    text, size, offset, *values = await asyncio.gather(
        _optional(lambda: element.text(), f"text of <{tag_name}>"),
        _optional(lambda: element.size(), f"size of <{tag_name}>"),
        _optional(lambda: element.offset(), f"offset of <{tag_name}>"),
        *(
            _optional(
                lambda name=name: element.attribute(name),
                f"attribute {name} of <{tag_name}>",
            )
            for name in attribute_names
        ),
    )

    attributes = {
        name: str(value)
        for name, value in zip(attribute_names, values)
        if value
    }
    stripped = text.strip() if isinstance(text, str) else ""

    return ElementCapture(
        identity=ElementIdentity(
            tag_name,
            attributes.get("id", ""),
            attributes.get("class", ""),
        ),
        text=stripped or None,
        attributes=attributes,
        position=_position(size, offset),
    )


def _describe(capture: ElementCapture, uid: str) -> ElementDescriptor:
    return ElementDescriptor(
        uid=uid,
        tag_name=capture.identity.tag_name,
        text=capture.text,
        attributes=capture.attributes or None,
        position=capture.position,
    )


# =============================================================================
# Snapshot
# =============================================================================


async def _query_quietly(page: Page, selector: str) -> list[Element]:
    try:
        return list(await page.query_all(selector))
    except Exception as e:
        logger.debug(f"Query {selector!r} failed: {e}")
        return []


@dataclass
class CollectedElements:
    """Elements found on a page and the query step that found them."""

    source: str
    elements: list[Element]


async def collect_elements(page: Page) -> CollectedElements:
    """Find every element on the page.

    Wildcard support differs between environments, so this degrades from
    ``*`` to one query per known component tag, then to the root's children.
    ``source`` is the selector that produced the list, or ``"tags"`` for the
    per-tag step.
    """
    elements = await _query_quietly(page, WILDCARD_SELECTOR)
    if elements:
        return CollectedElements(WILDCARD_SELECTOR, elements)

    logger.info("Wildcard query found nothing, querying component tags")
    collected: list[Element] = []
    for tag in COMPONENT_TAGS:
        collected.extend(await _query_quietly(page, tag))
    if collected:
        return CollectedElements(TAGS_SOURCE, collected)

    logger.info("Component tag queries found nothing, querying root children")
    return CollectedElements(
        ROOT_CHILDREN_SELECTOR, await _query_quietly(page, ROOT_CHILDREN_SELECTOR)
    )


async def build_snapshot(page: Page) -> SnapshotResult:
    """Capture every element on ``page`` and the selector map for its UIDs.

    Map entries point at ``query_all(base_selector)[n]`` where ``n`` counts
    earlier captured elements that the base selector also matches. Elements
    from the root-children step replay ``page > *`` at their own position,
    because that step does not see the nested elements a base selector
    would match.
    """
    collected = await collect_elements(page)
    captures = await asyncio.gather(
        *(capture_element(el) for el in collected.elements)
    )

    descriptors: list[ElementDescriptor] = []
    entries: dict[str, SelectorMapEntry] = {}

    for position, capture in enumerate(captures):
        uid = capture.identity.uid(position)
        if collected.source == ROOT_CHILDREN_SELECTOR:
            entry = SelectorMapEntry(selector=ROOT_CHILDREN_SELECTOR, index=position)
        else:
            index = sum(
                1
                for earlier in captures[:position]
                if earlier.identity.matched_by(capture.identity)
            )
            entry = SelectorMapEntry(selector=capture.identity.base_selector, index=index)

        descriptors.append(_describe(capture, uid))
        entries[uid] = entry

    path = getattr(page, "path", "") or ""
    logger.info(f"Snapshot of {path}: {len(descriptors)} elements")
    return SnapshotResult(PageSnapshot(path, descriptors), entries)


# =============================================================================
# Selector query
# =============================================================================


async def query_elements(page: Page, selector: str) -> QueryResult:
    """Run ``selector`` and describe each match with a collision-free UID.

    Each entry replays ``selector`` itself with the element's position in the
    result list.
    """
    if not selector or not selector.strip():
        raise ValueError("Selector cannot be empty")

    elements = list(await page.query_all(selector))
    captures = await asyncio.gather(
        *(capture_element(el, QUERY_ATTRIBUTES) for el in elements)
    )

    allocator = UidAllocator()
    descriptors: list[ElementDescriptor] = []
    entries: dict[str, SelectorMapEntry] = {}

    for position, capture in enumerate(captures):
        uid = allocator.allocate(capture.identity.uid(position))
        descriptors.append(_describe(capture, uid))
        entries[uid] = SelectorMapEntry(selector=selector, index=position)

    return QueryResult(selector, descriptors, entries)


# =============================================================================
# Selector diagnosis
# =============================================================================

COMPONENT_STRATEGY = "Component selectors"
DIAGNOSTIC_STRATEGIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Universal selectors", (WILDCARD_SELECTOR,)),
    (COMPONENT_STRATEGY, COMPONENT_TAGS),
    ("Hierarchy selectors", (ROOT_CHILDREN_SELECTOR, "page view", "page text", "page button")),
    ("Attribute selectors", ("[class]", "[id]")),
)
CUSTOM_DETAIL_LIMIT = 5


@dataclass
class SelectorCount:
    """How many elements one selector matched, or why the query failed."""

    selector: str
    count: int = 0
    error: str | None = None


@dataclass
class SelectorDiagnosis:
    path: str
    strategies: list[tuple[str, list[SelectorCount]]] = field(default_factory=list)
    custom: SelectorCount | None = None
    custom_elements: list[ElementDescriptor] = field(default_factory=list)


async def count_matches(page: Page, selector: str) -> SelectorCount:
    try:
        return SelectorCount(selector, len(await page.query_all(selector)))
    except Exception as e:
        logger.debug(f"Query {selector!r} failed: {e}")
        return SelectorCount(selector, error=str(e))


async def diagnose_selectors(
    page: Page, test_all_strategies: bool = True, custom_selector: str | None = None
) -> SelectorDiagnosis:
    """Count matches for each step of the snapshot query cascade.

    With ``custom_selector``, also count its matches and describe up to five
    of them.
    """
    diagnosis = SelectorDiagnosis(path=getattr(page, "path", "") or "")
    if test_all_strategies:
        for title, selectors in DIAGNOSTIC_STRATEGIES:
            counts = [await count_matches(page, selector) for selector in selectors]
            diagnosis.strategies.append((title, counts))

    if custom_selector:
        diagnosis.custom = await count_matches(page, custom_selector)
        if 0 < diagnosis.custom.count <= CUSTOM_DETAIL_LIMIT:
            elements = await _query_quietly(page, custom_selector)
            captures = await asyncio.gather(*(capture_element(el) for el in elements))
            diagnosis.custom_elements = [
                _describe(capture, capture.identity.uid(position))
                for position, capture in enumerate(captures)
            ]
    return diagnosis
