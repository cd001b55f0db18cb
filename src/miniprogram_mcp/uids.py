"""Element UIDs and the selector map that turns them back into live elements.

The automation SDK returns fresh wrapper objects on every query, so there is
no handle worth caching. A UID is instead mapped to a ``(selector, index)``
pair and the element is re-located by replaying the selector.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass

from .elements import Element, Page
from .errors import (
    IndexOutOfRangeError,
    NotConnectedError,
    StaleSelectorError,
    UnknownUidError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# UID generation
# =============================================================================


@dataclass(frozen=True)
class ElementIdentity:
    """The attributes a UID is derived from. Missing values are empty strings."""

    tag_name: str
    element_id: str = ""
    class_name: str = ""

    @property
    def first_class(self) -> str:
        parts = self.class_name.split()
        return parts[0] if parts else ""

    @property
    def base_selector(self) -> str:
        """tag#id, else tag.firstClass, else the bare tag."""
        if self.element_id:
            return f"{self.tag_name}#{self.element_id}"
        if self.first_class:
            return f"{self.tag_name}.{self.first_class}"
        return self.tag_name

    def matched_by(self, other: ElementIdentity) -> bool:
        """Whether ``query_all(other.base_selector)`` would return this element.

        A class selector matches the token anywhere in the class list, and a
        bare tag matches every element with that tag.
        """
        if self.tag_name != other.tag_name:
            return False
        if other.element_id:
            return self.element_id == other.element_id
        if other.first_class:
            return other.first_class in self.class_name.split()
        return True

    def uid(self, position: int) -> str:
        """UID for the element at 0-based ``position`` of its result list."""
        if self.element_id or self.first_class:
            return self.base_selector
        return f"{self.tag_name}:nth-child({position + 1})"


def generate_uid(
    tag_name: str, element_id: str | None, class_name: str | None, position: int
) -> str:
    """Pure UID rule: ``tag#id``, ``tag.firstClass`` or ``tag:nth-child(n)``."""
    return ElementIdentity(tag_name, element_id or "", class_name or "").uid(position)


async def read_identity(element: Element) -> ElementIdentity:
    """Read tag, id and class. A failed read counts as an empty value."""
    tag_name = getattr(element, "tag_name", None) or "unknown"
    values: dict[str, str] = {}
    for name in ("id", "class"):
        try:
            values[name] = (await element.attribute(name)) or ""
        except Exception as e:
            logger.debug(f"Reading {name} of <{tag_name}> failed: {e}")
            values[name] = ""
    return ElementIdentity(tag_name, values["id"], values["class"])


class UidAllocator:
    """Suffixes colliding UIDs within one query result: ``uid``, ``uid[2]``, ..."""

    def __init__(self) -> None:
        self._seen: dict[str, int] = {}

    def allocate(self, base_uid: str) -> str:
        count = self._seen.get(base_uid, 0) + 1
        self._seen[base_uid] = count
        if count == 1:
            return base_uid
        return f"{base_uid}[{count}]"


# =============================================================================
# Selector map
# =============================================================================


@dataclass(frozen=True)
class SelectorMapEntry:
    """Where to find a UID's element: ``query_all(selector)[index]``."""

    selector: str
    index: int


class SelectorMap:
    """UID -> selector map entry, owned by one session.

    A snapshot replaces the whole map; selector queries merge into it.
    """

    def __init__(self) -> None:
        self._entries: dict[str, SelectorMapEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, uid: object) -> bool:
        return uid in self._entries

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._entries))

    def get(self, uid: str) -> SelectorMapEntry | None:
        with self._lock:
            return self._entries.get(uid)

    def set(self, uid: str, entry: SelectorMapEntry) -> None:
        with self._lock:
            self._entries[uid] = entry

    def update(self, entries: Mapping[str, SelectorMapEntry]) -> None:
        with self._lock:
            self._entries.update(entries)

    def replace(self, entries: Mapping[str, SelectorMapEntry]) -> None:
        with self._lock:
            self._entries = dict(entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def snapshot(self) -> dict[str, SelectorMapEntry]:
        """Copy of the current entries."""
        with self._lock:
            return dict(self._entries)


async def resolve_uid(
    page: Page | None, selector_map: SelectorMap, uid: str
) -> Element:
    """Re-locate the live element for ``uid``.

    Raises:
        NotConnectedError: There is no current page.
        UnknownUidError: The UID is not in the selector map.
        StaleSelectorError: The selector now matches nothing.
        IndexOutOfRangeError: The selector matches fewer elements than recorded.
    """
    if page is None:
        raise NotConnectedError()

    entry = selector_map.get(uid)
    if entry is None:
        raise UnknownUidError(uid)

    logger.debug(f"Resolving {uid} via {entry.selector!r}[{entry.index}]")
    elements = await page.query_all(entry.selector)
    if not elements:
        raise StaleSelectorError(uid, entry.selector)
    if entry.index >= len(elements):
        raise IndexOutOfRangeError(uid, entry.selector, entry.index, len(elements))
    return elements[entry.index]
