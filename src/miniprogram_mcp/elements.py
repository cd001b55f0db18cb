"""Capabilities the core needs from an automation SDK.

The core never touches concrete SDK types. Anything that exposes these
methods (the HTTP bridge adapter in ``client.py``, test fakes) can be driven.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

EventHandler = Callable[[dict[str, Any]], None]


class Element(Protocol):
    """One live element wrapper. Wrappers are fresh on every query."""

    tag_name: str

    async def text(self) -> str: ...

    async def attribute(self, name: str) -> str | None: ...

    async def size(self) -> dict[str, float]: ...

    async def offset(self) -> dict[str, float]: ...

    async def tap(self) -> None: ...

    async def input(self, value: str) -> None: ...

    async def clear(self) -> None: ...

    async def trigger(
        self, event_name: str, payload: dict[str, Any] | None = None
    ) -> None: ...


class Page(Protocol):
    """The current page of the mini program."""

    path: str

    async def query_all(self, selector: str) -> list[Element]: ...

    async def query_one(self, selector: str) -> Element | None: ...


class EventSource(Protocol):
    """Emitter of ``console`` and ``exception`` events."""

    def on(self, event: str, handler: EventHandler) -> None: ...

    def remove_all_listeners(self, event: str) -> None: ...


@dataclass(frozen=True)
class Position:
    """Element rectangle in page coordinates."""

    left: float
    top: float
    width: float
    height: float

    @property
    def visible(self) -> bool:
        return self.width > 0 and self.height > 0

    def to_dict(self) -> dict[str, float]:
        return {
            "left": self.left,
            "top": self.top,
            "width": self.width,
            "height": self.height,
        }
