"""Per-connection automation state.

One ``AutomationSession`` holds everything a caller's tool calls share: the
connected mini program, the current page, the selector map and the console
store. Separate sessions share nothing.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from . import assertions
from .console import (
    DEFAULT_MAX_NAVIGATIONS,
    ConsoleMonitor,
    ConsoleRecord,
    ConsoleStore,
    MessagePage,
)
from .elements import Element, EventSource, Page
from .errors import NotConnectedError, StorageUninitializedError
from .snapshot import (
    QueryResult,
    SelectorDiagnosis,
    SnapshotResult,
    build_snapshot,
    diagnose_selectors,
    query_elements,
)
from .uids import SelectorMap, resolve_uid

logger = logging.getLogger(__name__)


class AutomationSession:
    """State shared by the tool calls of one caller."""

    def __init__(self, max_navigations: int | None = None) -> None:
        self.max_navigations = int(
            max_navigations
            if max_navigations is not None
            else os.environ.get("MINIPROGRAM_MAX_NAVIGATIONS", DEFAULT_MAX_NAVIGATIONS)
        )
        self.mini_program: Any = None
        self.page: Page | None = None
        self.selector_map = SelectorMap()
        self.console_store: ConsoleStore | None = None
        self.monitor: ConsoleMonitor | None = None

    @property
    def connected(self) -> bool:
        return self.mini_program is not None

    @property
    def monitoring(self) -> bool:
        return self.monitor is not None and self.monitor.running

    def attach(self, mini_program: Any, page: Page | None) -> None:
        """Bind a connected mini program and its current page."""
        self.mini_program = mini_program
        self.page = page
        self.selector_map.clear()

    def set_page(self, page: Page | None) -> None:
        self.page = page

    def _require_page(self) -> Page:
        if self.page is None:
            raise NotConnectedError()
        return self.page

    async def refresh_page(self) -> Page:
        """Ask the mini program for its current page and make it ours."""
        if self.mini_program is None:
            raise NotConnectedError()
        self.page = await self.mini_program.current_page()
        return self.page

    # -------------------------------------------------------------------------
    # Snapshot & UIDs
    # -------------------------------------------------------------------------

    async def take_snapshot(self, max_elements: int | None = None) -> SnapshotResult:
        """Capture the page and make its UIDs the only resolvable ones.

        With ``max_elements`` only the first elements are returned and only
        their UIDs are installed in the selector map.
        """
        page = self._require_page()
        self.selector_map.clear()

        result = await build_snapshot(page)
        if max_elements is not None and max_elements > 0:
            shown = result.snapshot.elements[:max_elements]
            kept = {el.uid for el in shown}
            result.snapshot.elements = shown
            result.selector_map = {
                uid: entry for uid, entry in result.selector_map.items() if uid in kept
            }

        self.selector_map.replace(result.selector_map)
        return result

    async def resolve_uid(self, uid: str) -> Element:
        return await resolve_uid(self.page, self.selector_map, uid)

    async def query_by_selector(self, selector: str) -> QueryResult:
        """Query and merge the matches' suffixed UIDs into the selector map."""
        page = self._require_page()
        result = await query_elements(page, selector)
        self.selector_map.update(result.selector_map)
        return result

    async def diagnose_selectors(
        self, test_all_strategies: bool = True, custom_selector: str | None = None
    ) -> SelectorDiagnosis:
        return await diagnose_selectors(
            self._require_page(), test_all_strategies, custom_selector
        )

    # -------------------------------------------------------------------------
    # Interaction
    # -------------------------------------------------------------------------

    async def click(self, uid: str, double: bool = False) -> Element:
        element = await self.resolve_uid(uid)
        await element.tap()
        if double:
            await element.tap()
        return element

    async def input_text(self, uid: str, text: str, clear_first: bool = False) -> Element:
        element = await self.resolve_uid(uid)
        if clear_first:
            await element.clear()
        await element.input(text)
        return element

    async def trigger(
        self, uid: str, event_name: str, payload: dict[str, Any] | None = None
    ) -> Element:
        element = await self.resolve_uid(uid)
        await element.trigger(event_name, payload)
        return element

    async def navigate(self, method: str, url: str) -> Page:
        if self.mini_program is None:
            raise NotConnectedError()
        page = await self.mini_program.navigate(method, url)
        await self._after_navigation(page)
        return page

    async def navigate_back(self, delta: int = 1) -> Page:
        if self.mini_program is None:
            raise NotConnectedError()
        page = await self.mini_program.navigate_back(delta)
        await self._after_navigation(page)
        return page

    async def _after_navigation(self, page: Page) -> None:
        self.page = page
        if self.monitor is not None and self.monitoring:
            self.monitor.mark_navigation()
            await self.monitor.flush()
        elif self.console_store is not None:
            self.console_store.start_navigation()

    # -------------------------------------------------------------------------
    # Assertions & waits
    # -------------------------------------------------------------------------

    async def assert_exists(
        self,
        selector: str | None = None,
        uid: str | None = None,
        should_exist: bool = True,
        timeout: float = assertions.DEFAULT_TIMEOUT,
    ) -> assertions.AssertResult:
        return await assertions.assert_exists(
            self._require_page(),
            self.resolve_uid,
            selector=selector,
            uid=uid,
            should_exist=should_exist,
            timeout=timeout,
        )

    async def assert_visible(self, uid: str, visible: bool = True) -> assertions.AssertResult:
        return await assertions.assert_visible(await self.resolve_uid(uid), visible)

    async def assert_text(self, uid: str, **expected: str | None) -> assertions.AssertResult:
        return await assertions.assert_text(await self.resolve_uid(uid), **expected)

    async def assert_attribute(self, uid: str, key: str, value: str) -> assertions.AssertResult:
        return await assertions.assert_attribute(await self.resolve_uid(uid), key, value)

    async def wait_for(self, **condition: Any) -> float:
        return await assertions.wait_for(self._require_page(), **condition)

    # -------------------------------------------------------------------------
    # Console
    # -------------------------------------------------------------------------

    async def start_monitoring(
        self, source: EventSource | None = None, clear_existing: bool = False
    ) -> ConsoleMonitor:
        """Start capturing console/exception events from ``source``.

        The store survives restarts; ``clear_existing`` empties it first.
        """
        source = source or self.mini_program
        if source is None:
            raise NotConnectedError()

        if self.monitor is not None:
            await self.monitor.stop()
        if self.console_store is None:
            self.console_store = ConsoleStore(self.max_navigations)
        elif clear_existing:
            self.console_store.clear("all")

        self.monitor = ConsoleMonitor(source, self.console_store)
        self.monitor.start()
        return self.monitor

    async def stop_monitoring(self) -> bool:
        """Stop capturing. Returns whether monitoring was running."""
        if self.monitor is None:
            return False
        was_running = self.monitor.running
        await self.monitor.stop()
        return was_running

    def _require_store(self) -> ConsoleStore:
        if self.console_store is None:
            raise StorageUninitializedError()
        return self.console_store

    async def _settled_store(self) -> ConsoleStore:
        """The store, after every event emitted so far has been applied."""
        store = self._require_store()
        if self.monitor is not None and self.monitor.running:
            await self.monitor.flush()
        return store

    async def list_messages(
        self,
        page_size: int | None = None,
        page_idx: int = 0,
        types: list[str] | None = None,
        include_preserved: bool = False,
    ) -> MessagePage:
        store = await self._settled_store()
        return store.list_messages(page_size, page_idx, types, include_preserved)

    async def get_message(self, msgid: int) -> ConsoleRecord:
        store = await self._settled_store()
        return store.get_message(msgid)

    async def clear_console(self, scope: str = "all") -> tuple[int, int]:
        store = await self._settled_store()
        return store.clear(scope)

    async def recent_console(
        self, kind: str = "all", limit: int = 50, since: str | None = None
    ) -> tuple[list[ConsoleRecord], list[ConsoleRecord]]:
        store = await self._settled_store()
        return store.recent(kind, limit, since)

    async def close(self) -> None:
        await self.stop_monitoring()
        close = getattr(self.mini_program, "close", None)
        if close is not None:
            await close()
        self.mini_program = None
        self.page = None
        self.selector_map.clear()
