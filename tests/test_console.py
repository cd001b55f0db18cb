"""Tests for console capture: ID generation, the navigation-aware store and the monitor."""

from __future__ import annotations

import asyncio

import pytest  # type: ignore[import-not-found]
from fakes import FakeEmitter

from miniprogram_mcp.console import (
    ConsoleMonitor,
    ConsoleStore,
    normalize_type,
)
from miniprogram_mcp.errors import MessageNotFoundError
from miniprogram_mcp.formatting import format_message_page
from miniprogram_mcp.ids import MAX_SAFE_INTEGER, IdGenerator

# =============================================================================
# IdGenerator
# =============================================================================


class TestIdGenerator:
    def test_starts_at_one(self) -> None:
        gen = IdGenerator()
        assert [gen(), gen(), gen()] == [1, 2, 3]

    def test_peek_does_not_consume(self) -> None:
        gen = IdGenerator()
        assert gen.peek() == 1
        assert gen() == 1
        assert gen.peek() == 2

    def test_resumes_at_one_before_limit(self) -> None:
        gen = IdGenerator(limit=4)
        assert [gen(), gen(), gen(), gen()] == [1, 2, 3, 1]

    def test_never_reaches_max_safe_integer(self) -> None:
        gen = IdGenerator(start=MAX_SAFE_INTEGER - 1)
        assert gen() == MAX_SAFE_INTEGER - 1
        assert gen() == 1

    @pytest.mark.parametrize("start", [0, -1, MAX_SAFE_INTEGER])
    def test_invalid_start(self, start: int) -> None:
        with pytest.raises(ValueError, match="start must be in"):
            IdGenerator(start=start)


# =============================================================================
# Type normalization
# =============================================================================


class TestNormalizeType:
    def test_known(self) -> None:
        assert normalize_type("error") == "error"
        assert normalize_type("groupCollapsed") == "groupCollapsed"

    def test_aliases(self) -> None:
        assert normalize_type("warning") == "warn"

    def test_unknown_becomes_log(self) -> None:
        assert normalize_type("custom") == "log"
        assert normalize_type(None) == "log"


# =============================================================================
# ConsoleStore capture
# =============================================================================


class TestConsoleStoreCapture:
    def test_shared_increasing_ids(self) -> None:
        store = ConsoleStore()
        a = store.add_console("log", ["a"])
        b = store.add_exception("boom", stack="at foo")
        c = store.add_console("error", ["c"])
        assert [a.msgid, b.msgid, c.msgid] == [1, 2, 3]
        assert store.current.messages == [a, c]
        assert store.current.exceptions == [b]

    def test_message_preview(self) -> None:
        store = ConsoleStore()
        record = store.add_console("log", ["user", {"id": 1}, None, True])
        assert record.message == 'user {"id": 1} null true'
        assert record.arg_count == 4

    def test_long_message_truncated(self) -> None:
        store = ConsoleStore()
        record = store.add_console("log", ["x" * 500])
        assert record.message.startswith("x" * 200 + "...")
        assert "[500 chars total]" in record.message
        assert record.args == ["x" * 500]

    def test_timestamp_format(self) -> None:
        record = ConsoleStore().add_console("info", ["hi"])
        assert record.timestamp.endswith("Z")
        assert "T" in record.timestamp

    def test_invalid_max_navigations(self) -> None:
        with pytest.raises(ValueError):
            ConsoleStore(max_navigations=0)


# =============================================================================
# Navigation sessions
# =============================================================================


class TestNavigationSessions:
    def test_new_session_is_current(self) -> None:
        store = ConsoleStore()
        old = store.add_console("log", ["before"])
        store.start_navigation()
        new = store.add_console("log", ["after"])
        assert store.current.messages == [new]
        assert store.navigations[1].messages == [old]

    def test_eviction_drops_ids(self) -> None:
        store = ConsoleStore(max_navigations=3)
        first = store.add_console("log", ["first"])
        store.start_navigation()
        store.start_navigation()
        assert store.get_message(first.msgid) is first

        store.start_navigation()
        assert len(store.navigations) == 3
        with pytest.raises(MessageNotFoundError, match=f"msgid={first.msgid}"):
            store.get_message(first.msgid)
        assert first.msgid not in store

    def test_ids_continue_across_navigations(self) -> None:
        store = ConsoleStore()
        store.add_console("log", ["a"])
        store.start_navigation()
        assert store.add_console("log", ["b"]).msgid == 2


# =============================================================================
# Two-phase query
# =============================================================================


def _store_with(count: int) -> ConsoleStore:
    store = ConsoleStore()
    for i in range(count):
        timestamp = f"2024-01-01T00:00:{i:02d}.000Z"
        store.add_console("log", [f"message {i}"], timestamp=timestamp)
    return store


class TestListMessages:
    def test_newest_first(self) -> None:
        page = _store_with(3).list_messages()
        assert [r.msgid for r in page.records] == [3, 2, 1]

    def test_same_timestamp_orders_by_msgid(self) -> None:
        store = ConsoleStore()
        for text in ("a", "b", "c"):
            store.add_console("log", [text], timestamp="2024-01-01T00:00:00.000Z")
        assert [r.msgid for r in store.list_messages().records] == [3, 2, 1]

    def test_no_page_size_returns_all(self) -> None:
        page = _store_with(25).list_messages()
        assert len(page.records) == 25
        assert page.next_page is None

    def test_pagination(self) -> None:
        store = _store_with(25)

        first = store.list_messages(page_size=20, page_idx=0)
        assert len(first.records) == 20
        assert first.records[0].msgid == 25
        text = format_message_page(first)
        assert "Total: 25 messages" in text
        assert "Showing: 1-20" in text
        assert "Next page: 1" in text
        assert "Previous page" not in text

        second = store.list_messages(page_size=20, page_idx=1)
        assert [r.msgid for r in second.records] == [5, 4, 3, 2, 1]
        text = format_message_page(second)
        assert "Showing: 21-25" in text
        assert "Previous page: 0" in text
        assert "Next page" not in text

    def test_page_past_end(self) -> None:
        page = _store_with(5).list_messages(page_size=10, page_idx=3)
        assert page.records == []
        assert "Showing: none" in format_message_page(page)

    def test_type_filter(self) -> None:
        store = ConsoleStore()
        store.add_console("log", ["a"])
        err = store.add_console("error", ["b"])
        exc = store.add_exception("c")
        assert store.list_messages(types=["error"]).records == [err]
        assert store.list_messages(types=["exception"]).records == [exc]

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown message types: bogus"):
            ConsoleStore().list_messages(types=["bogus"])

    @pytest.mark.parametrize(("page_size", "page_idx"), [(0, 0), (-1, 0), (10, -1)])
    def test_invalid_paging(self, page_size: int, page_idx: int) -> None:
        with pytest.raises(ValueError):
            ConsoleStore().list_messages(page_size=page_size, page_idx=page_idx)

    def test_preserved_sessions(self) -> None:
        store = ConsoleStore()
        old = store.add_console("log", ["old"], timestamp="2024-01-01T00:00:00.000Z")
        store.start_navigation()
        new = store.add_console("log", ["new"], timestamp="2024-01-01T00:00:01.000Z")
        assert store.list_messages().records == [new]
        assert store.list_messages(include_preserved=True).records == [new, old]


class TestGetMessage:
    def test_found(self) -> None:
        store = _store_with(3)
        assert store.get_message(2).message == "message 1"

    def test_missing(self) -> None:
        with pytest.raises(MessageNotFoundError, match="999"):
            _store_with(3).get_message(999)


class TestClear:
    def test_clear_console_only(self) -> None:
        store = ConsoleStore()
        log = store.add_console("log", ["a"])
        exc = store.add_exception("boom")
        assert store.clear("console") == (1, 0)
        assert store.counts() == (0, 1)
        assert store.get_message(exc.msgid) is exc
        with pytest.raises(MessageNotFoundError):
            store.get_message(log.msgid)

    def test_clear_all_sessions(self) -> None:
        store = ConsoleStore()
        store.add_console("log", ["a"])
        store.start_navigation()
        store.add_exception("b")
        assert store.clear() == (1, 1)
        assert len(store) == 0

    def test_invalid_scope(self) -> None:
        with pytest.raises(ValueError, match="scope must be one of"):
            ConsoleStore().clear("everything")


class TestRecent:
    def test_limit_keeps_latest(self) -> None:
        messages, exceptions = _store_with(5).recent(limit=2)
        assert [r.msgid for r in messages] == [4, 5]
        assert exceptions == []

    def test_since(self) -> None:
        messages, _ = _store_with(5).recent(since="2024-01-01T00:00:03.000Z")
        assert [r.msgid for r in messages] == [4, 5]

    def test_kind(self) -> None:
        store = ConsoleStore()
        store.add_console("log", ["a"])
        store.add_exception("b")
        messages, exceptions = store.recent(kind="exception")
        assert messages == []
        assert len(exceptions) == 1


# =============================================================================
# ConsoleMonitor
# =============================================================================


class TestConsoleMonitor:
    def test_captures_in_arrival_order(self) -> None:
        async def scenario() -> ConsoleStore:
            store = ConsoleStore()
            emitter = FakeEmitter()
            monitor = ConsoleMonitor(emitter, store)
            monitor.start()
            emitter.emit("console", {"type": "log", "args": ["a"]})
            emitter.emit("exception", {"message": "boom", "stack": "at x"})
            emitter.emit("console", {"type": "warning", "args": ["b", 1]})
            await monitor.flush()
            await monitor.stop()
            return store

        store = asyncio.run(scenario())
        records = sorted(store.current.records(), key=lambda r: r.msgid)
        assert [(r.msgid, r.type) for r in records] == [
            (1, "log"),
            (2, "exception"),
            (3, "warn"),
        ]
        assert store.get_message(2).stack == "at x"
        assert store.get_message(3).message == "b 1"

    def test_navigation_marker_splits_sessions(self) -> None:
        async def scenario() -> ConsoleStore:
            store = ConsoleStore()
            emitter = FakeEmitter()
            monitor = ConsoleMonitor(emitter, store)
            monitor.start()
            emitter.emit("console", {"type": "log", "args": ["before"]})
            monitor.mark_navigation()
            emitter.emit("console", {"type": "log", "args": ["after"]})
            await monitor.stop()
            return store

        store = asyncio.run(scenario())
        assert [r.message for r in store.current.messages] == ["after"]
        assert [r.message for r in store.navigations[1].messages] == ["before"]

    def test_restart_replaces_listeners(self) -> None:
        async def scenario() -> tuple[int, int]:
            emitter = FakeEmitter()
            store = ConsoleStore()
            first = ConsoleMonitor(emitter, store)
            second = ConsoleMonitor(emitter, store)
            first.start()
            second.start()
            counts = (len(emitter.handlers["console"]), len(emitter.handlers["exception"]))
            await second.stop()
            await first.stop()
            return counts

        assert asyncio.run(scenario()) == (1, 1)

    def test_stop_unregisters(self) -> None:
        async def scenario() -> tuple[ConsoleStore, ConsoleMonitor]:
            store = ConsoleStore()
            emitter = FakeEmitter()
            monitor = ConsoleMonitor(emitter, store)
            monitor.start()
            assert monitor.running
            await monitor.stop()
            emitter.emit("console", {"type": "log", "args": ["late"]})
            await monitor.flush()
            return store, monitor

        store, monitor = asyncio.run(scenario())
        assert not monitor.running
        assert len(store) == 0

    def test_non_dict_payload(self) -> None:
        async def scenario() -> ConsoleStore:
            store = ConsoleStore()
            emitter = FakeEmitter()
            monitor = ConsoleMonitor(emitter, store)
            monitor.start()
            emitter.emit("console", "plain")  # type: ignore[arg-type]
            await monitor.stop()
            return store

        store = asyncio.run(scenario())
        assert store.get_message(1).message == "plain"
