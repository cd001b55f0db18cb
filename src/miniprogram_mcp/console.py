"""Console and exception capture with two-phase retrieval.

Records are grouped into navigation sessions (newest first). Only the last
``max_navigations`` sessions are kept; an evicted session takes its records
and their msgids with it. The msgid map is a secondary index over the
sessions, never a separate store.

Phase 1 (``list_messages``) returns a filtered, paginated page of records for
short rendering; phase 2 (``get_message``) fetches one record by msgid for
full rendering.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .elements import EventSource
from .errors import MessageNotFoundError
from .formatting import format_arg, truncate_field
from .ids import IdGenerator

logger = logging.getLogger(__name__)

FILTERABLE_MESSAGE_TYPES = (
    "log",
    "debug",
    "info",
    "error",
    "warn",
    "dir",
    "dirxml",
    "table",
    "trace",
    "clear",
    "group",
    "groupCollapsed",
    "groupEnd",
    "assert",
    "count",
    "timeEnd",
    "verbose",
)
EXCEPTION_TYPE = "exception"
MESSAGE_TYPES = FILTERABLE_MESSAGE_TYPES + (EXCEPTION_TYPE,)
CLEAR_SCOPES = ("all", "console", "exception")

DEFAULT_MAX_NAVIGATIONS = 3
DEFAULT_SOURCE = "miniprogram"
MESSAGE_PREVIEW_LENGTH = 200

_TYPE_ALIASES = {"warning": "warn", "err": "error"}


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with milliseconds, e.g. 2024-01-01T00:00:00.000Z."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def normalize_type(raw: Any) -> str:
    """Map an SDK console type onto the filterable set; unknown types become log."""
    value = str(raw or "log")
    value = _TYPE_ALIASES.get(value, value)
    return value if value in FILTERABLE_MESSAGE_TYPES else "log"


def message_preview(args: Iterable[Any]) -> str:
    return truncate_field(
        " ".join(format_arg(arg) for arg in args), MESSAGE_PREVIEW_LENGTH
    ) or ""


# =============================================================================
# Records
# =============================================================================


@dataclass
class ConsoleRecord:
    """One captured console message or exception."""

    msgid: int
    type: str
    message: str
    timestamp: str
    source: str = DEFAULT_SOURCE
    args: list[Any] | None = None
    stack: str | None = None

    @property
    def is_exception(self) -> bool:
        return self.type == EXCEPTION_TYPE

    @property
    def arg_count(self) -> int:
        return len(self.args) if self.args else 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "msgid": self.msgid,
            "type": self.type,
            "message": self.message,
            "timestamp": self.timestamp,
            "source": self.source,
        }
        if self.is_exception:
            if self.stack:
                data["stack"] = self.stack
        else:
            data["args"] = list(self.args or [])
        return data


@dataclass
class NavigationSession:
    """Records captured while one page was current."""

    timestamp: str = field(default_factory=utc_timestamp)
    messages: list[ConsoleRecord] = field(default_factory=list)
    exceptions: list[ConsoleRecord] = field(default_factory=list)

    def records(self) -> Iterator[ConsoleRecord]:
        yield from self.messages
        yield from self.exceptions


@dataclass
class MessagePage:
    """One page of a ``list_messages`` result.

    ``start`` and ``end`` index the filtered, sorted sequence (end exclusive).
    """

    records: list[ConsoleRecord]
    total: int
    page_idx: int
    page_size: int | None
    start: int
    end: int

    @property
    def next_page(self) -> int | None:
        return self.page_idx + 1 if self.end < self.total else None

    @property
    def previous_page(self) -> int | None:
        return self.page_idx - 1 if self.page_idx > 0 else None


# =============================================================================
# Store
# =============================================================================


class ConsoleStore:
    """Navigation sessions plus the msgid index over them.

    Every mutation updates the sessions and the index under one lock, so a
    reader never sees a record in one but not the other.
    """

    def __init__(
        self,
        max_navigations: int = DEFAULT_MAX_NAVIGATIONS,
        id_generator: IdGenerator | None = None,
    ) -> None:
        if max_navigations < 1:
            raise ValueError(f"max_navigations must be >= 1, got {max_navigations}")
        self.max_navigations = max_navigations
        self._next_id = id_generator or IdGenerator()
        self._navigations: list[NavigationSession] = [NavigationSession()]
        self._by_id: dict[int, ConsoleRecord] = {}
        self._lock = threading.RLock()

    @property
    def navigations(self) -> list[NavigationSession]:
        with self._lock:
            return list(self._navigations)

    @property
    def current(self) -> NavigationSession:
        with self._lock:
            return self._navigations[0]

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    def __contains__(self, msgid: object) -> bool:
        with self._lock:
            return msgid in self._by_id

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def add_console(
        self,
        type: str,
        args: Iterable[Any] | None = None,
        timestamp: str | None = None,
        source: str = DEFAULT_SOURCE,
    ) -> ConsoleRecord:
        """Record a console message in the current navigation session."""
        arg_list = list(args or [])
        with self._lock:
            record = ConsoleRecord(
                msgid=self._next_id(),
                type=normalize_type(type),
                message=message_preview(arg_list),
                timestamp=timestamp or utc_timestamp(),
                source=source,
                args=arg_list,
            )
            self._navigations[0].messages.append(record)
            self._by_id[record.msgid] = record
        return record

    def add_exception(
        self,
        message: str,
        stack: str | None = None,
        timestamp: str | None = None,
        source: str = DEFAULT_SOURCE,
    ) -> ConsoleRecord:
        """Record an exception in the current navigation session."""
        with self._lock:
            record = ConsoleRecord(
                msgid=self._next_id(),
                type=EXCEPTION_TYPE,
                message=message,
                timestamp=timestamp or utc_timestamp(),
                source=source,
                stack=stack,
            )
            self._navigations[0].exceptions.append(record)
            self._by_id[record.msgid] = record
        return record

    def start_navigation(self, timestamp: str | None = None) -> NavigationSession:
        """Open a new current session and evict sessions beyond the limit."""
        session = NavigationSession(timestamp=timestamp or utc_timestamp())
        with self._lock:
            self._navigations.insert(0, session)
            while len(self._navigations) > self.max_navigations:
                evicted = self._navigations.pop()
                dropped = 0
                for record in evicted.records():
                    if self._by_id.pop(record.msgid, None) is not None:
                        dropped += 1
                logger.debug(
                    f"Evicted navigation session from {evicted.timestamp} "
                    f"({dropped} records)"
                )
        return session

    # -------------------------------------------------------------------------
    # Two-phase query
    # -------------------------------------------------------------------------

    def list_messages(
        self,
        page_size: int | None = None,
        page_idx: int = 0,
        types: Iterable[str] | None = None,
        include_preserved: bool = False,
    ) -> MessagePage:
        """Phase 1: filtered, newest-first, paginated records.

        Args:
            page_size: Records per page. None returns everything in one page.
            page_idx: 0-based page index.
            types: Only keep records of these types ("exception" included).
            include_preserved: Also read sessions from earlier navigations.
        """
        if page_size is not None and page_size < 1:
            raise ValueError(f"page_size must be a positive integer, got {page_size}")
        if page_idx < 0:
            raise ValueError(f"page_idx must be non-negative, got {page_idx}")

        allowed: set[str] | None = None
        if types is not None:
            allowed = set(types)
            unknown = allowed.difference(MESSAGE_TYPES)
            if unknown:
                raise ValueError(f"Unknown message types: {', '.join(sorted(unknown))}")

        with self._lock:
            sessions = (
                self._navigations[: self.max_navigations]
                if include_preserved
                else self._navigations[:1]
            )
            records = [r for s in sessions for r in s.records()]

        if allowed is not None:
            records = [r for r in records if r.type in allowed]
        records.sort(key=lambda r: (r.timestamp, r.msgid), reverse=True)

        total = len(records)
        if page_size is None:
            start, end = 0, total
        else:
            start = min(page_idx * page_size, total)
            end = min(start + page_size, total)

        return MessagePage(
            records=records[start:end],
            total=total,
            page_idx=page_idx,
            page_size=page_size,
            start=start,
            end=end,
        )

    def get_message(self, msgid: int) -> ConsoleRecord:
        """Phase 2: one record by msgid.

        Raises:
            MessageNotFoundError: Never captured, cleared or evicted.
        """
        with self._lock:
            record = self._by_id.get(msgid)
        if record is None:
            raise MessageNotFoundError(msgid)
        return record

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def clear(self, scope: str = "all") -> tuple[int, int]:
        """Drop console messages, exceptions or both from every session.

        Returns:
            (cleared console messages, cleared exceptions)
        """
        if scope not in CLEAR_SCOPES:
            raise ValueError(f"scope must be one of {', '.join(CLEAR_SCOPES)}")

        cleared_console = cleared_exceptions = 0
        with self._lock:
            for session in self._navigations:
                if scope in ("all", "console"):
                    cleared_console += len(session.messages)
                    for record in session.messages:
                        self._by_id.pop(record.msgid, None)
                    session.messages.clear()
                if scope in ("all", "exception"):
                    cleared_exceptions += len(session.exceptions)
                    for record in session.exceptions:
                        self._by_id.pop(record.msgid, None)
                    session.exceptions.clear()
        return cleared_console, cleared_exceptions

    def counts(self) -> tuple[int, int]:
        """(console messages, exceptions) across retained sessions."""
        with self._lock:
            return (
                sum(len(s.messages) for s in self._navigations),
                sum(len(s.exceptions) for s in self._navigations),
            )

    def recent(
        self, kind: str = "all", limit: int = 50, since: str | None = None
    ) -> tuple[list[ConsoleRecord], list[ConsoleRecord]]:
        """Latest ``limit`` messages and exceptions of the current session.

        Args:
            kind: "all", "console" or "exception".
            limit: Max records per list.
            since: Only records at or after this ISO-8601 timestamp.
        """
        if kind not in CLEAR_SCOPES:
            raise ValueError(f"kind must be one of {', '.join(CLEAR_SCOPES)}")
        since_time = _parse_timestamp(since) if since else None

        def pick(records: list[ConsoleRecord]) -> list[ConsoleRecord]:
            if since_time is not None:
                records = [
                    r for r in records if _parse_timestamp(r.timestamp) >= since_time
                ]
            return records[-limit:] if limit > 0 else []

        with self._lock:
            session = self._navigations[0]
            messages = pick(list(session.messages)) if kind != "exception" else []
            exceptions = pick(list(session.exceptions)) if kind != "console" else []
        return messages, exceptions


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Monitor
# =============================================================================


class ConsoleMonitor:
    """Feeds ``console``/``exception`` events into a store through a queue.

    Event handlers only enqueue, so the emitting side never blocks and may even
    live on another thread. A consumer task applies queued items to the store
    in arrival order. Navigation markers use the same queue, so records
    captured before a navigation stay in the earlier session.
    """

    def __init__(self, source: EventSource, store: ConsoleStore) -> None:
        self.source = source
        self.store = store
        self.started_at: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[tuple[str, dict[str, Any], str]] | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Register handlers and start consuming. Needs a running event loop."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self.source.remove_all_listeners("console")
        self.source.remove_all_listeners("exception")
        self.source.on("console", self._on_console)
        self.source.on("exception", self._on_exception)
        self._task = self._loop.create_task(self._consume())
        self.started_at = utc_timestamp()
        logger.info("Console monitoring started")

    async def stop(self) -> None:
        """Unregister handlers, apply what is already queued, stop consuming."""
        self.source.remove_all_listeners("console")
        self.source.remove_all_listeners("exception")
        if self._task is None:
            return
        await self.flush()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        self._queue = None
        self._loop = None
        logger.info("Console monitoring stopped")

    async def flush(self) -> None:
        """Wait until every event emitted so far has reached the store."""
        if self._queue is None:
            return
        # Let pending call_soon_threadsafe puts land before joining.
        await asyncio.sleep(0)
        await self._queue.join()

    def mark_navigation(self) -> None:
        self._enqueue("navigation", {})

    def _on_console(self, payload: dict[str, Any]) -> None:
        self._enqueue("console", payload)

    def _on_exception(self, payload: dict[str, Any]) -> None:
        self._enqueue("exception", payload)

    def _enqueue(self, kind: str, payload: dict[str, Any]) -> None:
        if self._loop is None or self._queue is None:
            logger.warning(f"Dropping {kind} event: monitor not started")
            return
        self._loop.call_soon_threadsafe(
            self._queue.put_nowait, (kind, payload, utc_timestamp())
        )

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            kind, payload, timestamp = await self._queue.get()
            try:
                self._apply(kind, payload, timestamp)
            except Exception:
                logger.exception(f"Failed to store {kind} event")
            finally:
                self._queue.task_done()

    def _apply(self, kind: str, payload: Any, timestamp: str) -> None:
        if kind == "navigation":
            self.store.start_navigation(timestamp)
            return

        if not isinstance(payload, dict):
            payload = {"message": str(payload)} if kind == "exception" else {"args": [payload]}

        if kind == "console":
            record = self.store.add_console(
                payload.get("type") or "log",
                payload.get("args") or [],
                timestamp=timestamp,
            )
            logger.debug(f"[Console {record.type}] msgid={record.msgid} {record.message}")
        elif kind == "exception":
            record = self.store.add_exception(
                str(payload.get("message") or payload),
                stack=payload.get("stack"),
                timestamp=timestamp,
            )
            logger.debug(f"[Exception] msgid={record.msgid} {record.message}")
