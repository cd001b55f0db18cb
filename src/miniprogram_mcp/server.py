"""MCP Server for mini program developer tools automation.

This server provides tools for:
- Capturing page snapshots whose element UIDs can be acted on directly
- Interacting with elements (click, input, trigger events) and navigating
- Asserting element state and waiting for conditions
- Two-phase console inspection: list short records, then fetch one in full
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server

from .client import NAVIGATION_METHODS, AutomationBridgeClient, RemoteMiniProgram
from .console import CLEAR_SCOPES, MESSAGE_TYPES
from .errors import AutomationError
from .formatting import (
    SNAPSHOT_FORMATS,
    estimate_tokens,
    format_console_event_verbose,
    format_message_page,
    format_query_results,
    format_selector_diagnosis,
    format_snapshot,
)
from .session import AutomationSession

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# MCP Server instance
server = Server("miniprogram-mcp")
session: AutomationSession | None = None


def get_session() -> AutomationSession:
    """Get or create the automation session."""
    global session
    if session is None:
        session = AutomationSession()
    return session


def _text(text: str) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=text)]


def _ms(value: Any, default: float) -> float:
    """Tool timeouts arrive in milliseconds; the core works in seconds."""
    return (float(value) if value is not None else default) / 1000


# -----------------------------------------------------------------------------
# Tool Definitions
# -----------------------------------------------------------------------------

_UID_PROPERTY = {
    "type": "string",
    "description": "Element uid from get_page_snapshot or $ (e.g. 'button#submit')",
}

TOOLS = [
    # Connection
    types.Tool(
        name="connect_devtools",
        description="""Connect to the automation bridge of the developer tools.

Gets the current page and starts console monitoring automatically.""",
        inputSchema={
            "type": "object",
            "properties": {
                "host": {
                    "type": "string",
                    "description": "Bridge host. Auto-detected when omitted.",
                },
                "port": {
                    "type": "integer",
                    "description": "Bridge port (default 9420)",
                },
            },
            "required": [],
        },
    ),
    types.Tool(
        name="get_current_page",
        description="Refresh and report the current page path.",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    types.Tool(
        name="get_page_info",
        description="Refresh the current page and report its path and query parameters.",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    # Snapshot & query
    types.Tool(
        name="get_page_snapshot",
        description="""Get a snapshot of the current page's elements with a uid for each.

Taking a snapshot invalidates every uid from earlier snapshots.

Output formats:
- compact: uid=button.submit button "Submit" pos=[100,400] size=[175x44]
- minimal: button.submit button "Submit"
- json: full JSON document""",
        inputSchema={
            "type": "object",
            "properties": {
                "format": {
                    "type": "string",
                    "enum": list(SNAPSHOT_FORMATS),
                    "default": "compact",
                },
                "include_position": {
                    "type": "boolean",
                    "description": "Include position (compact and json)",
                    "default": True,
                },
                "include_attributes": {
                    "type": "boolean",
                    "description": "Include attributes (compact and json)",
                    "default": False,
                },
                "max_elements": {
                    "type": "integer",
                    "minimum": 1,
                    "description": (
                        "Max elements to return. Only returned elements get "
                        "resolvable uids."
                    ),
                },
                "file_path": {
                    "type": "string",
                    "description": "Write the formatted snapshot to this file instead",
                },
            },
            "required": [],
        },
    ),
    types.Tool(
        name="$",
        description="""Find page elements by selector and return their details.

Matched elements get uids usable by click/input tools. Repeated uids in one
result are suffixed: view.item, view.item[2], view.item[3].""",
        inputSchema={
            "type": "object",
            "properties": {
                "selector": {
                    "type": "string",
                    "minLength": 1,
                    "description": "Selector, e.g. view.container, #myId, .myClass",
                },
            },
            "required": ["selector"],
        },
    ),
    types.Tool(
        name="debug_page_elements",
        description="""Count what each element query strategy finds on the current page.

Use this when get_page_snapshot comes back empty or short. Strategies: universal
(*), built-in component tags, hierarchy (page > *, page view, ...) and attribute
([class], [id]). A custom selector also lists up to 5 matches.""",
        inputSchema={
            "type": "object",
            "properties": {
                "test_all_strategies": {
                    "type": "boolean",
                    "description": "Run every built-in strategy",
                    "default": True,
                },
                "custom_selector": {
                    "type": "string",
                    "description": "Extra selector to count",
                },
            },
            "required": [],
        },
    ),
    # Interaction
    types.Tool(
        name="click",
        description="Tap the element with the given uid.",
        inputSchema={
            "type": "object",
            "properties": {
                "uid": _UID_PROPERTY,
                "dbl_click": {
                    "type": "boolean",
                    "description": "Tap twice",
                    "default": False,
                },
            },
            "required": ["uid"],
        },
    ),
    types.Tool(
        name="input_text",
        description="Type text into an input or textarea element.",
        inputSchema={
            "type": "object",
            "properties": {
                "uid": _UID_PROPERTY,
                "text": {"type": "string", "description": "The text to input"},
                "clear": {
                    "type": "boolean",
                    "description": "Clear the current value first",
                    "default": False,
                },
            },
            "required": ["uid", "text"],
        },
    ),
    types.Tool(
        name="trigger_event",
        description="Trigger a component event (e.g. change, longpress) on an element.",
        inputSchema={
            "type": "object",
            "properties": {
                "uid": _UID_PROPERTY,
                "event": {"type": "string", "description": "Event name"},
                "detail": {
                    "type": "object",
                    "description": "Event detail payload",
                },
            },
            "required": ["uid", "event"],
        },
    ),
    types.Tool(
        name="wait_for",
        description="""Wait for a delay or for a selector condition.

Provide either delay (ms) or selector. With a selector, optionally require
text, visibility, or disappearance.""",
        inputSchema={
            "type": "object",
            "properties": {
                "delay": {"type": "number", "description": "Milliseconds to wait"},
                "selector": {"type": "string"},
                "timeout": {
                    "type": "number",
                    "description": "Timeout in ms (default 5000)",
                    "default": 5000,
                },
                "text": {"type": "string"},
                "visible": {"type": "boolean"},
                "disappear": {"type": "boolean", "default": False},
            },
            "required": [],
        },
    ),
    # Assertions
    types.Tool(
        name="assert_exists",
        description="Assert an element (by selector or uid) exists or does not exist.",
        inputSchema={
            "type": "object",
            "properties": {
                "selector": {"type": "string"},
                "uid": _UID_PROPERTY,
                "should_exist": {"type": "boolean"},
                "timeout": {
                    "type": "number",
                    "description": "Timeout in ms (default 5000)",
                    "default": 5000,
                },
            },
            "required": ["should_exist"],
        },
    ),
    types.Tool(
        name="assert_visible",
        description="Assert an element is visible (non-zero size) or not.",
        inputSchema={
            "type": "object",
            "properties": {
                "uid": _UID_PROPERTY,
                "visible": {"type": "boolean"},
            },
            "required": ["uid", "visible"],
        },
    ),
    types.Tool(
        name="assert_text",
        description="Assert element text equals, contains, or matches a regex.",
        inputSchema={
            "type": "object",
            "properties": {
                "uid": _UID_PROPERTY,
                "text": {"type": "string"},
                "text_contains": {"type": "string"},
                "text_matches": {"type": "string"},
            },
            "required": ["uid"],
        },
    ),
    types.Tool(
        name="assert_attribute",
        description="Assert an element attribute has the given value.",
        inputSchema={
            "type": "object",
            "properties": {
                "uid": _UID_PROPERTY,
                "key": {"type": "string"},
                "value": {"type": "string"},
            },
            "required": ["uid", "key", "value"],
        },
    ),
    # Navigation
    types.Tool(
        name="navigate_to",
        description="""Navigate to a page.

Starts a new console navigation session; the oldest retained one is dropped.""",
        inputSchema={
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "e.g. /pages/detail/detail?id=1"},
                "method": {
                    "type": "string",
                    "enum": list(NAVIGATION_METHODS),
                    "default": "navigateTo",
                },
            },
            "required": ["url"],
        },
    ),
    types.Tool(
        name="navigate_back",
        description="Go back in the page stack.",
        inputSchema={
            "type": "object",
            "properties": {
                "delta": {"type": "integer", "minimum": 1, "default": 1},
            },
            "required": [],
        },
    ),
    # Console
    types.Tool(
        name="start_console_monitoring",
        description="Start capturing console messages and exceptions.",
        inputSchema={
            "type": "object",
            "properties": {
                "clear_existing": {"type": "boolean", "default": False},
            },
            "required": [],
        },
    ),
    types.Tool(
        name="stop_console_monitoring",
        description="Stop capturing console messages and exceptions.",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    types.Tool(
        name="list_console_messages",
        description="""List captured console messages in short form, newest first.

Each line: msgid=<id> [<type>] <message> (<n> args)
Use get_console_message with a msgid for full details.""",
        inputSchema={
            "type": "object",
            "properties": {
                "page_size": {"type": "integer", "minimum": 1},
                "page_idx": {"type": "integer", "minimum": 0, "default": 0},
                "types": {
                    "type": "array",
                    "items": {"type": "string", "enum": list(MESSAGE_TYPES)},
                },
                "include_preserved_messages": {
                    "type": "boolean",
                    "description": "Include messages from the last navigations",
                    "default": False,
                },
            },
            "required": [],
        },
    ),
    types.Tool(
        name="get_console_message",
        description="Get one console message or exception in full by msgid.",
        inputSchema={
            "type": "object",
            "properties": {
                "msgid": {"type": "integer", "minimum": 1},
            },
            "required": ["msgid"],
        },
    ),
    types.Tool(
        name="get_console",
        description="Get the latest console messages and exceptions of the current page.",
        inputSchema={
            "type": "object",
            "properties": {
                "type": {
                    "type": "string",
                    "enum": list(CLEAR_SCOPES),
                    "default": "all",
                },
                "limit": {"type": "integer", "default": 50},
                "since": {
                    "type": "string",
                    "description": "ISO 8601 timestamp; only later records",
                },
            },
            "required": [],
        },
    ),
    types.Tool(
        name="clear_console",
        description="Clear captured console messages, exceptions, or both.",
        inputSchema={
            "type": "object",
            "properties": {
                "type": {
                    "type": "string",
                    "enum": list(CLEAR_SCOPES),
                    "default": "all",
                },
            },
            "required": [],
        },
    ),
]


@server.list_tools()  # type: ignore
async def list_tools() -> list[types.Tool]:
    """List available automation tools."""
    return TOOLS


@server.call_tool()  # type: ignore
async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
    """Handle tool calls."""
    s = get_session()
    arguments = arguments or {}

    try:
        # Connection
        if name == "connect_devtools":
            client = AutomationBridgeClient(
                host=arguments.get("host"),
                **({"port": int(arguments["port"])} if arguments.get("port") else {}),
            )
            health = await client.health()
            if not health.success:
                await client.close()
                return _text(f"Error: {health.error}")

            if s.connected:
                await s.close()
            mini_program = RemoteMiniProgram(client)
            try:
                page = await mini_program.current_page()
            except Exception:
                await client.close()
                raise
            s.attach(mini_program, page)

            lines = [
                f"Connected to automation bridge at {client.base_url}",
                f"Current page: {page.path}",
            ]
            try:
                await s.start_monitoring()
                mini_program.start_polling()
                lines.append("Console monitoring started automatically")
            except AutomationError as e:
                lines.append(f"Warning: console monitoring failed to start - {e}")
            return _text("\n".join(lines))

        elif name == "get_current_page":
            page = await s.refresh_page()
            return _text(f"Current page: {page.path}")

        elif name == "get_page_info":
            page = await s.refresh_page()
            query = getattr(page, "query", None) or {}
            lines = ["Page info retrieved successfully", f"Path: {page.path}"]
            if query:
                lines.append(f"Query parameters: {json.dumps(query, ensure_ascii=False)}")
            lines.extend(
                [
                    "",
                    "Complete info:",
                    json.dumps({"path": page.path, "query": query}, indent=2, ensure_ascii=False),
                ]
            )
            return _text("\n".join(lines))

        # Snapshot & query
        elif name == "get_page_snapshot":
            fmt = arguments.get("format", "compact")
            include_position = arguments.get("include_position", True)
            include_attributes = arguments.get("include_attributes", False)
            max_elements = arguments.get("max_elements")
            file_path = arguments.get("file_path")

            result = await s.take_snapshot(max_elements=max_elements)
            snapshot = result.snapshot
            formatted = format_snapshot(
                snapshot,
                format=fmt,
                include_position=include_position,
                include_attributes=include_attributes,
            )

            if file_path:
                Path(file_path).write_text(formatted, encoding="utf-8")
                lines = [f"Page snapshot saved to: {file_path}"]
            else:
                lines = ["Page snapshot retrieved successfully"]
            lines.append(f"   Page path: {snapshot.path}")
            lines.append(f"   Element count: {len(snapshot.elements)}")
            lines.append(f"   Output format: {fmt}")
            if not file_path:
                lines.append(f"   Token estimate: ~{estimate_tokens(formatted)} tokens")
                lines.append("")
                lines.append(formatted)
            return _text("\n".join(lines))

        elif name == "$":
            selector = str(arguments.get("selector") or "")
            result = await s.query_by_selector(selector)
            return _text(format_query_results(selector, result.elements))

        elif name == "debug_page_elements":
            custom_selector = arguments.get("custom_selector")
            diagnosis = await s.diagnose_selectors(
                test_all_strategies=arguments.get("test_all_strategies", True),
                custom_selector=custom_selector or None,
            )
            return _text(format_selector_diagnosis(diagnosis))

        # Interaction
        elif name == "click":
            uid = arguments["uid"]
            dbl_click = arguments.get("dbl_click", False)
            await s.click(uid, double=dbl_click)
            action = "Double-clicked" if dbl_click else "Clicked"
            return _text(f"{action} element: {uid}")

        elif name == "input_text":
            uid = arguments["uid"]
            await s.input_text(uid, arguments["text"], clear_first=arguments.get("clear", False))
            return _text(f"Input text into element: {uid}")

        elif name == "trigger_event":
            uid = arguments["uid"]
            event = arguments["event"]
            await s.trigger(uid, event, arguments.get("detail"))
            return _text(f"Triggered {event} on element: {uid}")

        elif name == "wait_for":
            delay = arguments.get("delay")
            elapsed = await s.wait_for(
                delay=delay / 1000 if delay is not None else None,
                selector=arguments.get("selector"),
                timeout=_ms(arguments.get("timeout"), 5000),
                text=arguments.get("text"),
                visible=arguments.get("visible"),
                disappear=arguments.get("disappear", False),
            )
            return _text(f"Wait successful, took {elapsed * 1000:.0f}ms")

        # Assertions
        elif name in ("assert_exists", "assert_visible", "assert_text", "assert_attribute"):
            if name == "assert_exists":
                outcome = await s.assert_exists(
                    selector=arguments.get("selector"),
                    uid=arguments.get("uid"),
                    should_exist=arguments["should_exist"],
                    timeout=_ms(arguments.get("timeout"), 5000),
                )
            elif name == "assert_visible":
                outcome = await s.assert_visible(arguments["uid"], arguments["visible"])
            elif name == "assert_text":
                outcome = await s.assert_text(
                    arguments["uid"],
                    text=arguments.get("text"),
                    text_contains=arguments.get("text_contains"),
                    text_matches=arguments.get("text_matches"),
                )
            else:
                outcome = await s.assert_attribute(
                    arguments["uid"], arguments["key"], arguments["value"]
                )
            lines = [
                f"Assertion result: {'Passed' if outcome.passed else 'Failed'}",
                f"Message: {outcome.message}",
                f"Expected: {outcome.expected}",
                f"Actual: {outcome.actual}",
                f"Timestamp: {outcome.timestamp}",
            ]
            if not outcome.passed:
                lines.insert(0, f"Error: Assertion failed: {outcome.message}")
            return _text("\n".join(lines))

        # Navigation
        elif name == "navigate_to":
            page = await s.navigate(arguments.get("method", "navigateTo"), arguments["url"])
            return _text(
                f"Navigated to: {page.path}\n"
                "Take a new page snapshot before using uids."
            )

        elif name == "navigate_back":
            page = await s.navigate_back(int(arguments.get("delta", 1)))
            return _text(
                f"Navigated back to: {page.path}\n"
                "Take a new page snapshot before using uids."
            )

        # Console
        elif name == "start_console_monitoring":
            clear_existing = arguments.get("clear_existing", False)
            monitor = await s.start_monitoring(clear_existing=clear_existing)
            if isinstance(s.mini_program, RemoteMiniProgram):
                s.mini_program.start_polling()
            return _text(
                "Console monitoring started\n"
                f"Started at: {monitor.started_at}\n"
                f"Cleared existing records: {'yes' if clear_existing else 'no'}"
            )

        elif name == "stop_console_monitoring":
            was_running = await s.stop_monitoring()
            if isinstance(s.mini_program, RemoteMiniProgram):
                await s.mini_program.stop_polling()
            lines = [
                "Console monitoring stopped"
                if was_running
                else "Console monitoring was not running"
            ]
            if s.console_store is not None:
                messages, exceptions = s.console_store.counts()
                lines.append(f"Retained console messages: {messages}")
                lines.append(f"Retained exceptions: {exceptions}")
            return _text("\n".join(lines))

        elif name == "list_console_messages":
            page_result = await s.list_messages(
                page_size=arguments.get("page_size"),
                page_idx=arguments.get("page_idx", 0),
                types=arguments.get("types"),
                include_preserved=arguments.get("include_preserved_messages", False),
            )
            return _text(format_message_page(page_result))

        elif name == "get_console_message":
            record = await s.get_message(int(arguments["msgid"]))
            return _text(format_console_event_verbose(record))

        elif name == "get_console":
            messages, exceptions = await s.recent_console(
                kind=arguments.get("type", "all"),
                limit=int(arguments.get("limit", 50)),
                since=arguments.get("since"),
            )
            monitoring = s.monitoring
            lines = [
                "=== Console ===",
                f"Monitoring: {'running' if monitoring else 'stopped'}",
            ]
            if arguments.get("type", "all") != "exception":
                lines.append(f"\n--- Console messages ({len(messages)}) ---")
                for record in messages:
                    lines.append(format_console_event_verbose(record))
            if arguments.get("type", "all") != "console":
                lines.append(f"\n--- Exceptions ({len(exceptions)}) ---")
                for record in exceptions:
                    lines.append(format_console_event_verbose(record))
            return _text("\n".join(lines))

        elif name == "clear_console":
            cleared_console, cleared_exceptions = await s.clear_console(
                arguments.get("type", "all")
            )
            return _text(
                "Console data cleared\n"
                f"Console messages cleared: {cleared_console}\n"
                f"Exceptions cleared: {cleared_exceptions}"
            )

        else:
            return _text(f"Unknown tool: {name}")

    except (AutomationError, TimeoutError, ValueError) as e:
        logger.info(f"Tool {name} failed: {e}")
        return _text(f"Error: {e}")
    except Exception as e:
        logger.exception(f"Error calling tool {name}")
        return _text(f"Error: {str(e)}")


async def main() -> None:
    """Run the MCP server."""
    logger.info("Starting mini program automation MCP server")

    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


def run() -> None:
    """Entry point for the MCP server."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
