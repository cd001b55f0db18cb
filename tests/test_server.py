"""Tests for the MCP tool surface: dispatch, argument mapping and error rendering."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
import pytest  # type: ignore[import-not-found]
from fakes import FakeMiniProgram, FakeNode, FakePage

from miniprogram_mcp import server
from miniprogram_mcp.client import AutomationBridgeClient
from miniprogram_mcp.session import AutomationSession


@pytest.fixture
def page() -> FakePage:
    return FakePage(
        [
            FakeNode("button", id="submit", text="Submit", offset=(100, 400), size=(175, 44)),
            FakeNode("view", cls="item", text="one"),
            FakeNode("view", cls="item", text="two"),
        ],
        path="pages/index/index",
    )


@pytest.fixture
def session(monkeypatch: pytest.MonkeyPatch, page: FakePage) -> AutomationSession:
    s = AutomationSession(max_navigations=3)
    s.attach(FakeMiniProgram({"/pages/index/index": page}), page)
    monkeypatch.setattr(server, "session", s)
    return s


def _call(name: str, arguments: dict[str, Any] | None = None) -> str:
    result = asyncio.run(server.call_tool(name, arguments or {}))
    return result[0].text


# =============================================================================
# Tool list
# =============================================================================


class TestListTools:
    def test_names(self) -> None:
        names = {tool.name for tool in asyncio.run(server.list_tools())}
        assert {
            "connect_devtools",
            "get_page_snapshot",
            "$",
            "click",
            "input_text",
            "assert_text",
            "navigate_to",
            "start_console_monitoring",
            "list_console_messages",
            "get_console_message",
            "get_page_info",
            "debug_page_elements",
        } <= names

    def test_schemas_are_objects(self) -> None:
        for tool in asyncio.run(server.list_tools()):
            assert tool.inputSchema["type"] == "object"


# =============================================================================
# Dispatch
# =============================================================================


class TestCallTool:
    def test_unknown_tool(self, session: AutomationSession) -> None:
        assert _call("screenshot") == "Unknown tool: screenshot"

    def test_snapshot(self, session: AutomationSession) -> None:
        text = _call("get_page_snapshot")
        assert "Page snapshot retrieved successfully" in text
        assert "Element count: 3" in text
        assert 'uid=button#submit button "Submit" pos=[100,400] size=[175x44]' in text

    def test_snapshot_to_file(self, session: AutomationSession, tmp_path: Path) -> None:
        target = tmp_path / "snapshot.json"
        text = _call("get_page_snapshot", {"format": "json", "file_path": str(target)})
        assert f"Page snapshot saved to: {target}" in text
        assert '"tagName": "button"' in target.read_text(encoding="utf-8")

    def test_click_unknown_uid(self, session: AutomationSession) -> None:
        text = _call("click", {"uid": "button#submit"})
        assert text.startswith("Error: UID not found: button#submit")

    def test_click_after_snapshot(self, session: AutomationSession, page: FakePage) -> None:
        _call("get_page_snapshot")
        assert _call("click", {"uid": "button#submit"}) == "Clicked element: button#submit"
        assert page.nodes[0].taps == 1

    def test_query(self, session: AutomationSession) -> None:
        text = _call("$", {"selector": ".item"})
        assert "Found 2 matching element(s):" in text
        assert "[2] view (uid: view.item[2])" in text

    def test_query_empty_selector(self, session: AutomationSession) -> None:
        assert _call("$", {"selector": ""}) == "Error: Selector cannot be empty"

    def test_failed_assertion_is_flagged(self, session: AutomationSession) -> None:
        _call("get_page_snapshot")
        text = _call("assert_text", {"uid": "button#submit", "text": "Cancel"})
        assert text.startswith('Error: Assertion failed: Text is "Submit"')
        assert "Assertion result: Failed" in text

    def test_passed_assertion(self, session: AutomationSession) -> None:
        text = _call("assert_exists", {"selector": ".item", "should_exist": True, "timeout": 0})
        assert text.startswith("Assertion result: Passed")

    def test_wait_for_timeout(self, session: AutomationSession) -> None:
        text = _call("wait_for", {"selector": "image", "timeout": 50})
        assert text.startswith("Error: Timed out after 0.05s")

    def test_not_connected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(server, "session", AutomationSession())
        assert _call("get_page_snapshot").startswith("Error: Not connected")


# =============================================================================
# Connection and page info
# =============================================================================


def _bridge_without_page(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/health":
        return httpx.Response(200, json={"success": True, "data": {"status": "ok"}})
    return httpx.Response(200, json={"success": False, "error": "no page"})


class _RecordingClient(AutomationBridgeClient):
    instances: list[_RecordingClient] = []

    def __init__(self, host: str | None = None, port: int = 9420) -> None:
        super().__init__(host="bridge.test", transport=httpx.MockTransport(_bridge_without_page))
        self.closed = False
        self.instances.append(self)

    async def close(self) -> None:
        self.closed = True
        await super().close()


class TestConnectionTools:
    def test_connect_closes_client_when_page_lookup_fails(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(server, "session", AutomationSession())
        monkeypatch.setattr(server, "AutomationBridgeClient", _RecordingClient)
        monkeypatch.setattr(_RecordingClient, "instances", [])

        text = _call("connect_devtools")
        assert text == "Error: Getting current page failed: no page"
        (client,) = _RecordingClient.instances
        assert client.closed
        assert not server.session.connected

    def test_get_current_page(self, session: AutomationSession) -> None:
        assert _call("get_current_page") == "Current page: pages/index/index"

    def test_page_info_without_query(self, session: AutomationSession) -> None:
        lines = _call("get_page_info").splitlines()
        assert lines[:2] == ["Page info retrieved successfully", "Path: pages/index/index"]
        assert not any(line.startswith("Query parameters") for line in lines)
        assert "Complete info:" in lines

    def test_page_info_with_query(self, monkeypatch: pytest.MonkeyPatch) -> None:
        detail = FakePage([], path="pages/detail/detail", query={"id": "7"})
        s = AutomationSession()
        s.attach(FakeMiniProgram({"/pages/detail/detail": detail}), None)
        monkeypatch.setattr(server, "session", s)

        text = _call("get_page_info")
        assert 'Query parameters: {"id": "7"}' in text
        assert '"path": "pages/detail/detail"' in text
        assert s.page is detail

    def test_page_info_not_connected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(server, "session", AutomationSession())
        assert _call("get_page_info").startswith("Error: Not connected")


class TestDebugPageElements:
    def test_all_strategies(self, session: AutomationSession) -> None:
        lines = _call("debug_page_elements").splitlines()
        assert "Page path: pages/index/index" in lines
        assert "   *: 3 elements" in lines
        assert "   view: 2 elements" in lines
        assert "   Total mini program components: 3 elements" in lines
        assert "   page > *: 3 elements" in lines

    def test_custom_selector_only(self, session: AutomationSession) -> None:
        text = _call(
            "debug_page_elements",
            {"test_all_strategies": False, "custom_selector": ".item"},
        )
        lines = text.splitlines()
        assert "Universal selectors:" not in lines
        assert "   .item: 2 elements" in lines
        assert '     [0] view - "one"' in lines
        assert '     [1] view - "two"' in lines

    def test_not_connected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(server, "session", AutomationSession())
        assert _call("debug_page_elements").startswith("Error: Not connected")


class TestConsoleTools:
    def test_storage_uninitialized(self, session: AutomationSession) -> None:
        text = _call("list_console_messages")
        assert text.startswith("Error: Console storage is not initialized")

    def test_list_and_get(self, session: AutomationSession) -> None:
        mp = session.mini_program

        async def scenario() -> tuple[str, str, str]:
            await server.call_tool("start_console_monitoring", {})
            mp.emit("console", {"type": "error", "args": ["Network timeout", 3000]})
            listed = await server.call_tool("list_console_messages", {"page_size": 10})
            full = await server.call_tool("get_console_message", {"msgid": 1})
            missing = await server.call_tool("get_console_message", {"msgid": 999})
            await server.call_tool("stop_console_monitoring", {})
            return listed[0].text, full[0].text, missing[0].text

        listed, full, missing = asyncio.run(scenario())
        assert "msgid=1 [error] Network timeout 3000 (2 args)" in listed
        assert "Arg #1: 3000" in full
        assert missing.startswith("Error: Message with msgid=999 not found")

    def test_unknown_type_filter(self, session: AutomationSession) -> None:
        async def scenario() -> str:
            await server.call_tool("start_console_monitoring", {})
            result = await server.call_tool("list_console_messages", {"types": ["bogus"]})
            await session.stop_monitoring()
            return result[0].text

        assert asyncio.run(scenario()) == "Error: Unknown message types: bogus"

    def test_clear(self, session: AutomationSession) -> None:
        mp = session.mini_program

        async def scenario() -> str:
            await server.call_tool("start_console_monitoring", {})
            mp.emit("console", {"type": "log", "args": ["a"]})
            mp.emit("exception", {"message": "b"})
            result = await server.call_tool("clear_console", {"type": "console"})
            await session.stop_monitoring()
            return result[0].text

        text = asyncio.run(scenario())
        assert "Console messages cleared: 1" in text
        assert "Exceptions cleared: 0" in text

    def test_get_console(self, session: AutomationSession) -> None:
        mp = session.mini_program

        async def scenario() -> str:
            await server.call_tool("start_console_monitoring", {})
            mp.emit("console", {"type": "warn", "args": ["low disk"]})
            result = await server.call_tool("get_console", {"type": "console", "limit": 5})
            await session.stop_monitoring()
            return result[0].text

        text = asyncio.run(scenario())
        assert "Monitoring: running" in text
        assert "--- Console messages (1) ---" in text
        assert "Type: warn" in text
        assert "Exceptions" not in text
