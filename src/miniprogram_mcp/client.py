"""HTTP client for a mini program automation bridge.

The bridge runs next to the developer tools and exposes the automation SDK
over HTTP. ``RemotePage``, ``RemoteElement`` and ``RemoteMiniProgram`` adapt
it to the capability protocols in ``elements.py``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

import httpx

from .elements import EventHandler
from .errors import BridgeError

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE_PORT = 9420
DEFAULT_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 0.5

NAVIGATION_METHODS = ("navigateTo", "redirectTo", "reLaunch", "switchTab")


def get_windows_host() -> str:
    """Get the Windows host IP address from WSL.

    The developer tools usually run on Windows; from WSL2 the host is
    reachable via the nameserver in /etc/resolv.conf. Falls back to localhost.
    """
    try:
        with open("/etc/resolv.conf") as f:
            for line in f:
                if line.startswith("nameserver"):
                    return line.split()[1]
    except (FileNotFoundError, IndexError):
        pass
    return "localhost"


@dataclass
class BridgeResponse:
    """Response from the automation bridge."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None

    def unwrap(self, action: str) -> dict[str, Any]:
        """Return the payload or raise BridgeError."""
        if not self.success:
            raise BridgeError(f"{action} failed: {self.error or 'unknown error'}")
        return self.data or {}


class AutomationBridgeClient:
    """HTTP client for the automation bridge API."""

    def __init__(
        self,
        host: str | None = None,
        port: int = DEFAULT_BRIDGE_PORT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            host: Bridge host. Auto-detected from WSL if None.
            port: Bridge port. Defaults to 9420.
            transport: Optional httpx transport (used by tests).
        """
        self.host = host or os.environ.get("MINIPROGRAM_BRIDGE_HOST") or get_windows_host()
        self.port = int(os.environ.get("MINIPROGRAM_BRIDGE_PORT", port))
        self.base_url = f"http://{self.host}:{self.port}"
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=DEFAULT_TIMEOUT, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        params: dict[str, str] | None = None,
    ) -> BridgeResponse:
        """Make an HTTP request to the bridge.

        Args:
            method: HTTP method (GET or POST).
            endpoint: API endpoint path.
            json_data: Optional JSON body for POST requests.
            timeout: Request timeout in seconds.
            params: Optional query parameters for GET requests.
        """
        client = await self._get_client()
        url = f"{self.base_url}{endpoint}"

        try:
            if method == "GET":
                response = await client.get(url, params=params, timeout=timeout)
            elif method == "POST":
                response = await client.post(url, json=json_data, timeout=timeout)
            else:
                return BridgeResponse(
                    success=False, error=f"Unsupported method: {method}"
                )

            response.raise_for_status()
            data = response.json()
            return BridgeResponse(
                success=data.get("success", False),
                data=data.get("data"),
                error=data.get("error"),
            )
        except httpx.ConnectError as e:
            return BridgeResponse(
                success=False,
                error=f"Cannot connect to automation bridge at {url}. Is it running? Error: {e}",
            )
        except httpx.HTTPStatusError as e:
            return BridgeResponse(
                success=False,
                error=f"API error: {e.response.status_code} - {e.response.text}",
            )
        except httpx.TimeoutException:
            return BridgeResponse(
                success=False,
                error=f"Request timed out after {timeout}s",
            )
        except Exception as e:
            return BridgeResponse(success=False, error=str(e))

    # -------------------------------------------------------------------------
    # Health & Page
    # -------------------------------------------------------------------------

    async def health(self) -> BridgeResponse:
        """Check bridge health."""
        return await self._request("GET", "/health")

    async def current_page(self) -> BridgeResponse:
        """Get the current page.

        Data: {"path": "pages/index/index", "query": {"id": "7"}}
        """
        return await self._request("GET", "/page/current")

    async def query(self, selector: str, multiple: bool = True) -> BridgeResponse:
        """Query elements on the current page.

        Every call returns fresh element handles. Data:
        {"elements": [{"handle": "...", "tagName": "view"}, ...]}
        """
        return await self._request(
            "POST", "/page/query", {"selector": selector, "multiple": multiple}
        )

    async def element_call(
        self, handle: str, method: str, args: list[Any] | None = None
    ) -> BridgeResponse:
        """Call an element method (text, attribute, size, offset, tap, ...).

        Data: {"result": ...}
        """
        return await self._request(
            "POST", f"/element/{handle}/{method}", {"args": args or []}
        )

    # -------------------------------------------------------------------------
    # Navigation & Events
    # -------------------------------------------------------------------------

    async def navigate(
        self, method: str, url: str | None = None, delta: int | None = None
    ) -> BridgeResponse:
        """Navigate the mini program.

        Args:
            method: navigateTo, redirectTo, reLaunch, switchTab or navigateBack.
            url: Target page URL (not used by navigateBack).
            delta: Pages to go back (navigateBack only).
        """
        body: dict[str, Any] = {"method": method}
        if url is not None:
            body["url"] = url
        if delta is not None:
            body["delta"] = delta
        return await self._request("POST", "/navigate", body)

    async def events(self, cursor: int = 0) -> BridgeResponse:
        """Fetch console/exception events after ``cursor``.

        Data: {"events": [{"kind": "console", "type": "log", "args": [...]}, ...],
               "cursor": 42}
        """
        return await self._request("GET", "/events", params={"cursor": str(cursor)})


# =============================================================================
# Protocol adapters
# =============================================================================


class RemoteElement:
    """Element wrapper backed by a bridge handle."""

    def __init__(self, client: AutomationBridgeClient, handle: str, tag_name: str) -> None:
        self._client = client
        self.handle = handle
        self.tag_name = tag_name

    def __repr__(self) -> str:
        return f"RemoteElement(<{self.tag_name}> {self.handle})"

    async def _call(self, method: str, *args: Any) -> Any:
        response = await self._client.element_call(self.handle, method, list(args))
        return response.unwrap(f"{method} on <{self.tag_name}>").get("result")

    async def text(self) -> str:
        return str(await self._call("text") or "")

    async def attribute(self, name: str) -> str | None:
        value = await self._call("attribute", name)
        return None if value is None else str(value)

    async def size(self) -> dict[str, float]:
        return await self._call("size")

    async def offset(self) -> dict[str, float]:
        return await self._call("offset")

    async def tap(self) -> None:
        await self._call("tap")

    async def input(self, value: str) -> None:
        await self._call("input", value)

    async def clear(self) -> None:
        await self._call("clear")

    async def trigger(self, event_name: str, payload: dict[str, Any] | None = None) -> None:
        await self._call("trigger", event_name, payload or {})


class RemotePage:
    """The current page as seen through the bridge."""

    def __init__(
        self,
        client: AutomationBridgeClient,
        path: str,
        query: dict[str, Any] | None = None,
    ) -> None:
        self._client = client
        self.path = path
        self.query = dict(query or {})

    async def query_all(self, selector: str) -> list[RemoteElement]:
        data = (await self._client.query(selector)).unwrap(f'Query "{selector}"')
        return [
            RemoteElement(self._client, str(el["handle"]), el.get("tagName") or "unknown")
            for el in data.get("elements", [])
        ]

    async def query_one(self, selector: str) -> RemoteElement | None:
        data = (await self._client.query(selector, multiple=False)).unwrap(
            f'Query "{selector}"'
        )
        elements = data.get("elements", [])
        if not elements:
            return None
        el = elements[0]
        return RemoteElement(self._client, str(el["handle"]), el.get("tagName") or "unknown")


class RemoteMiniProgram:
    """Connected mini program: page access, navigation and an event emitter.

    Console and exception events are pulled from the bridge by a polling task
    and emitted to registered handlers.
    """

    def __init__(
        self,
        client: AutomationBridgeClient,
        poll_interval: float | None = None,
    ) -> None:
        self.client = client
        self.poll_interval = float(
            poll_interval
            if poll_interval is not None
            else os.environ.get("MINIPROGRAM_EVENT_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)
        )
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._cursor = 0
        self._poll_task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Event emitter
    # -------------------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def remove_all_listeners(self, event: str) -> None:
        self._handlers.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, [])):
            handler(payload)

    async def poll_events(self) -> int:
        """Fetch pending events once and emit them. Returns how many were emitted."""
        data = (await self.client.events(self._cursor)).unwrap("Fetching events")
        events = data.get("events", [])
        for event in events:
            kind = event.get("kind", "console")
            self.emit(kind, {k: v for k, v in event.items() if k != "kind"})
        self._cursor = int(data.get("cursor", self._cursor + len(events)))
        return len(events)

    def start_polling(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def stop_polling(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._poll_task
        self._poll_task = None

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_events()
            except BridgeError as e:
                logger.warning(f"Event polling failed: {e}")
            await asyncio.sleep(self.poll_interval)

    # -------------------------------------------------------------------------
    # Pages
    # -------------------------------------------------------------------------

    async def current_page(self) -> RemotePage:
        data = (await self.client.current_page()).unwrap("Getting current page")
        return RemotePage(self.client, data.get("path", ""), data.get("query"))

    async def navigate(self, method: str, url: str) -> RemotePage:
        if method not in NAVIGATION_METHODS:
            raise ValueError(f"method must be one of {', '.join(NAVIGATION_METHODS)}")
        (await self.client.navigate(method, url=url)).unwrap(f"{method} {url}")
        return await self.current_page()

    async def navigate_back(self, delta: int = 1) -> RemotePage:
        (await self.client.navigate("navigateBack", delta=delta)).unwrap("navigateBack")
        return await self.current_page()

    async def close(self) -> None:
        await self.stop_polling()
        await self.client.close()
