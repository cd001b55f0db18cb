"""Errors raised by the automation core.

Every error here is caller-facing and recoverable: the caller re-captures a
snapshot, re-lists console messages, or connects first, then retries.
"""

from __future__ import annotations


class AutomationError(Exception):
    """Base class for all caller-facing automation errors."""


class NotConnectedError(AutomationError):
    """No active mini program connection or current page."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "Not connected. Call connect_devtools and get the current page first."
        )


class UnknownUidError(AutomationError):
    """The UID was never recorded, or a newer snapshot replaced it."""

    def __init__(self, uid: str) -> None:
        self.uid = uid
        super().__init__(
            f"UID not found: {uid}. "
            "Call get_page_snapshot to take a new page snapshot first."
        )


class StaleSelectorError(AutomationError):
    """The recorded selector no longer matches any element."""

    def __init__(self, uid: str, selector: str) -> None:
        self.uid = uid
        self.selector = selector
        super().__init__(
            f'Selector "{selector}" for UID {uid} found no elements. '
            "The page may have changed, take the snapshot again."
        )


class IndexOutOfRangeError(AutomationError):
    """The selector matches fewer elements than the recorded index."""

    def __init__(self, uid: str, selector: str, index: int, count: int) -> None:
        self.uid = uid
        self.selector = selector
        self.index = index
        self.count = count
        super().__init__(
            f"Element index {index} for UID {uid} is out of range "
            f'(selector "{selector}" found {count} elements). '
            "The page may have changed, take the snapshot again."
        )


class MessageNotFoundError(AutomationError):
    """The msgid is not in the ID map (never captured, cleared or evicted)."""

    def __init__(self, msgid: int) -> None:
        self.msgid = msgid
        super().__init__(
            f"Message with msgid={msgid} not found. "
            "It may have been cleared or evicted; call list_console_messages "
            "to get current IDs."
        )


class StorageUninitializedError(AutomationError):
    """Console monitoring was never started for this session."""

    def __init__(self) -> None:
        super().__init__(
            "Console storage is not initialized. "
            "Call start_console_monitoring first."
        )


class BridgeError(AutomationError):
    """The automation bridge rejected a call or could not be reached."""
