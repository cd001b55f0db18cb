"""Element assertions and condition waits."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .console import utc_timestamp
from .elements import Element, Page
from .errors import IndexOutOfRangeError, StaleSelectorError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
DEFAULT_TIMEOUT = 5.0


@dataclass
class AssertResult:
    passed: bool
    message: str
    expected: Any
    actual: Any
    timestamp: str = field(default_factory=utc_timestamp)


async def _is_visible(element: Element) -> bool:
    size = await element.size()
    return size.get("width", 0) > 0 and size.get("height", 0) > 0


async def assert_exists(
    page: Page,
    resolve: Callable[[str], Awaitable[Element]],
    selector: str | None = None,
    uid: str | None = None,
    should_exist: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
) -> AssertResult:
    """Poll until the element's existence matches ``should_exist`` or time runs out.

    A UID whose selector went stale counts as missing; an unknown UID is a
    caller error and propagates.
    """
    if not selector and not uid:
        raise ValueError("Must provide selector or uid")

    target = f'selector "{selector}"' if selector else f"uid {uid}"
    deadline = time.monotonic() + timeout
    while True:
        if selector:
            exists = await page.query_one(selector) is not None
        else:
            try:
                await resolve(uid or "")
                exists = True
            except (StaleSelectorError, IndexOutOfRangeError):
                exists = False

        if exists == should_exist or time.monotonic() >= deadline:
            break
        await asyncio.sleep(POLL_INTERVAL)

    expected = "exists" if should_exist else "does not exist"
    actual = "exists" if exists else "does not exist"
    return AssertResult(
        passed=exists == should_exist,
        message=f"Element {target} {actual}",
        expected=expected,
        actual=actual,
    )


async def assert_visible(element: Element, visible: bool = True) -> AssertResult:
    try:
        actual = await _is_visible(element)
    except Exception as e:
        logger.debug(f"Size read failed, treating as not visible: {e}")
        actual = False
    state = "visible" if actual else "not visible"
    return AssertResult(
        passed=actual == visible,
        message=f"Element is {state}",
        expected=visible,
        actual=actual,
    )


async def assert_text(
    element: Element,
    text: str | None = None,
    text_contains: str | None = None,
    text_matches: str | None = None,
) -> AssertResult:
    """Check element text by exact value, substring or regular expression."""
    if text is None and text_contains is None and text_matches is None:
        raise ValueError("Must specify one of text, text_contains or text_matches")

    actual = (await element.text() or "").strip()
    if text is not None:
        return AssertResult(
            passed=actual == text,
            message=f'Text equals "{text}"' if actual == text else f'Text is "{actual}"',
            expected=text,
            actual=actual,
        )
    if text_contains is not None:
        passed = text_contains in actual
        return AssertResult(
            passed=passed,
            message=(
                f'Text contains "{text_contains}"'
                if passed
                else f'Text "{actual}" does not contain "{text_contains}"'
            ),
            expected=f"contains {text_contains!r}",
            actual=actual,
        )
    passed = re.search(text_matches or "", actual) is not None
    return AssertResult(
        passed=passed,
        message=(
            f"Text matches /{text_matches}/"
            if passed
            else f'Text "{actual}" does not match /{text_matches}/'
        ),
        expected=f"matches /{text_matches}/",
        actual=actual,
    )


async def assert_attribute(element: Element, key: str, value: str) -> AssertResult:
    actual = await element.attribute(key)
    passed = actual == value
    return AssertResult(
        passed=passed,
        message=(
            f'Attribute {key} equals "{value}"'
            if passed
            else f'Attribute {key} is "{actual}", expected "{value}"'
        ),
        expected=value,
        actual=actual,
    )


async def wait_for(
    page: Page,
    delay: float | None = None,
    selector: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    text: str | None = None,
    visible: bool | None = None,
    disappear: bool = False,
) -> float:
    """Wait for a fixed delay or for a selector condition.

    Returns:
        Seconds waited.

    Raises:
        TimeoutError: The condition did not hold within ``timeout`` seconds.
    """
    started = time.monotonic()
    if delay is not None:
        await asyncio.sleep(delay)
        return time.monotonic() - started
    if not selector:
        raise ValueError("Must provide delay or selector")

    deadline = started + timeout
    while time.monotonic() < deadline:
        if await _condition_met(page, selector, text, visible, disappear):
            return time.monotonic() - started
        await asyncio.sleep(POLL_INTERVAL)

    description = f"selector {selector}"
    if disappear:
        description += " to disappear"
    if text:
        description += f' containing text "{text}"'
    if visible is not None:
        description += " visible" if visible else " hidden"
    raise TimeoutError(f"Timed out after {timeout:g}s waiting for {description}")


async def _condition_met(
    page: Page,
    selector: str,
    text: str | None,
    visible: bool | None,
    disappear: bool,
) -> bool:
    try:
        element = await page.query_one(selector)
        if disappear:
            return element is None
        if element is None:
            return False
        if text and text not in (await element.text() or ""):
            return False
        if visible is not None and await _is_visible(element) != visible:
            return False
        return True
    except Exception as e:
        logger.debug(f"Condition check for {selector!r} failed, retrying: {e}")
        return False
