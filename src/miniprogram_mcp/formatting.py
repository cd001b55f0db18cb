"""Text rendering for snapshots, query results and console records."""

from __future__ import annotations

import json
import math
from typing import TYPE_CHECKING, Any

from .snapshot import COMPONENT_STRATEGY

if TYPE_CHECKING:
    from .console import ConsoleRecord, MessagePage
    from .snapshot import ElementDescriptor, PageSnapshot, SelectorCount, SelectorDiagnosis

SNAPSHOT_FORMATS = ("compact", "minimal", "json")


# =============================================================================
# Output Size Helpers
# =============================================================================


def truncate_field(text: str | None, max_len: int) -> str | None:
    """Truncate a text field to max_len chars."""
    if not text or len(text) <= max_len:
        return text
    return f"{text[:max_len]}... [{len(text)} chars total]"


def estimate_tokens(text: str) -> int:
    """Rough token count (about 4 characters per token)."""
    return math.ceil(len(text) / 4)


def _num(value: float) -> str:
    return f"{value:.0f}" if float(value).is_integer() else f"{value:g}"


# =============================================================================
# Snapshot Formatting
# =============================================================================


def format_element_compact(
    element: ElementDescriptor,
    include_position: bool = True,
    include_attributes: bool = False,
) -> str:
    """Single-line compact format.

    uid=button.submit button "Submit" pos=[100,400] size=[175x44]
    """
    parts = [f"uid={element.uid}", element.tag_name]
    if element.text:
        parts.append(json.dumps(element.text, ensure_ascii=False))
    if include_position and element.position is not None:
        pos = element.position
        parts.append(f"pos=[{_num(pos.left)},{_num(pos.top)}]")
        parts.append(f"size=[{_num(pos.width)}x{_num(pos.height)}]")
    if include_attributes and element.attributes:
        attrs = " ".join(f'{k}="{v}"' for k, v in element.attributes.items())
        parts.append(f"attrs=[{attrs}]")
    return " ".join(parts)


def format_element_minimal(element: ElementDescriptor) -> str:
    parts = [element.uid, element.tag_name]
    if element.text:
        parts.append(json.dumps(element.text, ensure_ascii=False))
    return " ".join(parts)


def format_snapshot(
    snapshot: PageSnapshot,
    format: str = "compact",
    include_position: bool = True,
    include_attributes: bool = False,
) -> str:
    """Render a snapshot as compact lines, minimal lines or JSON."""
    if format not in SNAPSHOT_FORMATS:
        raise ValueError(f"format must be one of {', '.join(SNAPSHOT_FORMATS)}")

    if format == "json":
        data = snapshot.to_dict()
        for el in data["elements"]:
            if not include_position:
                el.pop("position", None)
            if not include_attributes:
                el.pop("attributes", None)
        return json.dumps(data, indent=2, ensure_ascii=False)

    if format == "minimal":
        lines = [format_element_minimal(el) for el in snapshot.elements]
    else:
        lines = [
            format_element_compact(el, include_position, include_attributes)
            for el in snapshot.elements
        ]
    return "\n".join([f"Page: {snapshot.path}", *lines])


def format_element_summary(element: ElementDescriptor, number: int) -> list[str]:
    """Multi-line block for one selector query match."""
    lines = [f"[{number}] {element.tag_name} (uid: {element.uid})"]
    if element.text:
        lines.append(f"    Text: {element.text}")
    if element.attributes:
        attrs = " ".join(f'{k}="{v}"' for k, v in element.attributes.items())
        lines.append(f"    Attributes: {attrs}")
    if element.position is not None:
        pos = element.position
        lines.append(
            f"    Position: ({_num(pos.left)}, {_num(pos.top)}) "
            f"Size: {_num(pos.width)}x{_num(pos.height)}"
        )
    return lines


def format_query_results(selector: str, elements: list[ElementDescriptor]) -> str:
    if not elements:
        return f'No elements found matching selector "{selector}"'
    lines = [f"Found {len(elements)} matching element(s):", ""]
    for number, element in enumerate(elements, start=1):
        lines.extend(format_element_summary(element, number))
        lines.append("")
    return "\n".join(lines).rstrip()


def _count_line(count: SelectorCount) -> str:
    if count.error is not None:
        return f"   {count.selector}: Failed - {count.error}"
    return f"   {count.selector}: {count.count} elements"


def format_selector_diagnosis(diagnosis: SelectorDiagnosis) -> str:
    """Per-strategy match counts. Component tags with no matches are left out."""
    lines = ["Page element diagnosis", f"Page path: {diagnosis.path}"]
    for title, counts in diagnosis.strategies:
        lines.extend(["", f"{title}:"])
        if title != COMPONENT_STRATEGY:
            lines.extend(_count_line(count) for count in counts)
            continue
        lines.extend(_count_line(count) for count in counts if count.count or count.error)
        total = sum(count.count for count in counts)
        lines.append(f"   Total mini program components: {total} elements")

    if diagnosis.custom is not None:
        lines.extend(["", "Custom selector:", _count_line(diagnosis.custom)])
        if diagnosis.custom_elements:
            lines.append("   Element details:")
        for i, element in enumerate(diagnosis.custom_elements):
            text = f' - "{element.text[:50]}"' if element.text else ""
            lines.append(f"     [{i}] {element.tag_name}{text}")
    return "\n".join(lines)


# =============================================================================
# Console Formatting
# =============================================================================


def format_arg(arg: Any) -> str:
    """Objects as JSON, everything else via str()."""
    if isinstance(arg, (dict, list, tuple)):
        try:
            return json.dumps(arg, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(arg)
    if arg is None:
        return "null"
    if isinstance(arg, bool):
        return "true" if arg else "false"
    return str(arg)


def format_console_event_short(record: ConsoleRecord) -> str:
    """msgid=123 [error] Network timeout (2 args)"""
    return (
        f"msgid={record.msgid} [{record.type}] {record.message} "
        f"({record.arg_count} args)"
    )


def format_console_event_verbose(record: ConsoleRecord) -> str:
    """Full record with every argument, or the stack trace for exceptions."""
    lines = [
        f"ID: {record.msgid}",
        f"Type: {record.type}",
        f"Timestamp: {record.timestamp or 'N/A'}",
    ]
    if record.source:
        lines.append(f"Source: {record.source}")
    if record.message:
        lines.append(f"Message: {record.message}")

    if record.is_exception:
        if record.stack:
            lines.append("### Stack Trace")
            lines.append(record.stack)
    elif record.args:
        lines.append("### Arguments")
        for i, arg in enumerate(record.args):
            lines.append(f"Arg #{i}: {format_arg(arg)}")

    return "\n".join(lines)


def format_pagination_info(page: MessagePage) -> list[str]:
    info = [f"Total: {page.total} messages"]
    if page.records:
        info.append(f"Showing: {page.start + 1}-{page.end}")
    else:
        info.append("Showing: none")
    if page.next_page is not None:
        info.append(f"Next page: {page.next_page}")
    if page.previous_page is not None:
        info.append(f"Previous page: {page.previous_page}")
    return info


def format_message_page(page: MessagePage) -> str:
    lines = format_pagination_info(page)
    lines.append("")
    lines.extend(format_console_event_short(r) for r in page.records)
    return "\n".join(lines).rstrip()
