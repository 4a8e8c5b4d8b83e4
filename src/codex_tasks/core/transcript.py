"""Human-readable rendering of ``task.log`` lines for ``codex-tasks log``.

Engine events are passed through to the log untouched, so nothing here
may assume a field has the type the engine usually sends.
"""
from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger("codex_tasks.transcript")

_CHANGE_MARKERS = {"add": "A", "delete": "D", "update": "M"}


def _count(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _total_tokens(usage: dict[str, Any]) -> int:
    total = usage.get("total_tokens")
    if isinstance(total, int) and not isinstance(total, bool):
        return total
    breakdown = usage.get("total_token_usage")
    if isinstance(breakdown, dict):
        blended = breakdown.get("blended_total")
        if isinstance(blended, int) and not isinstance(blended, bool):
            return blended
    inputs = _count(usage.get("input_tokens"))
    cached = _count(usage.get("cached_input_tokens"))
    outputs = _count(usage.get("output_tokens"))
    return max(inputs - cached, 0) + outputs


def _render_change(change: Any) -> str:
    if isinstance(change, str):
        return f"M {change}"
    if not isinstance(change, dict):
        return "? <unknown>"
    marker = _CHANGE_MARKERS.get(_text(change.get("kind")) or "update", "?")
    return f"{marker} {_text(change.get('path')) or '<unknown>'}"


def _render_item(item: dict[str, Any]) -> list[str]:
    item_type = item.get("type")
    if item_type == "agent_message":
        text = item.get("text")
        return ["codex", text.rstrip()] if isinstance(text, str) else []
    if item_type == "reasoning":
        text = item.get("text")
        return ["thinking", text.rstrip(), ""] if isinstance(text, str) else []
    if item_type == "command_execution":
        exit_code = item.get("exit_code") or 0
        status = item.get("status") or "completed"
        lines = ["exec", str(item.get("command") or "").strip()]
        lines.append(f"succeeded (exit {exit_code})" if exit_code == 0 else f"exited {exit_code} ({status})")
        output = item.get("aggregated_output")
        if isinstance(output, str) and output.strip():
            lines.extend(output.splitlines())
        return lines
    if item_type == "file_change":
        lines = [f"file update ({item.get('status') or 'completed'})"]
        changes = item.get("changes")
        if isinstance(changes, list):
            lines.extend(_render_change(change) for change in changes)
        return lines
    if item_type == "web_search":
        query = item.get("query")
        return [f"searched: {query}"] if query else []
    if item_type == "mcp_tool_call":
        server = item.get("server") or "server"
        tool = item.get("tool") or "tool"
        return [f"tool {server}.{tool} {item.get('status') or 'completed'}"]
    return []


def render_event(event: dict[str, Any]) -> list[str]:
    """Render one decoded log entry; unknown shapes render to nothing."""
    event_type = event.get("type")
    if event_type == "user_message":
        message = _text(event.get("message"))
        return ["user", *message.splitlines(), ""] if message else []
    if event_type == "item.completed":
        item = event.get("item")
        return _render_item(item) if isinstance(item, dict) else []
    if event_type == "turn.completed":
        usage = event.get("usage")
        if not isinstance(usage, dict):
            return []
        return ["tokens used", f"{_total_tokens(usage):,}"]
    if event_type == "turn.failed":
        error = event.get("error")
        message = error.get("message") if isinstance(error, dict) else error
        return [f"ERROR: {message or 'turn failed'}"]
    if event_type == "error":
        message = event.get("message")
        return [f"ERROR: {message}"] if message else []
    if event_type == "stderr":
        message = event.get("message")
        return [f"[stderr] {message}"] if message else []
    if event_type == "worker.retry":
        return [f"retrying (attempt {event.get('attempt')}): {event.get('reason')}"]
    if event_type == "worker.stopped":
        return [f"worker stopped: {event.get('reason') or 'stopped'}"]
    if event_type == "worker.died":
        return [f"worker died: {event.get('reason') or 'unknown'}"]
    if event_type == "stdout":
        message = event.get("message")
        return [str(message)] if message else []
    return []


def render_line(raw_line: str) -> list[str]:
    trimmed = raw_line.strip()
    if not trimmed:
        return []
    try:
        event = json.loads(trimmed)
    except ValueError:
        logger.debug("Skipping non-JSON log line: %s", trimmed[:200])
        return []
    if not isinstance(event, dict):
        return []
    return render_event(event)
