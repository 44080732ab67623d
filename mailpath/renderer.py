"""Output renderers — linear text, threaded tree, JSON (NDJSON), optional ANSI color."""

import json
import re
from typing import Callable

from mailpath.models import LogEvent, TraceResult

# ANSI color codes
COLORS = {
    "sent": "\033[32m",         # green
    "delivered": "\033[32m",    # green
    "deferred": "\033[33m",     # yellow
    "bounced": "\033[31m",      # red
    "expired": "\033[31m",      # red
    "undeliverable": "\033[31m",  # red
}
QUEUE_ID_COLORS = ("\033[36m", "\033[35m", "\033[34m", "\033[33m")
BOLD = "\033[1m"
RESET = "\033[0m"

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

STATUS_PATTERN = re.compile(r"\bstatus=(\w+)")

NO_QUEUE_ID = "-"


def not_found_message(result: TraceResult) -> str:
    return f"message-id {result.message_id} not found in the given sources"


def _colorize_status(payload: str) -> str:
    def repl(m: re.Match) -> str:
        color = COLORS.get(m.group(1))
        return f"{color}{m.group(0)}{RESET}" if color else m.group(0)
    return STATUS_PATTERN.sub(repl, payload)


def format_event(event: LogEvent, color: bool = False) -> str:
    """One trace line: timestamp, host, tag[pid] and the verbatim payload."""
    ts = event.timestamp.strftime(TIMESTAMP_FORMAT)
    tag = f"{event.tag}[{event.pid}]" if event.pid else event.tag
    payload = _colorize_status(event.payload) if color else event.payload
    return f"{ts} {event.host} {tag}: {payload}"


def render_text(result: TraceResult, color: bool = False) -> str:
    """Linear trace, annotated with the queue id once the path branches."""
    if not result.found:
        return not_found_message(result)

    ids = sorted(result.queue_ids)
    annotate = len(ids) > 1
    width = max((len(q) for q in ids), default=1)
    palette = {q: QUEUE_ID_COLORS[i % len(QUEUE_ID_COLORS)] for i, q in enumerate(ids)}

    lines = []
    for event in result.events:
        line = format_event(event, color=color)
        if annotate:
            qid = event.queue_id or NO_QUEUE_ID
            label = f"[{qid:<{width}}]"
            if color and event.queue_id:
                label = f"{palette[qid]}{label}{RESET}"
            line = f"{label} {line}"
        lines.append(line)
    return "\n".join(lines)


def _tree_roots(result: TraceResult) -> list[str]:
    return [q for q in sorted(result.queue_ids) if not result.predecessors(q)]


def render_tree(result: TraceResult, color: bool = False) -> str:
    """One box per queue id, children indented under the id they derive from."""
    if not result.found:
        return not_found_message(result)

    blocks: dict[str, list[str]] = {}
    loose = []
    for event in result.events:
        line = format_event(event, color=False)
        if event.queue_id is None:
            loose.append(line)
        else:
            blocks.setdefault(event.queue_id, []).append(line)

    out = list(loose)
    visited: set[str] = set()

    def title(qid: str, extra: str) -> str:
        name = f"{BOLD}{qid}{RESET}" if color else qid
        return f"[ {name}{extra} ]"

    def draw(qid: str, indent: int) -> None:
        if qid in visited:
            return
        visited.add(qid)
        lines = blocks.get(qid)
        if lines:
            pred = result.predecessors(qid)
            succ = result.successors(qid)
            head = title(qid, f", coming from {', '.join(pred)}" if pred else "")
            foot = title(qid, f", flowing into {', '.join(succ)}" if succ else "")
            # escape codes do not take up columns
            pad = len(head) - len(_strip_ansi(head))
            width = max(max(len(line) for line in lines), len(_strip_ansi(head)), len(_strip_ansi(foot)))
            margin = " " * indent
            if out:
                out.append("")
            out.append(f"{margin}┌─{head:─<{width + pad}}─┐")
            for line in lines:
                out.append(f"{margin}│ {line:<{width}} │")
            out.append(f"{margin}└─{foot:─<{width + pad}}─┘")
        for child in result.successors(qid):
            draw(child, indent + 4)

    for root in _tree_roots(result):
        draw(root, 2)
    # parents that left no lines, or cycles of recycled queue ids
    for qid in sorted(result.queue_ids - visited):
        draw(qid, 2)

    return "\n".join(out)


_ANSI = re.compile(r"\033\[[0-9;]*m")


def _strip_ansi(text: str) -> str:
    return _ANSI.sub("", text)


def render_json(result: TraceResult) -> str:
    """NDJSON — one object per event, compatible with jq."""
    if not result.found:
        return json.dumps({"message_id": result.message_id, "found": False})
    return "\n".join(
        json.dumps({
            "timestamp": e.timestamp.isoformat(),
            "queue_id": e.queue_id,
            "host": e.host,
            "tag": e.tag,
            "pid": e.pid,
            "payload": e.payload,
            "source": e.source,
            "line_no": e.line_no,
        })
        for e in result.events
    )


def get_renderer(output_format: str = "text", color: bool = False) -> Callable[[TraceResult], str]:
    """Factory that returns the right renderer based on args."""
    if output_format == "json":
        return render_json
    if output_format == "tree":
        return lambda result: render_tree(result, color=color)
    return lambda result: render_text(result, color=color)
