"""Text utilities for outbound replies.

- ``chunk_text``: split text into pieces no longer than a limit, preferring
  to break at the last newline, then the last space, inside the window
- ``chunk_text_with_mode``: ``length`` (plain window chunking) or ``newline``
  (paragraph/line aware packing, falling back to window chunking)
- ``convert_markdown_tables``: render Markdown tables as ``code`` blocks,
  ``bullets`` or leave them alone (``off``); WeCom text messages do not
  render Markdown tables
"""

import re
from typing import List

_TABLE_SEPARATOR_RE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?\s*$")


def chunk_text(text: str, limit: int) -> List[str]:
    """Split ``text`` into chunks of at most ``limit`` characters.

    Chunks are right-trimmed, a single separator at the break is dropped and
    the remainder is left-trimmed. No chunk is empty.

    Example:
        >>> chunk_text("aaa bbb ccc", 7)
        ['aaa', 'bbb ccc']
    """
    if not text:
        return []
    if limit <= 0 or len(text) <= limit:
        return [text]

    chunks: List[str] = []
    remaining = text
    while len(remaining) > limit:
        window = remaining[:limit]
        last_newline = window.rfind("\n")
        last_space = window.rfind(" ")
        break_idx = last_newline if last_newline > 0 else last_space
        if break_idx <= 0:
            break_idx = limit

        chunk = remaining[:break_idx].rstrip()
        if chunk:
            chunks.append(chunk)

        broke_on_separator = break_idx < len(remaining) and remaining[break_idx].isspace()
        next_start = min(len(remaining), break_idx + (1 if broke_on_separator else 0))
        remaining = remaining[next_start:].lstrip()

    if remaining:
        chunks.append(remaining)
    return chunks


def _chunk_by_newline(text: str, limit: int) -> List[str]:
    chunks: List[str] = []
    current = ""
    for line in text.split("\n"):
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) <= limit:
            current = candidate
            continue
        if current.strip():
            chunks.append(current.rstrip())
        if len(line) > limit:
            pieces = chunk_text(line, limit)
            chunks.extend(pieces[:-1])
            current = pieces[-1] if pieces else ""
        else:
            current = line
    if current.strip():
        chunks.append(current.rstrip())
    return chunks


def chunk_text_with_mode(text: str, limit: int, mode: str = "length") -> List[str]:
    if mode == "newline":
        if not text:
            return []
        if limit <= 0 or len(text) <= limit:
            return [text]
        return _chunk_by_newline(text, limit)
    return chunk_text(text, limit)


def _split_row(line: str) -> List[str]:
    row = line.strip()
    if row.startswith("|"):
        row = row[1:]
    if row.endswith("|"):
        row = row[:-1]
    return [cell.strip() for cell in row.split("|")]


def _render_table(rows: List[List[str]], mode: str) -> List[str]:
    header, body = rows[0], rows[1:]
    if mode == "bullets":
        lines: List[str] = []
        for row in body:
            pairs = []
            for i, cell in enumerate(row):
                name = header[i] if i < len(header) else ""
                pairs.append(f"{name}: {cell}" if name else cell)
            lines.append("- " + "; ".join(p for p in pairs if p))
        return lines

    widths = [0] * max(len(r) for r in rows)
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    rendered = ["```"]
    for index, row in enumerate(rows):
        padded = [row[i].ljust(widths[i]) if i < len(row) else " " * widths[i] for i in range(len(widths))]
        rendered.append(" | ".join(padded).rstrip())
        if index == 0:
            rendered.append("-+-".join("-" * w for w in widths))
    rendered.append("```")
    return rendered


def convert_markdown_tables(text: str, mode: str = "code") -> str:
    """Rewrite Markdown tables for a plain-text channel.

    Args:
        text: Reply text
        mode: ``off`` (unchanged), ``bullets`` or ``code``
    """
    if not text or mode == "off" or "|" not in text:
        return text

    lines = text.split("\n")
    output: List[str] = []
    i = 0
    while i < len(lines):
        is_table = (
            "|" in lines[i]
            and i + 1 < len(lines)
            and _TABLE_SEPARATOR_RE.match(lines[i + 1])
        )
        if not is_table:
            output.append(lines[i])
            i += 1
            continue

        rows = [_split_row(lines[i])]
        i += 2
        while i < len(lines) and "|" in lines[i] and lines[i].strip():
            rows.append(_split_row(lines[i]))
            i += 1
        output.extend(_render_table(rows, mode))
    return "\n".join(output)
