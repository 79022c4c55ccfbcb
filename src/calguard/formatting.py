"""Compact tabular text rendering for tool responses.

Rows render as::

    events[2]{summary,start,end}:
      Standup,2025-01-06T09:00:00+09:00,2025-01-06T09:15:00+09:00
      "Lunch, team",2025-01-06T12:00:00+09:00,2025-01-06T13:00:00+09:00
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

_QUOTE_TRIGGERS = (",", '"', "\n", "\r")


def format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if text != text.strip() or any(ch in text for ch in _QUOTE_TRIGGERS):
        return json.dumps(text, ensure_ascii=False)
    return text


def format_table(
    name: str,
    columns: Sequence[str],
    rows: Sequence[Mapping[str, Any]],
    *,
    indent: str = "  ",
) -> str:
    """Render *rows* under a ``name[N]{col,...}:`` header, one line per row."""
    lines = [f"{name}[{len(rows)}]{{{','.join(columns)}}}:"]
    for row in rows:
        lines.append(indent + ",".join(format_cell(row.get(column)) for column in columns))
    return "\n".join(lines)
