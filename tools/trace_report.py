#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import re
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Tuple


TRACE_RE = re.compile(r"pipeline_trace\s+(\{.*\})\s*$")


def _parse_trace_rows(path: Path) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            m = TRACE_RE.search(line.strip())
            if not m:
                continue
            try:
                row = json.loads(m.group(1))
            except json.JSONDecodeError:
                continue
            if not isinstance(row, dict) or not row.get("topic"):
                continue
            rows.append(row)
    return rows


def _group_rows(rows: List[Dict[str, Any]]) -> Dict[Tuple[str, str], List[Dict[str, Any]]]:
    grouped: Dict[Tuple[str, str], List[Dict[str, Any]]] = defaultdict(list)
    for row in rows:
        grouped[(str(row.get("session_id", "unknown")), str(row.get("topic", "")))].append(row)
    return grouped


def _summarize(grouped: Dict[Tuple[str, str], List[Dict[str, Any]]]) -> str:
    lines: List[str] = [f"groups={len(grouped)}"]
    for (session_id, topic), rows in sorted(grouped.items()):
        rows_sorted = sorted(rows, key=lambda r: int(r.get("trace_seq", 0) or 0))
        events: Dict[str, int] = defaultdict(int)
        for r in rows_sorted:
            events[str(r.get("event", ""))] += 1
        event_summary = ",".join(f"{k}:{v}" for k, v in sorted(events.items()))
        extra = ""
        if topic == "segment":
            reasons: Dict[str, int] = defaultdict(int)
            for r in rows_sorted:
                reasons[str(r.get("reason", ""))] += 1
            extra = " reasons=" + ",".join(f"{k}:{v}" for k, v in sorted(reasons.items()))
        elif topic == "reconcile":
            overlap = sum(int(r.get("overlap_words", 0) or 0) for r in rows_sorted)
            extra = f" overlap_words={overlap}"
        lines.append(f"[{session_id}] topic={topic} rows={len(rows_sorted)} events={event_summary}{extra}")
        for row in rows_sorted[-3:]:
            lines.append(
                "  - "
                f"trace_seq={int(row.get('trace_seq', 0) or 0)} event={row.get('event', '')} "
                f"seq={row.get('seq', '')} lang={row.get('lang', '')} chars={int(row.get('text_chars', 0) or 0)}"
            )
    return "\n".join(lines)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Summarize pipeline_trace rows from a server log.")
    p.add_argument("--log", required=True, help="Path to server log file")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    rows = _parse_trace_rows(Path(args.log).expanduser())
    print(_summarize(_group_rows(rows)))


if __name__ == "__main__":
    main()
