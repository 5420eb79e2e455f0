# coding=utf-8
from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Dict

logger = logging.getLogger(__name__)


def hash8(text: str) -> str:
    src = str(text or "").encode("utf-8", errors="ignore")
    if not src:
        return "00000000"
    return hashlib.md5(src).hexdigest()[:8]


class PipelineTracer:
    """
    Structured per-session trace rows, logged as `pipeline_trace {json}`.

    Disabled tracers are no-ops so call sites never need a guard.
    """

    def __init__(self, session_id: str, enabled: bool = False) -> None:
        self.session_id = str(session_id or "")
        self.enabled = bool(enabled)
        self._seq = 0
        self._t0 = time.monotonic()

    def emit(self, topic: str, event: str, **payload: Any) -> None:
        if not self.enabled:
            return
        self._seq += 1
        row: Dict[str, Any] = {
            "topic": str(topic or ""),
            "event": str(event or ""),
            "session_id": self.session_id,
            "trace_seq": int(self._seq),
            "ts_ms": int(time.time() * 1000),
            "elapsed_ms": int((time.monotonic() - self._t0) * 1000),
        }
        if payload:
            row.update(payload)
        try:
            logger.info("pipeline_trace %s", json.dumps(row, ensure_ascii=False, separators=(",", ":")))
        except (TypeError, ValueError):
            logger.info("pipeline_trace %s", row)
