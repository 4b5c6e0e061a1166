#!/usr/bin/env python3
"""
request_log.py — Per-request records with JSONL persistence and aggregate stats.

Provides:
  1. RequestRecord dataclass describing one chat completion
  2. RequestLog with dual storage:
     - In-memory ring buffer (deque) for /requests/recent
     - Append-only JSONL file for history
  3. Aggregate statistics: totals per status, error rate, avg/p50/p95 tok/s
     and latency

Usage:
    rlog = RequestLog()                         # logs/requests.jsonl by default
    rlog.record(RequestRecord(request_id="chatcmpl-abc", prompt_tokens=42, ...))
    rlog.recent(20)
    rlog.stats()
"""

import json
import logging
import os
import threading
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

log = logging.getLogger("request_log")

_DEFAULT_LOG_PATH = os.environ.get("REQUEST_LOG_PATH", "logs/requests.jsonl")
_DEFAULT_MAX_ENTRIES = int(os.environ.get("REQUEST_LOG_MAX", "10000"))

STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_TIMEOUT = "timeout"
STATUS_CANCELLED = "cancelled"


@dataclass
class RequestRecord:
    """Lifecycle record for a single /v1/chat/completions request."""

    request_id: str = ""
    timestamp: float = 0.0  # unix epoch when generation started
    model_id: str = ""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    max_tokens_requested: int = 0
    tool_calls: int = 0

    wall_time_s: float = 0.0
    tokens_per_second: float = 0.0

    status: str = STATUS_OK  # ok | error | timeout | cancelled
    error_message: Optional[str] = None
    finish_reason: str = ""  # stop | tool_calls | "" when never finished

    is_stream: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for key in ("timestamp", "wall_time_s", "tokens_per_second"):
            d[key] = round(d[key], 4)
        return d

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


class RequestLog:
    """
    Dual-store request logger: in-memory ring buffer + JSONL file.

    Thread-safe: all writes go through a single lock.

    Parameters:
        path:         JSONL file path (parent dirs created automatically)
        max_entries:  max entries in the in-memory ring buffer
        persist:      if False, skip file writes
    """

    def __init__(
        self,
        path: str = _DEFAULT_LOG_PATH,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
        persist: bool = True,
    ):
        self._path = Path(path)
        self._persist = persist
        self._lock = threading.Lock()
        self._buffer: Deque[RequestRecord] = deque(maxlen=max_entries)
        self._counts: Dict[str, int] = {
            STATUS_OK: 0,
            STATUS_ERROR: 0,
            STATUS_TIMEOUT: 0,
            STATUS_CANCELLED: 0,
        }
        self._total_count = 0
        self._total_completion_tokens = 0

        if self._persist:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                log.warning(
                    f"Could not create log directory {self._path.parent}: {e} — "
                    f"file logging disabled"
                )
                self._persist = False

        log.info(
            f"RequestLog initialized: path={self._path}, "
            f"max_entries={max_entries}, persist={self._persist}"
        )

    def record(self, entry: RequestRecord) -> None:
        with self._lock:
            self._buffer.append(entry)
            self._total_count += 1
            self._total_completion_tokens += entry.completion_tokens
            self._counts[entry.status] = self._counts.get(entry.status, 0) + 1

        # File write outside the lock
        if self._persist:
            try:
                with open(self._path, "a") as f:
                    f.write(entry.to_json_line() + "\n")
            except OSError as e:
                log.warning(f"Failed to write request log entry: {e}")

    def recent(self, n: int = 50) -> List[Dict[str, Any]]:
        if n <= 0:
            return []
        records = list(self._buffer)
        return [r.to_dict() for r in records[-n:]]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            records = list(self._buffer)
            counts = dict(self._counts)
            total = self._total_count
            total_tokens = self._total_completion_tokens

        result: Dict[str, Any] = {
            "total_requests": total,
            "ok": counts.get(STATUS_OK, 0),
            "errors": counts.get(STATUS_ERROR, 0),
            "timeouts": counts.get(STATUS_TIMEOUT, 0),
            "cancelled": counts.get(STATUS_CANCELLED, 0),
            "error_rate": round(counts.get(STATUS_ERROR, 0) / max(total, 1), 4),
            "total_completion_tokens": total_tokens,
            "buffer_size": len(records),
        }

        ok_records = [r for r in records if r.status == STATUS_OK]
        tps_values = sorted(
            r.tokens_per_second for r in ok_records if r.tokens_per_second > 0
        )
        latency_values = sorted(r.wall_time_s for r in ok_records if r.wall_time_s > 0)
        if tps_values:
            result["avg_tps"] = round(sum(tps_values) / len(tps_values), 2)
            result["p50_tps"] = round(_percentile(tps_values, 0.50), 2)
            result["p95_tps"] = round(_percentile(tps_values, 0.95), 2)
        if latency_values:
            result["avg_latency_s"] = round(sum(latency_values) / len(latency_values), 3)
            result["p50_latency_s"] = round(_percentile(latency_values, 0.50), 3)
            result["p95_latency_s"] = round(_percentile(latency_values, 0.95), 3)
        return result

    def clear(self) -> int:
        with self._lock:
            count = len(self._buffer)
            self._buffer.clear()
            self._total_count = 0
            self._total_completion_tokens = 0
            for key in self._counts:
                self._counts[key] = 0
        log.info(f"RequestLog cleared: {count} buffer entries")
        return count

    @property
    def log_path(self) -> str:
        return str(self._path)

    @property
    def entry_count(self) -> int:
        return self._total_count

    def __repr__(self) -> str:
        return (
            f"RequestLog(entries={self._total_count}, "
            f"buffer={len(self._buffer)}, path={self._path})"
        )


def _percentile(sorted_values: List[float], pct: float) -> float:
    """Nearest-rank percentile over a pre-sorted list."""
    if not sorted_values:
        return 0.0
    n = len(sorted_values)
    idx = max(0, min(int(pct * (n - 1)), n - 1))
    return sorted_values[idx]
