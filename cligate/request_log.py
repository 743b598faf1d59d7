"""
Per-attempt request log.

Every upstream attempt is recorded with its candidate, scenario, outcome
class and latency. Entries live in an in-memory buffer (oldest 20% dropped
when full) and are optionally appended to a JSONL file that `cligate logs`
can read back later. Recording is fire-and-forget: failures are logged as
warnings and never reach request handling.
"""

from __future__ import annotations

import datetime
import json
import threading
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError

from cligate.logging_config import logger

_SUCCESS_OUTCOMES = {"success"}


class RequestLogEntry(BaseModel):
    timestamp: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )
    request_id: str
    provider_id: str
    model: Optional[str] = None
    scenario: Optional[str] = None
    outcome: str
    latency_ms: float
    status_code: Optional[int] = None
    detail: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.outcome not in _SUCCESS_OUTCOMES


class LogFilter(BaseModel):
    provider: Optional[str] = None
    outcome: Optional[str] = None
    errors_only: bool = False
    status_min: Optional[int] = None
    status_max: Optional[int] = None
    limit: int = Field(100, ge=1, le=10000)

    def matches(self, entry: RequestLogEntry) -> bool:
        if self.provider and entry.provider_id != self.provider:
            return False
        if self.outcome and entry.outcome != self.outcome:
            return False
        if self.errors_only and not entry.is_error:
            return False
        if self.status_min is not None and (
            entry.status_code is None or entry.status_code < self.status_min
        ):
            return False
        if self.status_max is not None and (
            entry.status_code is None or entry.status_code > self.status_max
        ):
            return False
        return True

    def apply(self, entries: Iterable[RequestLogEntry]) -> List[RequestLogEntry]:
        """Newest first, filtered, at most `limit` entries."""
        result: List[RequestLogEntry] = []
        for entry in sorted(reversed(list(entries)), key=lambda e: e.timestamp, reverse=True):
            if self.matches(entry):
                result.append(entry)
                if len(result) >= self.limit:
                    break
        return result


class RequestLog:
    def __init__(self, max_entries: int = 2000, file_path: str | Path | None = None) -> None:
        self.max_entries = max(1, max_entries)
        self.file_path = Path(file_path).expanduser() if file_path else None
        self._entries: List[RequestLogEntry] = []
        self._lock = threading.Lock()

    def record(
        self,
        *,
        request_id: str,
        provider_id: str,
        outcome: str,
        latency_ms: float,
        scenario: str | None = None,
        model: str | None = None,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        try:
            entry = RequestLogEntry(
                request_id=request_id,
                provider_id=provider_id,
                model=model,
                scenario=scenario,
                outcome=outcome,
                latency_ms=latency_ms,
                status_code=status_code,
                detail=detail,
            )
            with self._lock:
                if len(self._entries) >= self.max_entries:
                    keep = max(1, self.max_entries * 8 // 10)
                    del self._entries[: len(self._entries) - keep]
                self._entries.append(entry)
            if self.file_path is not None:
                self._append_to_file(entry)
        except (OSError, ValidationError, ValueError) as exc:
            logger.warning("request_log: failed to record attempt of %s: %s", request_id, exc)

    def _append_to_file(self, entry: RequestLogEntry) -> None:
        assert self.file_path is not None
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    def query(self, log_filter: LogFilter | None = None) -> List[RequestLogEntry]:
        with self._lock:
            entries = list(self._entries)
        return (log_filter or LogFilter()).apply(entries)

    def __len__(self) -> int:
        return len(self._entries)


def read_log_file(path: str | Path, log_filter: LogFilter | None = None) -> List[RequestLogEntry]:
    """Read a JSONL request log, skipping lines that do not parse."""
    entries: List[RequestLogEntry] = []
    with open(Path(path).expanduser(), "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(RequestLogEntry.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError):
                logger.debug("request_log: skipping unreadable line %d of %s", line_number, path)
    return (log_filter or LogFilter()).apply(entries)


__all__ = ["LogFilter", "RequestLog", "RequestLogEntry", "read_log_file"]
