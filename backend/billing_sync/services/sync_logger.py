from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Union

from sqlalchemy.orm import sessionmaker

from billing_sync.repositories.sync_runs import (
    SEGMENT_STATUS_COLUMNS,
    insert_run_logs,
    update_segment_status,
)

LogScalar = Union[str, int, float, bool, None]
LogValue = Union[LogScalar, list["LogValue"], dict[str, "LogValue"]]
LogContext = dict[str, LogValue]

LOG_LEVELS: tuple[str, ...] = ("debug", "info", "warn", "error")

_STDLIB_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def normalize_context(context: dict[str, Any] | None) -> LogContext | None:
    """Coerce a context mapping into JSON-safe log values; unknown types become strings."""
    if context is None:
        return None
    return {str(key): _normalize_value(value) for key, value in context.items()}


def _normalize_value(value: Any) -> LogValue:
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _normalize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize_value(item) for item in value]
    return str(value)


@dataclass(frozen=True)
class SegmentLogLine:
    segment: str
    level: str
    message: str
    context: LogContext | None = None


@dataclass
class _SegmentBuffer:
    lines: list[SegmentLogLine] = field(default_factory=list)
    has_error: bool = False
    has_warning: bool = False


class SegmentLogger:
    """Per-run accumulator of segment log lines.

    Lines are mirrored to ``billing_sync.sync.<segment>`` immediately and written
    to ``sync_run_logs`` in one insert when the segment ends, together with the
    run's segment status column.
    """

    def __init__(self, *, sync_run_id: int, session_factory: sessionmaker):
        self.sync_run_id = sync_run_id
        self._session_factory = session_factory
        self._current: str | None = None
        self._buffers: dict[str, _SegmentBuffer] = {}
        self.segment_statuses: dict[str, str] = {}
        self._fallback_logger = logging.getLogger("billing_sync.sync")

    @property
    def current_segment(self) -> str | None:
        return self._current

    def start_segment(self, segment: str) -> None:
        if segment not in SEGMENT_STATUS_COLUMNS:
            raise ValueError(f"unknown sync segment: {segment}")
        self._current = segment
        self._buffers[segment] = _SegmentBuffer()
        self.info(f"Starting {segment.replace('_', ' ')} segment")

    def debug(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._log("debug", message, context)

    def info(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._log("info", message, context)

    def warn(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._log("warn", message, context)

    def error(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._log("error", message, context)

    def buffered_lines(self, segment: str) -> list[SegmentLogLine]:
        buffer = self._buffers.get(segment)
        return list(buffer.lines) if buffer else []

    def end_segment(self, status: str | None = None) -> str | None:
        """Flush the current segment and record its status; returns the status written."""
        segment = self._current
        if segment is None:
            return None
        buffer = self._buffers[segment]
        final_status = status or self._derive_status(buffer)
        self.info(f"Completed {segment.replace('_', ' ')} segment", {"status": final_status})
        self._current = None
        self._flush(segment, buffer.lines, final_status)
        return final_status

    def skip_segment(self, segment: str, reason: str) -> None:
        if segment not in SEGMENT_STATUS_COLUMNS:
            raise ValueError(f"unknown sync segment: {segment}")
        line = SegmentLogLine(segment=segment, level="info", message=f"Skipping segment: {reason}")
        self._buffers[segment] = _SegmentBuffer(lines=[line])
        self._mirror(line)
        self._flush(segment, [line], "skipped")

    def _log(self, level: str, message: str, context: dict[str, Any] | None) -> None:
        segment = self._current
        if segment is None:
            self._fallback_logger.warning("no segment started, not persisted message=%s", message)
            return
        buffer = self._buffers[segment]
        if level == "error":
            buffer.has_error = True
        elif level == "warn":
            buffer.has_warning = True
        line = SegmentLogLine(
            segment=segment,
            level=level,
            message=message,
            context=normalize_context(context),
        )
        buffer.lines.append(line)
        self._mirror(line)

    def _mirror(self, line: SegmentLogLine) -> None:
        logger = logging.getLogger(f"billing_sync.sync.{line.segment}")
        level = _STDLIB_LEVELS.get(line.level, logging.INFO)
        if line.context:
            logger.log(level, "%s context=%s", line.message, line.context)
        else:
            logger.log(level, "%s", line.message)

    def _flush(self, segment: str, lines: list[SegmentLogLine], status: str) -> None:
        rows = [
            {
                "sync_run_id": self.sync_run_id,
                "segment": line.segment,
                "level": line.level,
                "message": line.message,
                "context": line.context,
            }
            for line in lines
        ]
        with self._session_factory() as db:
            insert_run_logs(db, rows)
            update_segment_status(db, sync_run_id=self.sync_run_id, segment=segment, status=status)
            db.commit()
        self.segment_statuses[segment] = status

    @staticmethod
    def _derive_status(buffer: _SegmentBuffer) -> str:
        if buffer.has_error:
            return "error"
        if buffer.has_warning:
            return "warning"
        return "success"
