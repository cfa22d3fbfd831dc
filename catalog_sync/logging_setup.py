from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from .common import now_epoch


@dataclass
class LogEvent:
    timestamp: int
    level: str
    message: str
    count: int = 1


class RecentEvents:
    """Bounded, thread-safe buffer of WARNING+ log lines for the status view."""

    def __init__(self, *, max_lines: int, dedupe_window_seconds: int, max_message_length: int):
        self.max_message_length = max(40, int(max_message_length))
        self.dedupe_window_seconds = max(1, int(dedupe_window_seconds))
        self._events: deque[LogEvent] = deque(maxlen=max(1, int(max_lines)))
        self._lock = threading.Lock()

    def _compact(self, message: str) -> str:
        collapsed = " ".join(str(message or "").split())
        if not collapsed:
            return "-"
        if len(collapsed) > self.max_message_length:
            return collapsed[: self.max_message_length - 3] + "..."
        return collapsed

    def add(self, *, level: str, message: str, now_ts: Optional[int] = None) -> None:
        ts = now_epoch() if now_ts is None else int(now_ts)
        level_name = str(level or "INFO").upper()
        text = self._compact(message)

        with self._lock:
            last = self._events[-1] if self._events else None
            if (
                last is not None
                and last.level == level_name
                and last.message == text
                and ts - last.timestamp <= self.dedupe_window_seconds
            ):
                last.count += 1
                last.timestamp = ts
                return
            self._events.append(LogEvent(timestamp=ts, level=level_name, message=text))

    def snapshot(self) -> List[LogEvent]:
        with self._lock:
            return list(self._events)


class LiveLogState:
    def __init__(self):
        self._active = threading.Event()

    def set_live_active(self, active: bool) -> None:
        if active:
            self._active.set()
        else:
            self._active.clear()

    def is_live_active(self) -> bool:
        return self._active.is_set()


class LiveAwareConsoleHandler(logging.StreamHandler):
    def __init__(self, *, live_state: LiveLogState, allow_while_live: bool):
        super().__init__()
        self.live_state = live_state
        self.allow_while_live = bool(allow_while_live)

    def emit(self, record: logging.LogRecord) -> None:
        if self.live_state.is_live_active() and not self.allow_while_live:
            return
        # Terminal stays one line per record; tracebacks only reach the file log.
        clean_record = logging.makeLogRecord(dict(record.__dict__))
        clean_record.exc_info = None
        clean_record.exc_text = None
        clean_record.stack_info = None
        super().emit(clean_record)


class RecentEventsHandler(logging.Handler):
    def __init__(self, *, events: RecentEvents, min_level: int = logging.WARNING):
        super().__init__(level=min_level)
        self.events = events

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            if record.exc_info and record.exc_info[1] is not None:
                exc = record.exc_info[1]
                detail = str(exc).strip()
                label = type(exc).__name__
                message = f"{message} ({label}: {detail})" if detail else f"{message} ({label})"
            self.events.add(level=record.levelname, message=message)
        except Exception:
            self.handleError(record)


@dataclass
class LoggingRuntime:
    live_state: LiveLogState
    events: RecentEvents
    log_file_path: Path


def configure_logging(config: Dict[str, Any]) -> LoggingRuntime:
    runtime_cfg = config.get("runtime", {})
    level = getattr(logging, str(runtime_cfg.get("log_level", "INFO")).upper(), logging.INFO)

    log_path = Path(str(runtime_cfg.get("log_file_path", "logs/catalog_sync.log"))).expanduser()
    if not log_path.is_absolute():
        log_path = (Path.cwd() / log_path).resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    console_mode = str(runtime_cfg.get("console_mode", "dashboard")).strip().lower()
    allow_raw_while_live = console_mode == "raw" or (
        level <= logging.DEBUG and bool(runtime_cfg.get("debug_raw_console_logs", False))
    )

    events = RecentEvents(
        max_lines=int(runtime_cfg.get("dashboard_event_lines", 8)),
        dedupe_window_seconds=int(runtime_cfg.get("dashboard_event_dedupe_window_seconds", 30)),
        max_message_length=int(runtime_cfg.get("dashboard_event_max_message_length", 160)),
    )
    live_state = LiveLogState()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=max(1024, int(runtime_cfg.get("log_file_max_bytes", 10485760))),
        backupCount=max(0, int(runtime_cfg.get("log_file_backup_count", 5))),
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = LiveAwareConsoleHandler(
        live_state=live_state,
        allow_while_live=allow_raw_while_live,
    )
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(RecentEventsHandler(events=events))

    logging.captureWarnings(True)

    for noisy in ("urllib3", "requests", "asyncio", "py.warnings"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return LoggingRuntime(
        live_state=live_state,
        events=events,
        log_file_path=log_path,
    )
