from __future__ import annotations

import json
import logging
import os
import sys
import threading
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger("resource_server.events")

_level_override = os.environ.get("PORTFOLIO_LOG_LEVEL", "").upper()
LOG_LEVEL = getattr(logging, _level_override, logging.INFO) if _level_override else logging.INFO

_lock = threading.Lock()
_counters: dict[str, int] = defaultdict(int)
_timings_ms: dict[str, list[float]] = defaultdict(list)
_MAX_TIMINGS = 2000


class JSONLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            log_obj.update(fields)
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, separators=(",", ":"), sort_keys=True, default=str)


def setup_logging() -> None:
    """Send every logger through one JSON handler on stdout."""
    root_logger = logging.getLogger()
    root_logger.setLevel(LOG_LEVEL)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONLogFormatter())
    root_logger.addHandler(console_handler)

    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        uv_logger = logging.getLogger(logger_name)
        for handler in list(uv_logger.handlers):
            uv_logger.removeHandler(handler)
        uv_logger.propagate = True


def log_event(event: str, **fields: Any) -> None:
    logger.info(event, extra={"fields": {"event": event, **fields}})


def increment(name: str, value: int = 1) -> None:
    with _lock:
        _counters[name] += value


def observe_ms(name: str, value: float) -> None:
    with _lock:
        _timings_ms[name].append(float(value))
        if len(_timings_ms[name]) > _MAX_TIMINGS:
            _timings_ms[name] = _timings_ms[name][-_MAX_TIMINGS:]


def counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def snapshot() -> dict[str, Any]:
    with _lock:
        out: dict[str, Any] = {"counters": dict(_counters), "timings_ms": {}}
        for name, values in _timings_ms.items():
            if not values:
                out["timings_ms"][name] = {"count": 0, "p95": 0.0}
                continue
            ordered = sorted(values)
            idx = max(0, int(0.95 * len(ordered)) - 1)
            out["timings_ms"][name] = {"count": len(values), "p95": ordered[idx]}
        return out
