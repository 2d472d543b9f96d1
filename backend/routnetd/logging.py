import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

# extra= keys copied into the JSON line when a record carries them
EVENT_FIELDS = ("phase", "backend", "op", "iface", "mac", "cmd", "rc")

_LEVEL_ENV = "ROUTNET_LOG_LEVEL"


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line: ts/level/logger/msg, then whichever event
    fields the call site attached. Fields set to None are left out.
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "ts": ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in EVENT_FIELDS:
            v = getattr(record, k, None)
            if v is not None:
                payload[k] = v

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), default=str)


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.environ.get(_LEVEL_ENV) or "INFO").upper()
    lvl = logging.getLevelName(name)
    return lvl if isinstance(lvl, int) else logging.INFO


def setup_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> logging.Handler:
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(_resolve_level(level))

    # stdout carries dry-run command echo and JSON output; logs go to stderr
    handler = logging.StreamHandler(stream=stream or sys.stderr)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    return handler
