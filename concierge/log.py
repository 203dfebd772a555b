from __future__ import annotations

import json
import logging
import sys
from typing import Any


_TEXT_FORMAT = "[%(asctime)s] %(levelname)s %(name)s %(message)s"


class JsonLineFormatter(logging.Formatter):
    """One compact JSON object per record; structured events pass their fields through."""

    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
        }
        fields = getattr(record, "event_fields", None)
        if isinstance(fields, dict):
            base.update(fields)
        else:
            base["message"] = record.getMessage()
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return json.dumps(base, sort_keys=True, separators=(",", ":"), default=str)


def configure_logging(*, level: str = "INFO", fmt: str = "json") -> None:
    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root = logging.getLogger("concierge")
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.propagate = False


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    """
    Structured event line: {"component": ..., "call_id": ..., "event": ..., ...}.

    The text formatter gets the same fields rendered as sorted compact JSON.
    """
    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, **fields}
    logger.log(
        level,
        json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str),
        extra={"event_fields": payload},
        exc_info=exc_info,
    )
