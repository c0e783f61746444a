from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any


_RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        row: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                row[key] = value
        if record.exc_info:
            row["exc"] = self.formatException(record.exc_info)
        return json.dumps(row, separators=(",", ":"), default=str)


def configure_logging(level: str = "INFO", *, json_format: bool = True) -> None:
    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger("scaler_core")
    root.handlers = [handler]
    root.setLevel(level.upper())
    root.propagate = False


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **payload: Any) -> None:
    extra = {(f"{key}_" if key in _RESERVED else key): value for key, value in payload.items()}
    logger.log(level, event, extra=extra)
