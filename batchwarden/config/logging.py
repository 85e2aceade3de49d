"""Logging helpers.

The engine uses Python logging with a JSON formatter so job, unit and tenant
activity can be audited from log output alone.
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any

_STRUCTURED_EXTRAS = ("job_id", "tenant", "unit_id", "schedule_id", "budget", "event", "code", "reason")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Common structured extras (when provided).
        for k in _STRUCTURED_EXTRAS:
            v = getattr(record, k, None)
            if v is not None:
                base[k] = v

        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=True, sort_keys=True, default=str)


def apply_logging_config(cfg: dict[str, Any]) -> None:
    logging.config.dictConfig(cfg)
