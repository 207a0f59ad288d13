# core/logging_config.py

import logging
import json
from datetime import datetime, UTC
from typing import Optional

from core.request_context import get_request_id

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RESERVED_ATTRS = frozenset((
    "args", "msg", "levelname", "levelno",
    "pathname", "filename", "module",
    "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread",
    "threadName", "processName", "process",
    "name", "taskName", "message",
))


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": get_request_id(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            # explicit request_id in extra wins over the context var
            if key == "request_id":
                if value:
                    log_record["request_id"] = value
                continue
            if key not in log_record:
                log_record[key] = value

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str, ensure_ascii=False)


def setup_logging(level: Optional[str] = None, json_output: bool = True):
    # Prevent sensitive data from being logged by HTTP libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.setLevel((level or "INFO").upper())
    root.handlers.clear()
    root.addHandler(handler)
