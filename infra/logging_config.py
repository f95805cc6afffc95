from __future__ import annotations

import json
import logging
import sys
from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:
    from infra.settings import Settings


_TEXT_FMT = "%(asctime)s %(levelname)s %(name)s | %(message)s"


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        # Add extra fields if they exist
        if hasattr(record, "extra_data"):
            log_entry.update(getattr(record, "extra_data"))

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(settings: "Settings | None" = None) -> None:
    """
    Idempotent-ish logging config.
    Importing this module does nothing; call setup_logging() from the entry point.
    If the root logger already has handlers (app or pytest), keep hands off.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    level_name = "INFO"
    fmt = "json"
    if settings is not None:
        level_name = settings.logging.level
        fmt = settings.logging.format

    if fmt == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(_TEXT_FMT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    logging.basicConfig(level=getattr(logging, level_name.upper(), logging.INFO), handlers=[handler])


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_kv(logger: logging.Logger, msg: str, level: int = logging.INFO, **kv: Any) -> None:
    """Log `msg | k=v ...` and attach the same pairs as extra_data for the JSON formatter."""
    if not kv:
        logger.log(level, msg)
        return
    pairs = " ".join(f"{k}={kv[k]!r}" for k in sorted(kv))
    logger.log(level, "%s | %s", msg, pairs, extra={"extra_data": dict(kv)})
