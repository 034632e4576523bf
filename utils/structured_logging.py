"""JSON logging for controller runs.

Every record carries the ``run_id`` of the controller pass that emitted it, so a
single invocation can be followed through concurrent fetches and dispatch.
"""
from __future__ import annotations

import json
import logging
import logging.config
import os
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from utils.logging_utils import install_sensitive_filter

RUN_ID_VAR: ContextVar[str] = ContextVar("aperture_controller_run_id", default="-")

# Attributes every LogRecord has; anything else arrived through ``extra=``.
_STANDARD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime", "run_id"}

PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(run_id)s] %(name)s: %(message)s"


class RunIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = current_run_id()
        return True


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)
    return value


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields are nested under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "run_id": getattr(record, "run_id", None) or current_run_id(),
            "msg": record.getMessage(),
        }
        context = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _plain_output_requested() -> bool:
    return os.getenv("CONTROLLER_LOG_PLAIN", "").strip().lower() in {"1", "true", "yes", "on"}


def configure_structured_logging(*, level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Install a single stderr handler on the root logger.

    ``CONTROLLER_LOG_PLAIN=1`` switches to a human-readable line format for
    operators running the controller by hand. ``LOG_LEVEL`` sets the level.
    """
    level_name = str(level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = not _plain_output_requested()

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"run_id": {"()": RunIdFilter}},
            "formatters": {
                "json": {"()": JsonLogFormatter},
                "plain": {"format": PLAIN_FORMAT},
            },
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "filters": ["run_id"],
                    "formatter": "json" if json_output else "plain",
                }
            },
            "root": {"level": getattr(logging, level_name, logging.INFO), "handlers": ["stderr"]},
        }
    )
    install_sensitive_filter(logging.getLogger())


def get_logger(name: str, *, mask_fields: Iterable[str] = ()) -> logging.Logger:
    logger = logging.getLogger(name)
    install_sensitive_filter(logger, fields=mask_fields)
    return logger


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def set_run_id(run_id: str):
    return RUN_ID_VAR.set(run_id)


def reset_run_id(token) -> None:
    RUN_ID_VAR.reset(token)


def current_run_id() -> str:
    return RUN_ID_VAR.get() or "-"
