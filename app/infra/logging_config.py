from __future__ import annotations

import json
import logging
import os
import traceback
from datetime import UTC, datetime
from typing import Any

from app.infra.request_context import RequestContextFilter

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [tenant=%(tenant_id)s actor=%(actor_id)s] %(message)s"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        tenant_id = getattr(record, "tenant_id", None)
        if tenant_id:
            payload["tenant_id"] = tenant_id
        actor_id = getattr(record, "actor_id", None)
        if actor_id:
            payload["actor_id"] = actor_id
        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(payload, default=str, ensure_ascii=False)


def build_handler(log_format: str | None = None) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.addFilter(RequestContextFilter())
    selected = (log_format or os.getenv("LOG_FORMAT", "text")).strip().lower()
    if selected == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    return handler


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_billing_handler", False):
            root.removeHandler(existing)
    handler = build_handler(log_format)
    handler._billing_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
