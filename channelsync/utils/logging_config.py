"""
Structured Logging Configuration

JSON log lines for the sync engine. Each line carries the trace id of the
invocation that produced it (one scheduler tick, one webhook delivery,
one CLI run) and the hotel being synced, so a whole run can be pulled out
of the aggregator with one filter.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

trace_id_var: ContextVar[str] = ContextVar('trace_id', default='')
hotel_id_var: ContextVar[str] = ContextVar('hotel_id', default='')

# LogRecord attribute -> JSON key, copied when a caller passed it in `extra`
OPTIONAL_FIELDS = (
    ("extra_data", "data"),
    ("duration_ms", "duration_ms"),
    ("entity_type", "entity_type"),
    ("entity_id", "entity_id"),
)

NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "apscheduler")


class JSONFormatter(logging.Formatter):
    """One JSON document per line"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for key, var in (("trace_id", trace_id_var), ("hotel_id", hotel_id_var)):
            value = var.get()
            if value:
                entry[key] = value

        for attr, key in OPTIONAL_FIELDS:
            if hasattr(record, attr):
                entry[key] = getattr(record, attr)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """LoggerAdapter with helpers for the two events every run emits"""

    def process(self, msg: str, kwargs: Dict[str, Any]):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def event(
        self,
        level: int,
        msg: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        duration_ms: Optional[int] = None,
        **data
    ):
        extra: Dict[str, Any] = {}
        if entity_type:
            extra["entity_type"] = entity_type
        if entity_id:
            extra["entity_id"] = entity_id
        if duration_ms is not None:
            extra["duration_ms"] = duration_ms
        if data:
            extra["extra_data"] = data
        self.log(level, msg, extra=extra)

    def sync_finished(self, entity_type: str, hotel_id: str, processed: int, failed: int, duration_ms: int):
        self.event(
            logging.INFO,
            f"{entity_type} sync finished for hotel {hotel_id}: {processed} processed, {failed} failed",
            entity_type=entity_type,
            entity_id=hotel_id,
            duration_ms=duration_ms,
            processed=processed,
            failed=failed,
        )

    def api_call(self, method: str, endpoint: str, status_code: int, duration_ms: int, cost: int):
        self.event(
            logging.INFO,
            f"{method} {endpoint} -> {status_code} (cost {cost})",
            duration_ms=duration_ms,
            method=method,
            endpoint=endpoint,
            status_code=status_code,
            cost=cost,
        )


def setup_logging(level: str = "INFO", json_format: bool = True, include_uvicorn: bool = True) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_format: JSONFormatter when True, plain text otherwise
        include_uvicorn: route uvicorn's loggers through the same handler
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(
        JSONFormatter() if json_format
        else logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s')
    )

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers = [handler]

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            logging.getLogger(name).handlers = [handler]

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), {})


def set_trace_context(trace_id: Optional[str] = None, hotel_id: Optional[str] = None) -> str:
    """Bind the current invocation's trace id (new one if not given) and hotel"""
    trace_id = trace_id or str(uuid.uuid4())
    trace_id_var.set(trace_id)
    if hotel_id:
        hotel_id_var.set(hotel_id)
    return trace_id


def get_trace_id() -> str:
    return trace_id_var.get()


def clear_trace_context():
    trace_id_var.set('')
    hotel_id_var.set('')
