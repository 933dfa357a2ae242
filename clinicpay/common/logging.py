"""Structured JSON logging with request/webhook context fields.

Log lines carry identifiers only. Request bodies, signatures and patient
fields must never be passed to the logger.
"""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
provider_ctx: ContextVar[str] = ContextVar("provider", default="")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class ContextFilter(logging.Filter):
    """Stamp the service name and the current correlation/webhook ids on each record."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        record.correlation_id = correlation_id_ctx.get() or None
        record.provider = provider_ctx.get() or None
        record.event_id = event_id_ctx.get() or None
        return True


def configure_logging(service_name: str, level: str = "INFO") -> None:
    """Route every logger through one JSON stdout handler; call once per process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter(service_name))
    handler.setFormatter(
        JsonFormatter(
            LOG_FORMAT,
            rename_fields={"asctime": "ts", "levelname": "level", "name": "logger"},
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())


logger = logging.getLogger("clinicpay")
