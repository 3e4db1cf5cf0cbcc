"""JSON logs carrying the correlation ids of the payment attempt in flight.

Request handlers and the orchestrator bind ids with `log_context`; every
record emitted inside the block carries them, and they are restored on exit
so a long-lived event loop never leaks one request's ids into the next.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from pythonjsonlogger.json import JsonFormatter

from pesapush.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")
tracking_id_ctx: ContextVar[str] = ContextVar("order_tracking_id", default="")

# record attribute -> context variable
CONTEXT_FIELDS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "order_id": order_id_ctx,
    "order_tracking_id": tracking_id_ctx,
}

LOG_FORMAT = " ".join(
    f"%({name})s" for name in ("asctime", "levelname", "service_name", *CONTEXT_FIELDS, "message")
)


@contextmanager
def log_context(
    trace_id: str | None = None,
    order_id: str | None = None,
    order_tracking_id: str | None = None,
) -> Iterator[None]:
    """Bind the given ids for the duration of the block; `None` leaves a field as is."""

    values = {"trace_id": trace_id, "order_id": order_id, "order_tracking_id": order_tracking_id}
    tokens = [(CONTEXT_FIELDS[name], CONTEXT_FIELDS[name].set(value)) for name, value in values.items() if value is not None]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class ContextFilter(logging.Filter):
    """Stamp the service name and the bound correlation ids onto each record."""

    def __init__(self, service_name: str | None = None) -> None:
        super().__init__()
        self.service_name = service_name or settings.service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        for name, var in CONTEXT_FIELDS.items():
            setattr(record, name, var.get())
        return True


def configure_logging(level: str | None = None) -> None:
    """Send JSON records to stdout; replaces any handlers already on the root logger."""

    context_filter = ContextFilter()
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(context_filter)
    handler.setFormatter(JsonFormatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("pesapush")
