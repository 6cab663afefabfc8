"""JSON logging with correlation ids carried in contextvars.

Every record gets the service name plus whatever trace, webhook event, order
and payment ids are bound in the current context, so lines from one
reconciliation can be grepped together regardless of which path produced them.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from pythonjsonlogger.json import JsonFormatter

from tablepay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")

CONTEXT_VARS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "event_id": event_id_ctx,
    "order_id": order_id_ctx,
    "payment_id": payment_id_ctx,
}

LOG_FORMAT = " ".join(
    ["%(asctime)s", "%(levelname)s", "%(service_name)s"] + [f"%({name})s" for name in CONTEXT_VARS] + ["%(message)s"]
)


@contextmanager
def log_context(**ids: str | None) -> Iterator[None]:
    """Bind correlation ids for the duration of the block. `None` leaves a field as it is."""

    tokens = []
    for name, value in ids.items():
        if value is not None:
            tokens.append((CONTEXT_VARS[name], CONTEXT_VARS[name].set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in CONTEXT_VARS.items():
            setattr(record, name, var.get())
        return True


def configure_logging(level: str | None = None) -> None:
    """Install a single stdout JSON handler on the root logger."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(JsonFormatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    # Access logs from uvicorn are noisy next to the reconciliation lines.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger("tablepay")
