"""Logging filters and setup for JSON logs with request correlation.

``RequestIdFilter`` injects the current request id into log records using
the ContextVar set by ``RequestIdMiddleware``; ``configure_logging`` installs
a single JSON handler carrying that filter so every log line can be
correlated with the request that produced it.
"""

import logging
from logging import Filter, LogRecord

from pythonjsonlogger import jsonlogger

from .middleware import REQUEST_ID_CTX

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    Records logged outside a request get a hyphen ("-") so formatters can
    reliably reference ``%(request_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    """Route the service loggers through one JSON stream handler.

    Idempotent: calling it again only updates the level.
    """
    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(h, "_checkout_json", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler._checkout_json = True  # type: ignore[attr-defined]
    root.addHandler(handler)
