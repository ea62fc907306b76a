"""Logging setup and filters for enriching log records with request context.

``REQUEST_ID_CTX`` is set by the HTTP middleware for every request;
``RequestIdFilter`` copies it onto each log record so the JSON formatter
can emit ``request_id`` without every call site passing it explicitly.
"""

import contextvars
import logging
from logging import Filter, LogRecord

from pythonjsonlogger import jsonlogger

from . import config

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"


class RequestIdFilter(Filter):
    """Tag broker log lines with the HTTP request that produced them.

    Work done outside a request (startup, tests calling the service
    directly) is tagged ``-``.
    """

    def filter(self, record: LogRecord) -> bool:
        """Stamp the current request id unless the caller passed one in ``extra``."""
        if not hasattr(record, "request_id"):
            record.request_id = REQUEST_ID_CTX.get()
        return True


def configure_logging(level: str | None = None) -> logging.Logger:
    """Install the JSON handler on the ``portbroker`` logger once.

    Args:
        level: Log level name; defaults to ``config.LOG_LEVEL``.

    Returns:
        logging.Logger: The configured package logger.
    """
    logger = logging.getLogger("portbroker")
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
        h.addFilter(RequestIdFilter())
        logger.addHandler(h)
    logger.setLevel(level or config.LOG_LEVEL)
    return logger
