"""
Logging configuration for ragfusion.

Every record carries the request id of the HTTP call that produced it
(rid=- outside a request). Per-stage pipeline lines (fusion counts, boost,
MMR, balance) are logged at DEBUG; LOG_STAGES=true enables them for the
ragfusion loggers without turning on DEBUG for the client libraries.

Usage:
    from ragfusion.logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("Message")
"""
import logging
import sys

from ragfusion.logging_utils import request_id_ctx

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | rid=%(request_id)s | %(message)s"

# HTTP transports under openai and qdrant-client, sentry-sdk's transport,
# and uvicorn's per-request access line
QUIET_LOGGERS = (
    "httpx",
    "httpcore",
    "openai",
    "qdrant_client",
    "urllib3",
    "uvicorn.access",
)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get("-")
        return True


def setup_logging(level: str = "INFO", log_stages: bool = False) -> None:
    """
    Configure logging for the service.

    Args:
        level: Root log level (DEBUG, INFO, WARNING, ERROR)
        log_stages: Emit DEBUG stage lines from the ragfusion loggers
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    for h in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in h.filters):
            h.addFilter(RequestIdFilter())

    if log_stages:
        logging.getLogger("ragfusion").setLevel(logging.DEBUG)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
