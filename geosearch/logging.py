import logging
import re
import sys
from typing import Any, Dict, Optional

import structlog

from geosearch.core.config import settings

# Provider URLs carry the API key as a query parameter
_API_KEY_PARAM = re.compile(r"(\bkey=)[^&\s'\"]+")

# Libraries that log request URLs (and so provider keys) at INFO
_NOISY_LOGGERS = ("httpx", "httpcore")


def redact_api_keys(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask `key=...` query parameters in any string value of the event."""
    for field, value in event_dict.items():
        if isinstance(value, str) and "key=" in value:
            event_dict[field] = _API_KEY_PARAM.sub(r"\1***", value)
    return event_dict


def configure_logging(env: Optional[str] = None, level: Optional[str] = None) -> None:
    """
    Route structlog and stdlib logs (geocoder, uvicorn) through one root handler.

    Development renders to the console; every other environment emits JSON.
    """
    env = (env or settings.ENV).lower()
    log_level = logging.getLevelName((level or settings.LOG_LEVEL).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_api_keys,
    ]

    if env == "development":
        renderer = [structlog.dev.ConsoleRenderer()]
    else:
        renderer = [
            structlog.processors.CallsiteParameterAdder(
                {
                    structlog.processors.CallsiteParameter.MODULE,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                    structlog.processors.CallsiteParameter.LINENO,
                }
            ),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = []
        uvicorn_logger.propagate = True
