import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# logger name -> env var overriding its level (None follows LOG_LEVEL)
ROUTED = {
    "uvicorn": None,
    "uvicorn.error": None,
    "uvicorn.access": None,
    "apscheduler": None,
    "sqlalchemy.engine": "SQL_LOG_LEVEL",
}


def _env_level(var: str, default: int) -> int:
    name = (os.getenv(var) or "").strip().upper()
    return getattr(logging, name, default) if name else default


def _configure():
    level = _env_level("LOG_LEVEL", logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name, override in ROUTED.items():
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.propagate = True
        lg.setLevel(_env_level(override, logging.WARNING) if override else level)

    # one INFO line per request otherwise
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


_configure()


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "hunter")


logger = get_logger()
