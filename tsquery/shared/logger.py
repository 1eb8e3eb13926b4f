"""
Logging setup for the tsquery engine and its bridge.

Engine modules log through ``get_logger(__name__)``. Connection churn and
query re-runs are DEBUG. The websockets and httpx clients log every frame
and request at DEBUG/INFO, which drowns out the engine's own messages, so
they are held at WARNING unless the engine itself runs at DEBUG.

Usage:
    from tsquery.shared.logger import get_logger

    logger = get_logger(__name__)
    logger.debug("Query %s includes %d timeseries", key, len(objects))
"""

import logging
import sys
from typing import Union

# Third-party loggers that are only interesting when tracing the wire
NOISY_LOGGERS = ("websockets", "httpx", "httpcore", "uvicorn.access")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_configured = False


def _to_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


def quiet_libraries(level: Union[str, int]) -> None:
    """Set the transport libraries' loggers for an engine running at ``level``."""
    lib_level = logging.DEBUG if _to_level(level) <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(lib_level)


def setup_logging(level: Union[str, int] = "INFO") -> None:
    """Configure root logging. Call once at startup; later calls are no-ops."""
    global _configured
    if _configured:
        return

    logging.basicConfig(
        level=_to_level(level),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    quiet_libraries(level)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
