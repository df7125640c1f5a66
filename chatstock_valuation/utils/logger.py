import os
import sys
from functools import wraps
from time import perf_counter
from typing import Callable

from loguru import logger

_LOGGER_CONFIGURED = False

_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}"


def configure_logging(log_config=None, force: bool = False) -> None:
    """
    Install the engine's sinks on the global loguru logger, once per process.

    stderr always; a dated, rotating file sink when log_config.dir is set.
    """
    global _LOGGER_CONFIGURED
    if _LOGGER_CONFIGURED and not force:
        return

    level = getattr(log_config, "level", "INFO")
    log_dir = getattr(log_config, "dir", None)

    logger.remove()
    logger.add(sys.stderr, level=level, format=_FORMAT)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        logger.add(
            sink=os.path.join(log_dir, "{time:YYYY-MM-DD}.log"),
            rotation=log_config.rotation,
            retention=log_config.retention,
            level=level,
            format=_FORMAT,
            enqueue=True,  # batch workers log from threads
        )

    _LOGGER_CONFIGURED = True
    logger.info("[Logging] configured level={} dir={}", level, log_dir)


def timed(label: str) -> Callable:
    """Log how long the wrapped call took at DEBUG; failures at WARNING."""

    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                logger.warning("[{}] failed after {:.4f}s: {}", label, perf_counter() - start, exc)
                raise
            logger.debug("[{}] took {:.4f}s", label, perf_counter() - start)
            return result

        return wrapper

    return decorator


__all__ = ["configure_logging", "logger", "timed"]
