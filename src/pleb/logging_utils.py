import collections
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, OrderedDict

from .config import LogConfig

# Bounds open file handles when many names are set up (tests, repeated configure calls).
_MAX_CACHED_LOGGERS = 16
_LOGGER_CACHE: "OrderedDict[str, logging.Logger]" = collections.OrderedDict()
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_rotating_logger(
    name: str, log_config: LogConfig, *, level: int = logging.INFO
) -> logging.Logger:
    """
    Configure (or retrieve) an isolated rotating logger for the given name.
    Each logger owns a single file handler so repeated calls never duplicate output.
    """
    existing = _LOGGER_CACHE.get(name)
    if existing is not None:
        _LOGGER_CACHE.move_to_end(name)
        existing.setLevel(level)
        return existing

    log_path: Path = log_config.path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_FORMAT))

    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.setLevel(level)
    logger.addHandler(handler)
    logger.propagate = False

    _LOGGER_CACHE[name] = logger
    _LOGGER_CACHE.move_to_end(name)
    while len(_LOGGER_CACHE) > _MAX_CACHED_LOGGERS:
        _, evicted = _LOGGER_CACHE.popitem(last=False)
        for h in list(evicted.handlers):
            try:
                h.close()
            except Exception:
                pass
        evicted.handlers.clear()
    return logger


def configure_logging(
    log_config: Optional[LogConfig] = None, *, verbose: bool = False
) -> logging.Logger:
    """Route the ``pleb`` logger hierarchy to the rotating file and stderr."""
    level = logging.DEBUG if verbose else logging.INFO
    if log_config is not None:
        logger = setup_rotating_logger("pleb", log_config, level=level)
    else:
        logger = logging.getLogger("pleb")
        logger.setLevel(level)
        logger.propagate = False
    if not any(getattr(h, "_pleb_console", False) for h in logger.handlers):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter(_FORMAT))
        console._pleb_console = True  # type: ignore[attr-defined]
        logger.addHandler(console)
    return logger


def _format_value(value: Any) -> str:
    text = str(value)
    if not text or any(ch.isspace() for ch in text) or "=" in text:
        return repr(text)
    return text


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit ``event key=value ...``; never raises."""
    try:
        parts = [event]
        for key, value in fields.items():
            if value is None:
                continue
            parts.append(f"{key}={_format_value(value)}")
        if exc is not None:
            parts.append(f"error={_format_value(exc)}")
            parts.append(f"error_type={type(exc).__name__}")
            kind = getattr(exc, "kind", None)
            if kind is not None:
                parts.append(f"error_kind={getattr(kind, 'value', kind)}")
        logger.log(level, " ".join(parts))
    except Exception:
        pass
