"""Logger capability used by every perfscope component.

Components talk to a ``ProfilerLogger`` (``debug``/``log``/``warn``/``error``
taking a message plus structured keyword data). ``resolve_logger`` turns
whatever the caller supplied into one, in this order:

1. ``None``                      -> ``LoguruLogger`` (the default sink)
2. a ``perfscope`` adapter       -> used as-is
3. stdlib ``logging.Logger``     -> ``StdlibLogger``
4. loguru's ``logger``           -> ``LoguruLogger`` bound to it
5. anything with all four calls  -> ``GuardedLogger`` around it
6. anything else                 -> ``LoguruLogger`` (noted at debug level)

Logging never raises into the caller: every adapter guards its sink.
"""

import logging
from typing import Any, Protocol, runtime_checkable

from loguru import logger as _loguru_logger

LOG_LEVELS = ("debug", "log", "warn", "error")


@runtime_checkable
class ProfilerLogger(Protocol):
    def debug(self, message: str, **data: Any) -> None: ...

    def log(self, message: str, **data: Any) -> None: ...

    def warn(self, message: str, **data: Any) -> None: ...

    def error(self, message: str, **data: Any) -> None: ...


def _render(message: str, data: dict[str, Any]) -> str:
    if not data:
        return message
    fields = " ".join(f"{key}={value}" for key, value in data.items())
    return f"{message} | {fields}"


class _SinkAdapter:
    """Shared guard: a failing sink is dropped silently."""

    def _emit(self, level: str, message: str, data: dict[str, Any]) -> None:
        raise NotImplementedError

    def _guarded(self, level: str, message: str, data: dict[str, Any]) -> None:
        try:
            self._emit(level, message, data)
        except Exception:  # noqa: BLE001 - logging failures never propagate
            pass

    def debug(self, message: str, **data: Any) -> None:
        self._guarded("debug", message, data)

    def log(self, message: str, **data: Any) -> None:
        self._guarded("log", message, data)

    def warn(self, message: str, **data: Any) -> None:
        self._guarded("warn", message, data)

    def error(self, message: str, **data: Any) -> None:
        self._guarded("error", message, data)


class LoguruLogger(_SinkAdapter):
    """Routes log calls to loguru, structured data bound as ``extra``."""

    _LEVELS = {"debug": "DEBUG", "log": "INFO", "warn": "WARNING", "error": "ERROR"}

    def __init__(self, sink: Any = None) -> None:
        self._logger = (sink if sink is not None else _loguru_logger).bind(
            component="perfscope"
        )

    def _emit(self, level: str, message: str, data: dict[str, Any]) -> None:
        self._logger.bind(**data).log(self._LEVELS[level], _render(message, data))


class StdlibLogger(_SinkAdapter):
    _LEVELS = {
        "debug": logging.DEBUG,
        "log": logging.INFO,
        "warn": logging.WARNING,
        "error": logging.ERROR,
    }

    def __init__(self, sink: logging.Logger | logging.LoggerAdapter) -> None:
        self._logger = sink

    def _emit(self, level: str, message: str, data: dict[str, Any]) -> None:
        self._logger.log(self._LEVELS[level], _render(message, data))


class GuardedLogger(_SinkAdapter):
    """Wraps a caller-supplied object that already has the four methods."""

    def __init__(self, sink: ProfilerLogger) -> None:
        self._logger = sink

    def _emit(self, level: str, message: str, data: dict[str, Any]) -> None:
        getattr(self._logger, level)(message, **data)


class NullLogger(_SinkAdapter):
    def _emit(self, level: str, message: str, data: dict[str, Any]) -> None:
        return None


def _is_loguru(candidate: Any) -> bool:
    return type(candidate).__module__.split(".")[0] == "loguru"


def resolve_logger(candidate: Any = None) -> ProfilerLogger:
    """Pick a ProfilerLogger for ``candidate`` using the documented order."""
    if candidate is None:
        return LoguruLogger()
    if isinstance(candidate, _SinkAdapter):
        return candidate
    if isinstance(candidate, (logging.Logger, logging.LoggerAdapter)):
        return StdlibLogger(candidate)
    if _is_loguru(candidate):
        return LoguruLogger(candidate)
    if isinstance(candidate, ProfilerLogger):
        return GuardedLogger(candidate)

    fallback = LoguruLogger()
    fallback.debug(
        "Unsupported logger supplied, falling back to loguru",
        logger_type=type(candidate).__name__,
    )
    return fallback


def emit(target: ProfilerLogger, level: str, message: str, **data: Any) -> None:
    """Log at a level chosen by name, falling back to ``log``.

    Used where the level is configuration (``log_level="debug"``) rather than
    fixed at the call site.
    """
    method = getattr(target, level, None) if level in LOG_LEVELS else None
    if method is None:
        method = target.log
    method(message, **data)
