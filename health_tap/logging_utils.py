from __future__ import annotations

import logging

TRACE_LEVEL = 5

# Probes run on worker threads; the thread name tells cycles and devices apart.
LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s %(message)s"

LOG_COLORS = {
    "TRACE": "cyan",
    "DEBUG": "blue",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

# smartctl -a on a drive with a long error log prints hundreds of lines.
MAX_TRACE_LINES = 400


def _trace(self: logging.Logger, message: str, *args: object, **kwargs: object) -> None:
    if self.isEnabledFor(TRACE_LEVEL):
        self._log(TRACE_LEVEL, message, args, **kwargs)


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    try:
        from colorlog import ColoredFormatter  # type: ignore

        handler.setFormatter(ColoredFormatter("%(log_color)s" + LOG_FORMAT, log_colors=LOG_COLORS))
    except ImportError:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def configure_logging(level: int) -> None:
    logging.addLevelName(TRACE_LEVEL, "TRACE")
    setattr(logging.Logger, "trace", _trace)
    logging.basicConfig(level=level, handlers=[_console_handler()], force=True)


def log_tool_output(logger: logging.Logger, stream: str, text: str) -> None:
    """Log captured tool output at TRACE, one record per stream."""
    if not text or not logger.isEnabledFor(TRACE_LEVEL):
        return
    lines = text.strip().splitlines()
    if len(lines) > MAX_TRACE_LINES:
        omitted = len(lines) - MAX_TRACE_LINES
        lines = lines[:MAX_TRACE_LINES] + [f"... {omitted} more lines"]
    logger.log(TRACE_LEVEL, "%s:\n%s", stream, "\n".join(lines))


def resolve_log_level(verbosity: int, fallback: str) -> int:
    """Map ``-v`` counts or a level name to a logging level.

    ``-v`` is DEBUG, ``-vv`` is TRACE (raw tool output). Unknown names fall
    back to INFO.
    """
    if verbosity >= 2:
        return TRACE_LEVEL
    if verbosity == 1:
        return logging.DEBUG
    name = fallback.strip().upper()
    if name == "TRACE":
        return TRACE_LEVEL
    return logging._nameToLevel.get(name, logging.INFO)
