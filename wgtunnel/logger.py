"""Printf-style leveled logging for devices."""

from __future__ import annotations

import enum
import sys
import threading
import time
from typing import Any, Callable, Optional, TextIO

LogFunc = Callable[..., None]


class LogLevel(enum.IntEnum):
    SILENT = 0
    ERROR = 1
    VERBOSE = 2


def discard_logf(fmt: str, *args: Any) -> None:
    """Log function that drops every line."""


def _format(fmt: str, args: tuple) -> str:
    return fmt % args if args else fmt


class Logger:
    """Holds one printf-style function per level; each must be thread-safe."""

    def __init__(self, verbose: LogFunc = discard_logf, error: LogFunc = discard_logf) -> None:
        self._verbose = verbose
        self._error = error

    def verbosef(self, fmt: str, *args: Any) -> None:
        self._verbose(fmt, *args)

    def errorf(self, fmt: str, *args: Any) -> None:
        self._error(fmt, *args)


def _stream_logf(prefix: str, stream: Optional[TextIO], lock: threading.Lock) -> LogFunc:
    def logf(fmt: str, *args: Any) -> None:
        message = _format(fmt, args)
        if not message.endswith("\n"):
            message += "\n"
        stamp = time.strftime("%Y/%m/%d %H:%M:%S")
        out = stream if stream is not None else sys.stdout
        with lock:
            out.write(f"{prefix}{stamp} {message}")
            out.flush()

    return logf


def new_logger(level: int, prepend: str, stream: Optional[TextIO] = None) -> Logger:
    """Build a Logger writing at level and above to stream (stdout by default).

    Lines read "<LEVEL>: <prepend><date> <time> <message>".
    """
    lock = threading.Lock()
    verbose: LogFunc = discard_logf
    error: LogFunc = discard_logf
    if level >= LogLevel.VERBOSE:
        verbose = _stream_logf("DEBUG: " + prepend, stream, lock)
    if level >= LogLevel.ERROR:
        error = _stream_logf("ERROR: " + prepend, stream, lock)
    return Logger(verbose, error)