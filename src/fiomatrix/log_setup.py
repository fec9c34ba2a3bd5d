"""Log sinks: console at startup, then file + in-memory (+ console) once capturing."""

from __future__ import annotations

import logging
import os
import sys
import threading
from datetime import datetime

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"


class MemoryLogHandler(logging.Handler):
    """Buffers formatted records until drain() hands them to the remote log push."""

    def __init__(self, level: int = logging.NOTSET):
        super().__init__(level)
        self._buffer = bytearray()
        self._buffer_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record) + "\n"
        except Exception:
            self.handleError(record)
            return
        with self._buffer_lock:
            self._buffer += line.encode("utf-8")

    def drain(self) -> bytes:
        """Return everything logged since the previous drain and clear it."""
        with self._buffer_lock:
            data = bytes(self._buffer)
            self._buffer.clear()
        return data


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=LOG_FORMAT,
        force=True,
    )


def attach_capture_sinks(
    output_dir: str,
    level: str = "INFO",
    memory: bool = True,
) -> MemoryLogHandler | None:
    """Route logging into output_dir/log-<timestamp>.log and an in-memory buffer.

    The console handler is kept only when stdout is not a terminal; on a
    terminal the progress bar owns the screen.
    """
    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    logfile = os.path.join(output_dir, f"log-{datetime.now():%Y-%m-%d-%H%M-%f}.log")
    print(f"Log file path: {logfile}")
    file_handler = logging.FileHandler(logfile)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if not sys.stdout.isatty():
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    memory_handler = None
    if memory:
        memory_handler = MemoryLogHandler()
        memory_handler.setFormatter(formatter)
        root.addHandler(memory_handler)

    root.setLevel(getattr(logging, level.upper()))
    return memory_handler
