"""Single-value control file access (sysfs, configfs, procfs)."""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


class HostMutationError(RuntimeError):
    """A write to host state (control file, module, CPU, huge pages) failed."""


def write_control_file(path: str, value: str | int) -> None:
    """Write one newline-terminated value to a control file."""
    logger.debug("Writing %r to %s", value, path)
    try:
        with open(path, "w") as f:
            f.write(f"{value}\n")
    except OSError as exc:
        raise HostMutationError(f"Failed to write {value!r} to {path}: {exc}") from exc


def read_control_file(path: str) -> str:
    try:
        with open(path) as f:
            return f.read().strip()
    except OSError as exc:
        raise HostMutationError(f"Failed to read {path}: {exc}") from exc


def list_subdirectories(root: str) -> list[str]:
    """Absolute paths of the directories directly under root, sorted."""
    try:
        entries = sorted(os.scandir(root), key=lambda e: e.name)
    except OSError as exc:
        raise HostMutationError(f"Failed to list {root}: {exc}") from exc
    return [e.path for e in entries if e.is_dir(follow_symlinks=False)]
