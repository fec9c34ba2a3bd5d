"""Progress indicator for the sweep.

A passive observer: the controller tells it when a point finishes and which
status lines to print, it never feeds back into control flow.
"""

from __future__ import annotations

import sys

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)


class NullProgress:
    """No-op sink used when stdout is not a terminal or capture is off."""

    def start(self, total: int) -> None:
        pass

    def advance(self) -> None:
        pass

    def println(self, message: str) -> None:
        pass

    def stop(self) -> None:
        pass


class BarProgress:
    def __init__(self, console: Console | None = None, description: str = "Measuring:"):
        self._console = console or Console()
        self._description = description
        self._progress = Progress(
            TextColumn("{task.description}"),
            BarColumn(bar_width=None),
            MofNCompleteColumn(),
            TextColumn("[elapsed:"),
            TimeElapsedColumn(),
            TextColumn("/ remaining:"),
            TimeRemainingColumn(),
            TextColumn("]"),
            console=self._console,
        )
        self._task = None

    def start(self, total: int) -> None:
        self._task = self._progress.add_task(self._description, total=total)
        self._progress.start()

    def advance(self) -> None:
        if self._task is not None:
            self._progress.advance(self._task)

    def println(self, message: str) -> None:
        self._progress.console.print(message, markup=False, highlight=False)

    def stop(self) -> None:
        self._progress.stop()


def make_progress(enable: bool) -> NullProgress | BarProgress:
    if enable and sys.stdout.isatty():
        return BarProgress()
    return NullProgress()
