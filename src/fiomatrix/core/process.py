"""Resilient process execution.

Every external binary the tool drives (fio, insmod/modprobe/rmmod, cpupower,
uname) goes through Command. A non-zero exit is turned into
ProcessFailedError; RetryingCommand wraps a Command with a bounded number of
attempts and a fixed delay between them.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from typing import IO, Any

logger = logging.getLogger(__name__)


class ProcessError(RuntimeError):
    pass


class ProcessSpawnError(ProcessError):
    def __init__(self, argv: list[str], reason: str):
        self.argv = argv
        super().__init__(f"Failed to spawn {shlex.join(argv)}: {reason}")


class ProcessFailedError(ProcessError):
    def __init__(self, argv: list[str], returncode: int):
        self.argv = argv
        self.returncode = returncode
        super().__init__(f"Process failed: {returncode} ({shlex.join(argv)})")


def check_status(argv: list[str], returncode: int) -> None:
    """Raise ProcessFailedError for any non-zero or signal exit."""
    if returncode != 0:
        raise ProcessFailedError(argv, returncode)


@dataclass
class Command:
    """An external program plus its arguments and stream redirections.

    stdout/stderr accept anything subprocess.Popen does: None (inherit),
    subprocess.PIPE, or an open file object.
    """

    program: str
    args: list[str] = field(default_factory=list)
    stdout: IO[Any] | int | None = None
    stderr: IO[Any] | int | None = None

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        return shlex.join(self.argv)

    def spawn(self) -> subprocess.Popen:
        """Start the process without waiting for it."""
        logger.info("Running command: %s", self)
        try:
            return subprocess.Popen(self.argv, stdout=self.stdout, stderr=self.stderr)
        except OSError as exc:
            raise ProcessSpawnError(self.argv, str(exc)) from exc

    def run(self) -> int:
        """Spawn, block until exit, and check the exit status."""
        proc = self.spawn()
        returncode = proc.wait()
        check_status(self.argv, returncode)
        return returncode

    def output(self) -> str:
        """Run with stdout captured and return it as text."""
        logger.info("Running command: %s", self)
        try:
            proc = subprocess.Popen(self.argv, stdout=subprocess.PIPE, stderr=self.stderr)
        except OSError as exc:
            raise ProcessSpawnError(self.argv, str(exc)) from exc
        out, _ = proc.communicate()
        check_status(self.argv, proc.returncode)
        return out.decode("utf-8")


class RetryingCommand:
    """Runs a Command up to max_attempts times, sleeping delay seconds between failures.

    Only ProcessFailedError is retried; a binary that cannot be spawned fails
    immediately. After the last failed attempt its error is raised unchanged.
    """

    def __init__(self, command: Command, max_attempts: int, delay: float):
        if max_attempts < 1:
            raise ValueError(f"Invalid retry count value: {max_attempts}")
        self.command = command
        self.max_attempts = max_attempts
        self.delay = delay

    @property
    def argv(self) -> list[str]:
        return self.command.argv

    def run(self) -> int:
        for attempt in range(1, self.max_attempts + 1):
            try:
                returncode = self.command.run()
            except ProcessFailedError as exc:
                logger.warning(
                    "Command failed (attempt %d/%d): %s",
                    attempt, self.max_attempts, exc,
                )
                if attempt == self.max_attempts:
                    raise
                time.sleep(self.delay)
            else:
                logger.info("Command succeeded: %s", self.command)
                return returncode
        raise AssertionError("unreachable")


def run(program: str, args: list[str] | None = None, *, stdout=None, stderr=None) -> int:
    return Command(program, list(args or []), stdout=stdout, stderr=stderr).run()


def run_with_retry(
    program: str,
    args: list[str] | None = None,
    *,
    max_attempts: int,
    delay: float,
) -> int:
    return RetryingCommand(Command(program, list(args or [])), max_attempts, delay).run()
