"""Workload executor: one fio invocation per sweep point.

The measurement pass is either run to completion directly, or, when a
remote controller is configured, supervised by a poll loop that pings the
controller every ping_interval seconds until fio exits.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Callable

from fiomatrix.adapters.base import TelemetryAdapter
from fiomatrix.config import Settings
from fiomatrix.core.process import Command, check_status
from fiomatrix.core.units import parse_size
from fiomatrix.models.sweep import SweepPoint

logger = logging.getLogger(__name__)


class WatchdogPingError(RuntimeError):
    pass


@dataclass(frozen=True)
class RunPaths:
    """Artifact paths for one sweep point, or all None when not capturing."""

    json: str | None = None
    stdout: str | None = None
    stderr: str | None = None
    prep_stdout: str | None = None
    prep_stderr: str | None = None

    @classmethod
    def for_point(cls, run_dir: str | None, output_id: str) -> "RunPaths":
        if run_dir is None:
            return cls()

        def path(suffix: str) -> str:
            return os.path.join(run_dir, f"{output_id}{suffix}")

        return cls(
            json=path(".json"),
            stdout=path(".stdout"),
            stderr=path(".stderr"),
            prep_stdout=path("-prep.stdout"),
            prep_stderr=path("-prep.stderr"),
        )


def device_path(settings: Settings) -> str:
    return f"/dev/{settings.device}"


def build_prep_args(settings: Settings) -> list[str]:
    """Sequential write over the whole device so reads hit written blocks."""
    return [
        "--name=prep",
        "--rw=write",
        "--direct=1",
        "--bs=4k",
        f"--filename={device_path(settings)}",
    ]


def build_measurement_args(settings: Settings, point: SweepPoint, json_path: str | None = None) -> list[str]:
    args = [
        "--group_reporting",
        "--name=default",
        f"--filename={device_path(settings)}",
        "--time_based=1",
        f"--runtime={settings.runtime}",
        "--gtod_reduce=1",
        "--clocksource=cpu",
        f"--readwrite={point.workload}",
        f"--blocksize={parse_size(point.block_size)}",
        "--direct=1",
        "--cpus_allowed_policy=split",
        f"--cpus_allowed=0-{point.job_count - 1}",
        f"--numjobs={point.job_count}",
        "--ioengine=io_uring",
        f"--iodepth={point.queue_depth}",
        "--fixedbufs=1",
        "--registerfiles=1",
        "--nonvectored=1",
    ]

    if settings.ramp != 0:
        args.append(f"--ramp_time={settings.ramp}")

    if settings.verify:
        args += ["--do_verify=1", "--verify=md5"]
    else:
        args += ["--norandommap", "--random_generator=lfsr"]

    if json_path is not None:
        args += ["--output-format=json+", f"--output={json_path}"]

    if settings.hipri:
        args.append("--hipri=1")

    if settings.hugepages:
        args += ["--iomem=mmaphuge", "--hugepage-size=2M"]

    return args


def _terminate(proc: subprocess.Popen, timeout: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


class WorkloadExecutor:
    def __init__(
        self,
        settings: Settings,
        telemetry: TelemetryAdapter | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.telemetry = telemetry
        self._sleep = sleep
        self._clock = clock

    def run_prep(self, paths: RunPaths) -> None:
        with ExitStack() as stack:
            command = Command(self.settings.fio, build_prep_args(self.settings))
            if paths.prep_stdout is not None:
                command.stdout = stack.enter_context(open(paths.prep_stdout, "wb"))
                command.stderr = stack.enter_context(open(paths.prep_stderr, "wb"))
            logger.info("Running prep command")
            command.run()

    def run_measurement(self, point: SweepPoint, paths: RunPaths) -> None:
        with ExitStack() as stack:
            command = Command(
                self.settings.fio,
                build_measurement_args(self.settings, point, paths.json),
            )
            if paths.stdout is not None:
                command.stdout = stack.enter_context(open(paths.stdout, "wb"))
                command.stderr = stack.enter_context(open(paths.stderr, "wb"))
            logger.info("Running workload command")
            if self.telemetry is None:
                command.run()
            else:
                self._supervise(command)

    def _supervise(self, command: Command) -> None:
        """Poll fio until it exits, pinging the remote every ping_interval seconds."""
        proc = command.spawn()
        last_ping = self._clock()
        while proc.poll() is None:
            self._sleep(self.settings.poll_interval)
            if proc.poll() is not None:
                break
            now = self._clock()
            if now - last_ping < self.settings.ping_interval:
                continue
            try:
                self.telemetry.ping()
            except Exception as exc:
                logger.error("Watchdog ping failed, stopping %s", command.program)
                _terminate(proc)
                raise WatchdogPingError(f"Watchdog ping failed: {exc}") from exc
            last_ping = now
        check_status(command.argv, proc.returncode)
