"""Sweep controller: drives every (sample, sweep point) through the host.

Order of work:
  1. prepare(): best-effort cleanup of stale null_blk devices and the module,
     load the module once if the reload policy says so, CPU and huge-page
     tuning. Failures other than the best-effort cleanup abort the sweep.
  2. For each sample, a fresh run directory (when capturing), then for each
     point in block size -> job count -> workload -> queue depth order:
     host setup, optional prep, measurement, host teardown, progress, log push.

Teardown of a point always runs, even when setup or the measurement failed.
"""

from __future__ import annotations

import itertools
import logging
import os
import uuid
from datetime import datetime
from typing import Callable

from fiomatrix.config import Settings
from fiomatrix.core.executor import RunPaths, WorkloadExecutor
from fiomatrix.core.hugepages import sweep_requirement
from fiomatrix.core.host import HostState
from fiomatrix.core.progress import BarProgress, NullProgress
from fiomatrix.models.enums import ModuleReloadPolicy, SweepPhase
from fiomatrix.models.sweep import SweepPoint, SweepStatus

logger = logging.getLogger(__name__)


class SweepSetupError(RuntimeError):
    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"Failed to {step}: {cause}")


class SweepPointError(RuntimeError):
    def __init__(self, point: SweepPoint, phase: SweepPhase, cause: BaseException):
        self.point = point
        self.phase = phase
        self.cause = cause
        super().__init__(f"{phase.value} failed for {point.describe()}: {cause}")


def enumerate_points(settings: Settings) -> list[SweepPoint]:
    """Cartesian product of the four axes, block sizes outermost."""
    return [
        SweepPoint(block_size=bs, job_count=jobs, workload=wl, queue_depth=qd)
        for bs, jobs, wl, qd in itertools.product(
            settings.block_sizes,
            settings.jobcounts,
            settings.workloads,
            settings.queue_depths,
        )
    ]


def create_batch_dir(settings: Settings, now: datetime | None = None) -> str:
    """Create output[-tag]-<name>-<YYYY-mm-dd-HHMM> under output_path."""
    now = now or datetime.now()
    parts = ["output"]
    if settings.tag:
        parts.append(settings.tag)
    parts.append(uuid.uuid4().hex[:8])
    parts.append(now.strftime("%Y-%m-%d-%H%M"))
    batch_dir = os.path.join(settings.output_path or "", "-".join(parts))
    os.mkdir(batch_dir)
    logger.info("Created batch directory %s", batch_dir)
    return batch_dir


def create_run_dir(batch_dir: str, now: datetime | None = None) -> str:
    now = now or datetime.now()
    run_dir = os.path.join(batch_dir, now.strftime("%Y-%m-%d-%H%M-%f"))
    os.mkdir(run_dir)
    return run_dir


class SweepController:
    def __init__(
        self,
        settings: Settings,
        host: HostState,
        executor: WorkloadExecutor,
        *,
        batch_dir: str | None = None,
        progress: NullProgress | BarProgress | None = None,
        push_log: Callable[[], None] | None = None,
    ):
        self.settings = settings
        self.host = host
        self.executor = executor
        self.batch_dir = batch_dir
        self.progress = progress or NullProgress()
        self.push_log = push_log

    # ── Pre-sweep ───────────────────────────────────────────────

    def _setup_step(self, step: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as exc:
            raise SweepSetupError(step, exc) from exc

    def prepare(self) -> None:
        """Bring the host to the sweep-wide baseline before the first sample."""
        # Stale devices and modules may or may not be present; failures are
        # logged and ignored.
        if self.settings.nullblk_device:
            try:
                self.host.teardown_nullblk()
            except Exception as exc:
                logger.warning("Ignoring null block cleanup failure: %s", exc)
        try:
            self.host.unload_module()
        except Exception as exc:
            logger.warning("Ignoring module unload failure: %s", exc)

        if self.settings.module_reload_policy == ModuleReloadPolicy.ONCE:
            self._setup_step("load module once", self.host.load_module)
        if self.settings.cpufreq_governor_performance:
            self._setup_step("set cpu frequency governor", self.host.set_governor)
        if self.settings.disable_boost_amd:
            self._setup_step("disable AMD boost", self.host.disable_boost_amd)
        if self.settings.disable_boost_intel:
            self._setup_step("disable Intel turbo", self.host.disable_boost_intel)
        if self.settings.amd_pstate_fixed_3ghz:
            self._setup_step("pin amd-pstate frequency", self.host.amd_pstate_fixed_3ghz)
        if self.settings.hugepages:
            count = sweep_requirement(
                self.settings.jobcounts, self.settings.block_sizes, self.settings.queue_depths,
            )
            self._setup_step("reserve huge pages", lambda: self.host.apply_hugepages(count))

    # ── Per point ───────────────────────────────────────────────

    def _phase(self, point: SweepPoint, phase: SweepPhase, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as exc:
            raise SweepPointError(point, phase, exc) from exc

    def execute_point(self, point: SweepPoint, run_dir: str | None) -> None:
        """setup -> [prep] -> measurement, then teardown no matter what."""
        output_id = point.output_id(self.settings.runtime)
        paths = RunPaths.for_point(run_dir, output_id)
        logger.info("Setting up workload: %s", output_id)

        failure: SweepPointError | None = None
        try:
            self._phase(point, SweepPhase.SETUP, self.host.setup_run)
            if self.settings.prep:
                self._phase(point, SweepPhase.PREP, lambda: self.executor.run_prep(paths))
            self._phase(
                point, SweepPhase.MEASUREMENT,
                lambda: self.executor.run_measurement(point, paths),
            )
        except SweepPointError as exc:
            failure = exc

        try:
            self._phase(point, SweepPhase.TEARDOWN, self.host.teardown_run)
        except SweepPointError as exc:
            if failure is None:
                raise
            logger.error("Teardown after failed run also failed: %s", exc)

        if failure is not None:
            raise failure

    # ── Whole sweep ─────────────────────────────────────────────

    def run(self) -> SweepStatus:
        """Run the full sweep and return its terminal status.

        Without continue_on_error the first failing point ends the sweep (after
        its teardown). With it, the first failure is kept and the remaining
        points still run.
        """
        points = enumerate_points(self.settings)
        status = SweepStatus(points_total=self.settings.samples * len(points))
        logger.info("Starting test loop")
        try:
            self.prepare()
            self._run_samples(points, status)
        except Exception as exc:
            if status.error is None:
                status.error = exc
        finally:
            self.progress.stop()
        return status

    def _run_samples(self, points: list[SweepPoint], status: SweepStatus) -> None:
        self.progress.start(status.points_total)
        logger.info("Starting measurements, total configs: %d", status.points_total)
        self.progress.println(f"[+] Starting measurements, total configs: {status.points_total}")

        for sample in range(self.settings.samples):
            logger.info("Starting sample #%d", sample)
            self.progress.println(f"[+] Starting sample #{sample}")
            run_dir = create_run_dir(self.batch_dir) if self.batch_dir else None

            for point in points:
                logger.info("Starting test %s", point.describe())
                self.progress.println(f"[+] Starting test {point.describe()}")
                try:
                    self.execute_point(point, run_dir)
                except SweepPointError as exc:
                    if not self.settings.continue_on_error:
                        raise
                    logger.error("Continuing after failure: %s", exc)
                    if status.error is None:
                        status.error = exc
                else:
                    status.points_completed += 1
                self.progress.advance()
                if self.push_log is not None:
                    self.push_log()

        self.progress.println("[+] All done!")
        logger.info("Test loop done")
