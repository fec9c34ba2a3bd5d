"""System state manager: the host mutations that surround every measurement.

HostState is the single handle through which the sweep touches the kernel
module under test, the null_blk configfs tree, per-device queue knobs, CPU
frequency controls and the huge-page pool. The per-run part is a small state
machine:

    IDLE -> [MODULE_LOADED] -> [DEVICE_CONFIGURED] -> SCHEDULER_TUNED
         -> IOSTATS_DISABLED -> READY_FOR_RUN
    READY_FOR_RUN -> [DEVICE_TORN_DOWN] -> [MODULE_UNLOADED] -> IDLE

Bracketed stages only happen when the reload policy / null_blk flag ask for
them. A failed forward step raises HostTransitionError naming the stage it
was trying to reach; teardown_run() attempts every step regardless.
"""

from __future__ import annotations

import glob
import logging
import os
from dataclasses import dataclass
from typing import Callable

from fiomatrix.config import Settings
from fiomatrix.core import hugepages
from fiomatrix.core.process import Command, ProcessError, RetryingCommand
from fiomatrix.core.sysfs import (
    HostMutationError,
    list_subdirectories,
    write_control_file,
)
from fiomatrix.models.enums import HostStage, ModuleReloadPolicy

logger = logging.getLogger(__name__)

# Attribute files written after mkdir, in order. "power" must stay last:
# writing it instantiates the device with the values above.
NULLBLK_ATTRIBUTES: list[tuple[str, int]] = [
    ("blocksize", 4096),
    ("completion_nsec", 0),
    ("irqmode", 0),  # IRQ_NONE
    ("queue_mode", 2),  # blk-mq
    ("hw_queue_depth", 256),
    ("memory_backed", 1),
    ("size", 4096),  # MB
    ("poll_queues", 0),
    ("power", 1),
]

AMD_PSTATE_MAX_FREQ_KHZ = 3_000_000


@dataclass(frozen=True)
class HostPaths:
    """Roots of the control filesystems. Overridden in tests."""

    nullb_root: str = "/sys/kernel/config/nullb"
    block_root: str = "/sys/block"
    cpu_root: str = "/sys/devices/system/cpu"
    nr_hugepages: str = hugepages.NR_HUGEPAGES_PATH

    def queue_file(self, device: str, name: str) -> str:
        return os.path.join(self.block_root, device, "queue", name)

    @property
    def amd_pstate_status(self) -> str:
        return os.path.join(self.cpu_root, "amd_pstate", "status")

    @property
    def cpufreq_boost(self) -> str:
        return os.path.join(self.cpu_root, "cpufreq", "boost")

    @property
    def intel_no_turbo(self) -> str:
        return os.path.join(self.cpu_root, "intel_pstate", "no_turbo")

    def scaling_max_freq_files(self) -> list[str]:
        pattern = os.path.join(self.cpu_root, "cpufreq", "policy*", "scaling_max_freq")
        return sorted(glob.glob(pattern))


class HostTransitionError(HostMutationError):
    """A state-machine step failed; stage is the state it was moving to."""

    def __init__(self, stage: HostStage, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage.value}: {cause}")


class HostState:
    def __init__(self, settings: Settings, paths: HostPaths | None = None):
        self.settings = settings
        self.paths = paths or HostPaths()
        self.stage = HostStage.IDLE
        self._module_loaded_for_run = False

    # ── Kernel module ───────────────────────────────────────────

    def load_module(self) -> None:
        module = self.settings.module
        if module is None:
            return
        program = "insmod" if self.settings.insmod else "modprobe"
        logger.info("Inserting module: %s", module)
        try:
            Command(program, [module, *self.settings.module_args]).run()
        except ProcessError as exc:
            raise HostMutationError(f"Failed to load module {module}: {exc}") from exc

    def unload_module(self) -> None:
        """Remove the module, retrying while references drain."""
        module = self.settings.module
        if module is None:
            return
        if self.settings.insmod:
            command = Command("rmmod", [module])
        else:
            command = Command("modprobe", ["-r", module])
        logger.info("Unloading module: %s", module)
        retrying = RetryingCommand(
            command, self.settings.unload_retry_max, self.settings.unload_retry_delay,
        )
        try:
            retrying.run()
        except ProcessError as exc:
            raise HostMutationError(f"Failed to unload module {module}: {exc}") from exc

    # ── null_blk ────────────────────────────────────────────────

    def setup_nullblk(self, name: str | None = None) -> None:
        name = name or self.settings.device
        control_path = os.path.join(self.paths.nullb_root, name)
        logger.info("Configuring null block at %s", control_path)
        try:
            os.mkdir(control_path)
        except OSError as exc:
            raise HostMutationError(f"Failed to create {control_path}: {exc}") from exc
        for attr, value in NULLBLK_ATTRIBUTES:
            write_control_file(os.path.join(control_path, attr), value)

    def teardown_nullblk(self) -> None:
        """Remove every null_blk instance under the configfs root.

        Each device is removed independently; failures are collected and
        reported together after all removals were attempted.
        """
        failures = []
        for path in list_subdirectories(self.paths.nullb_root):
            logger.info("Removing null block %s", path)
            try:
                os.rmdir(path)
            except OSError as exc:
                failures.append(f"{path}: {exc}")
        if failures:
            raise HostMutationError("Failed to remove null block devices: " + "; ".join(failures))

    # ── Per-device queue knobs ──────────────────────────────────

    def set_scheduler(self, device: str | None = None) -> None:
        logger.info("Setting block scheduler")
        write_control_file(self.paths.queue_file(device or self.settings.device, "scheduler"), "none")

    def disable_iostats(self, device: str | None = None) -> None:
        logger.info("Disabling iostats")
        write_control_file(self.paths.queue_file(device or self.settings.device, "iostats"), 0)

    # ── CPU frequency ───────────────────────────────────────────

    def set_governor(self) -> None:
        logger.info("Setting cpupower governor")
        try:
            Command("cpupower", ["frequency-set", "-g", "performance"]).run()
        except ProcessError as exc:
            raise HostMutationError(f"Failed to set cpu frequency governor: {exc}") from exc

    def disable_boost_amd(self) -> None:
        logger.info("Disabling AMD boost")
        write_control_file(self.paths.cpufreq_boost, 0)

    def disable_boost_intel(self) -> None:
        logger.info("Disabling Intel turbo")
        write_control_file(self.paths.intel_no_turbo, 1)

    def amd_pstate_fixed_3ghz(self) -> None:
        """Guided amd-pstate, performance governor, no boost, 3 GHz ceiling."""
        logger.info("Pinning amd-pstate to %d kHz", AMD_PSTATE_MAX_FREQ_KHZ)
        write_control_file(self.paths.amd_pstate_status, "guided")
        self.set_governor()
        self.disable_boost_amd()
        policy_files = self.paths.scaling_max_freq_files()
        if not policy_files:
            logger.warning("No cpufreq policies found under %s", self.paths.cpu_root)
        for path in policy_files:
            write_control_file(path, AMD_PSTATE_MAX_FREQ_KHZ)

    # ── Huge pages ──────────────────────────────────────────────

    def apply_hugepages(self, count: int) -> None:
        hugepages.apply_hugepages(count, self.paths.nr_hugepages)

    # ── Per-run state machine ───────────────────────────────────

    def _step(self, target: HostStage, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as exc:
            raise HostTransitionError(target, exc) from exc
        logger.debug("Host stage: %s -> %s", self.stage.value, target.value)
        self.stage = target

    def setup_run(self) -> None:
        """Bring the host from IDLE to READY_FOR_RUN for one sweep point."""
        if self.settings.module_reload_policy == ModuleReloadPolicy.ALWAYS and self.settings.module:
            self._step(HostStage.MODULE_LOADED, self.load_module)
            self._module_loaded_for_run = True
        if self.settings.configure_nullblk:
            self._step(HostStage.DEVICE_CONFIGURED, self.setup_nullblk)
        self._step(HostStage.SCHEDULER_TUNED, self.set_scheduler)
        self._step(HostStage.IOSTATS_DISABLED, self.disable_iostats)
        self.stage = HostStage.READY_FOR_RUN

    def teardown_run(self) -> None:
        """Undo setup_run. Every step is attempted; the first failure is raised."""
        errors: list[HostTransitionError] = []
        if self.settings.configure_nullblk:
            try:
                self._step(HostStage.DEVICE_TORN_DOWN, self.teardown_nullblk)
            except HostTransitionError as exc:
                errors.append(exc)
        if self._module_loaded_for_run:
            self._module_loaded_for_run = False
            try:
                self._step(HostStage.MODULE_UNLOADED, self.unload_module)
            except HostTransitionError as exc:
                errors.append(exc)
        for exc in errors[1:]:
            logger.error("Additional teardown failure: %s", exc)
        # The next setup_run starts from scratch whatever happened here
        self.stage = HostStage.IDLE
        if errors:
            raise errors[0]
