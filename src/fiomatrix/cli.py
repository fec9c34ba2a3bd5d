"""CLI runner: merge configuration, run the sweep, archive, report to the remote."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from fiomatrix import __version__
from fiomatrix.adapters.base import TelemetryAdapter
from fiomatrix.adapters.telemetry import TelemetryClient
from fiomatrix.config import LOG_LEVELS, Settings, load_settings
from fiomatrix.core.archive import compress_directory
from fiomatrix.core.executor import WorkloadExecutor
from fiomatrix.core.host import HostState
from fiomatrix.core.process import Command
from fiomatrix.core.progress import make_progress
from fiomatrix.core.sweep import SweepController, create_batch_dir
from fiomatrix.log_setup import attach_capture_sinks, configure_logging
from fiomatrix.models.enums import ModuleReloadPolicy
from fiomatrix.models.sweep import SweepStatus

logger = logging.getLogger(__name__)

_NON_SETTINGS_ARGS = ("config", "dump_config")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fiomatrix",
        description="Run fio benchmark sweeps against a block device",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", action="append", default=[], type=Path, metavar="FILE",
                        help="TOML config file (repeatable, later files win)")
    parser.add_argument("--dump-config", action="store_true",
                        help="Print the merged configuration and exit")

    sweep = parser.add_argument_group("sweep")
    sweep.add_argument("--samples", type=int)
    sweep.add_argument("--runtime", type=int, help="Measurement runtime in seconds")
    sweep.add_argument("--ramp", type=int, help="Ramp time in seconds (0 = none)")
    sweep.add_argument("--device", help="Block device name under /dev")
    sweep.add_argument("--jobcounts", type=int, nargs="+")
    sweep.add_argument("--workloads", nargs="+")
    sweep.add_argument("--queue-depths", type=int, nargs="+")
    sweep.add_argument("--block-sizes", nargs="+")
    sweep.add_argument("--continue-on-error", action=argparse.BooleanOptionalAction)

    fio = parser.add_argument_group("fio")
    fio.add_argument("--fio", help="Path to the fio binary")
    for flag in ("prep", "verify", "hipri", "hugepages"):
        fio.add_argument(f"--{flag}", action=argparse.BooleanOptionalAction)

    output = parser.add_argument_group("output")
    output.add_argument("--capture", action=argparse.BooleanOptionalAction)
    output.add_argument("--compress", action=argparse.BooleanOptionalAction)
    output.add_argument("--tag")
    output.add_argument("--output-path")
    output.add_argument("--log-level", choices=LOG_LEVELS)

    module = parser.add_argument_group("kernel module")
    module.add_argument("--module")
    module.add_argument("--module-args", nargs="+")
    module.add_argument("--insmod", action=argparse.BooleanOptionalAction)
    module.add_argument("--modprobe", action=argparse.BooleanOptionalAction)
    module.add_argument("--module-reload-policy", choices=[p.value for p in ModuleReloadPolicy])
    module.add_argument("--configure-nullblk", action=argparse.BooleanOptionalAction)

    cpu = parser.add_argument_group("cpu tuning")
    for flag in (
        "cpufreq-governor-performance",
        "disable-boost-amd",
        "disable-boost-intel",
        "amd-pstate-fixed-3ghz",
    ):
        cpu.add_argument(f"--{flag}", action=argparse.BooleanOptionalAction)

    remote = parser.add_argument_group("remote")
    remote.add_argument("--remote", help="Base URL of the remote controller")
    remote.add_argument("--ping-interval", type=float, help="Seconds between watchdog pings")

    return parser


def settings_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """CLI values that were actually given, keyed by Settings field name."""
    return {
        key: value
        for key, value in vars(args).items()
        if key not in _NON_SETTINGS_ARGS and value is not None
    }


def log_uname() -> None:
    uname = Command("uname", ["-a"]).output()
    logger.info("Uname: %s", uname.strip())


def run_benchmark(settings: Settings, telemetry: TelemetryAdapter | None = None) -> SweepStatus:
    """Run the whole sweep plus archival/upload; the caller handles shutdown."""
    batch_dir = create_batch_dir(settings) if settings.capture else None
    memory_log = None
    if batch_dir is not None:
        memory_log = attach_capture_sinks(batch_dir, settings.log_level)

    logger.info("Configuration: %s", settings.model_dump_json(indent=2))

    def push_log() -> None:
        if telemetry is not None and memory_log is not None:
            telemetry.push_log(memory_log.drain())

    log_uname()

    controller = SweepController(
        settings,
        HostState(settings),
        WorkloadExecutor(settings, telemetry),
        batch_dir=batch_dir,
        progress=make_progress(settings.capture),
        push_log=push_log,
    )
    status = controller.run()

    # Log the failure before compressing so it ends up in the archive.
    if status.error is not None:
        logger.error("Test failed: %s", status.error, exc_info=status.error)
    else:
        logger.info("Test succeeded")

    push_log()

    if settings.capture and settings.compress:
        archive = compress_directory(batch_dir)
        if telemetry is not None:
            telemetry.upload(archive)

    return status


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging()
    logger.info("Starting test runner")

    try:
        settings = load_settings(args.config, settings_overrides(args))
    except (ValidationError, FileNotFoundError) as exc:
        raise SystemExit(f"Invalid configuration: {exc}")

    if args.dump_config:
        print(settings.model_dump_json(indent=2))
        sys.exit(0)

    configure_logging(settings.log_level)

    telemetry = TelemetryClient(settings.remote) if settings.remote else None
    try:
        try:
            status = run_benchmark(settings, telemetry)
        except Exception as exc:
            logger.exception("Test run aborted")
            status = SweepStatus(error=exc)
        if telemetry is not None:
            telemetry.shutdown(status.succeeded)
    finally:
        if telemetry is not None:
            telemetry.close()

    sys.exit(status.exit_code)


if __name__ == "__main__":
    main()
