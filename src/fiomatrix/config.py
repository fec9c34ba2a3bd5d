import logging
import tomllib
from pathlib import Path
from typing import Any

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from fiomatrix.core.units import parse_size
from fiomatrix.models.enums import ModuleReloadPolicy

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class Settings(BaseSettings):
    model_config = {"env_prefix": "FIOMATRIX_", "frozen": True}

    # Sweep shape
    samples: int = 30
    runtime: int = 30  # seconds, passed to fio --runtime
    ramp: int = 10  # seconds, 0 disables --ramp_time
    device: str = "nullb0"
    jobcounts: list[int] = [1]
    workloads: list[str] = ["read"]
    queue_depths: list[int] = [1]
    block_sizes: list[str] = ["4k"]

    # Benchmark binary and fio options
    fio: str = "fio"
    prep: bool = False
    verify: bool = False
    hipri: bool = False
    hugepages: bool = False

    # Output capture
    capture: bool = False
    compress: bool = False
    tag: str | None = None
    output_path: str | None = None

    # Kernel module under test
    module: str | None = None
    module_args: list[str] = []
    insmod: bool = False
    modprobe: bool = False
    module_reload_policy: ModuleReloadPolicy = ModuleReloadPolicy.ALWAYS
    unload_retry_max: int = 3
    unload_retry_delay: float = 1.0

    # Simulated null_blk device
    configure_nullblk: bool = False

    # CPU frequency tuning (applied once, never reverted)
    cpufreq_governor_performance: bool = False
    disable_boost_amd: bool = False
    disable_boost_intel: bool = False
    amd_pstate_fixed_3ghz: bool = False

    # Remote controller
    remote: str | None = None
    ping_interval: float = 60.0
    poll_interval: float = 1.0

    # Record the first failure and keep sweeping instead of aborting
    continue_on_error: bool = False

    # Logging
    log_level: str = "INFO"

    @field_validator("samples")
    @classmethod
    def _positive_samples(cls, v: int) -> int:
        if v < 1:
            raise ValueError("samples must be at least 1")
        return v

    @field_validator("jobcounts", "queue_depths")
    @classmethod
    def _positive_axis(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("axis must not be empty")
        if any(x < 1 for x in v):
            raise ValueError("axis values must be at least 1")
        return v

    @field_validator("workloads")
    @classmethod
    def _non_empty_workloads(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("workloads must not be empty")
        return v

    @field_validator("block_sizes")
    @classmethod
    def _parseable_block_sizes(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("block_sizes must not be empty")
        for size in v:
            parse_size(size)
        return v

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @model_validator(mode="after")
    def validate_combinations(self):
        if self.insmod and self.modprobe:
            raise ValueError("Cannot set insmod and modprobe at the same time")
        if self.module and not (self.insmod or self.modprobe):
            raise ValueError("Missing insmod or modprobe option")
        if self.compress and not self.capture:
            raise ValueError("Cannot compress without capture")
        if self.remote and not self.compress:
            raise ValueError("Cannot upload without compress")
        if self.remote and not self.capture:
            raise ValueError("Cannot upload without capture")
        if self.unload_retry_max < 1:
            raise ValueError("unload_retry_max must be at least 1")
        return self

    @property
    def nullblk_device(self) -> bool:
        """True when the target device is a null_blk instance (nullbN)."""
        return self.device.startswith("nullb")


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Could not find config file: {path}")
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_settings(
    config_files: list[Path] | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Merge TOML config files and CLI overrides into a validated Settings.

    Later files win over earlier ones, CLI overrides win over files, and
    FIOMATRIX_* environment variables only fill fields nobody else set.
    """
    merged: dict[str, Any] = {}
    for path in config_files or []:
        logger.debug("Reading config file %s", path)
        merged.update(_read_config_file(Path(path)))
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value
    return Settings(**merged)
