from unittest.mock import MagicMock

import pytest

from fiomatrix.adapters.mock import MockTelemetryAdapter
from fiomatrix.config import Settings
from fiomatrix.core.host import HostPaths


def make_settings(**overrides) -> Settings:
    defaults = dict(
        samples=1,
        runtime=5,
        ramp=0,
        device="nullb0",
        jobcounts=[1],
        workloads=["read"],
        queue_depths=[1],
        block_sizes=["4k"],
        unload_retry_delay=0,
    )
    defaults.update(overrides)
    return Settings(**defaults)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep FIOMATRIX_* variables from the developer's shell out of Settings."""
    import os

    for key in list(os.environ):
        if key.startswith("FIOMATRIX_"):
            monkeypatch.delenv(key)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def host_paths(tmp_path):
    """A fake sysfs/configfs/procfs tree rooted in tmp_path."""
    nullb_root = tmp_path / "config" / "nullb"
    nullb_root.mkdir(parents=True)
    block_root = tmp_path / "block"
    (block_root / "nullb0" / "queue").mkdir(parents=True)
    cpu_root = tmp_path / "cpu"
    for sub in ("amd_pstate", "intel_pstate", "cpufreq/policy0", "cpufreq/policy1"):
        (cpu_root / sub).mkdir(parents=True)
    nr_hugepages = tmp_path / "nr_hugepages"
    nr_hugepages.write_text("0\n")
    return HostPaths(
        nullb_root=str(nullb_root),
        block_root=str(block_root),
        cpu_root=str(cpu_root),
        nr_hugepages=str(nr_hugepages),
    )


@pytest.fixture
def mock_telemetry():
    return MockTelemetryAdapter()


def make_proc(returncode=0, polls=None):
    """Popen stand-in. polls is the sequence poll() returns before returncode."""
    proc = MagicMock()
    proc.wait.return_value = returncode
    proc.returncode = returncode
    proc.communicate.return_value = (b"", b"")
    sequence = list(polls or []) + [returncode]

    def poll():
        if len(sequence) > 1:
            return sequence.pop(0)
        return sequence[0]

    proc.poll.side_effect = poll
    return proc
