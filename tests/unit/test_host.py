"""Tests for HostState. Control files live under tmp_path and Popen is mocked."""

import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from fiomatrix.core.host import (
    AMD_PSTATE_MAX_FREQ_KHZ,
    NULLBLK_ATTRIBUTES,
    HostState,
    HostTransitionError,
)
from fiomatrix.core.process import ProcessFailedError
from fiomatrix.core.sysfs import HostMutationError
from fiomatrix.models.enums import HostStage, ModuleReloadPolicy

from .conftest import make_proc, make_settings


def _read(path):
    with open(path) as f:
        return f.read()


class TestNullBlk:
    def test_setup_creates_device_and_writes_attributes(self, host_paths):
        host = HostState(make_settings(configure_nullblk=True), host_paths)
        host.setup_nullblk()
        control = os.path.join(host_paths.nullb_root, "nullb0")
        assert os.path.isdir(control)
        assert _read(os.path.join(control, "blocksize")) == "4096\n"
        assert _read(os.path.join(control, "queue_mode")) == "2\n"
        assert _read(os.path.join(control, "hw_queue_depth")) == "256\n"
        assert _read(os.path.join(control, "power")) == "1\n"

    def test_power_written_last(self, host_paths):
        host = HostState(make_settings(), host_paths)
        with patch("fiomatrix.core.host.write_control_file") as write:
            host.setup_nullblk()
        names = [os.path.basename(c.args[0]) for c in write.call_args_list]
        assert names == [name for name, _ in NULLBLK_ATTRIBUTES]
        assert names[-1] == "power"

    def test_setup_fails_when_device_exists(self, host_paths):
        os.mkdir(os.path.join(host_paths.nullb_root, "nullb0"))
        host = HostState(make_settings(), host_paths)
        with pytest.raises(HostMutationError):
            host.setup_nullblk()

    def test_teardown_removes_every_device(self, host_paths):
        for name in ("nullb0", "nullb1"):
            os.mkdir(os.path.join(host_paths.nullb_root, name))
        # Plain files under the root are not devices
        open(os.path.join(host_paths.nullb_root, "features"), "w").close()
        HostState(make_settings(), host_paths).teardown_nullblk()
        assert os.listdir(host_paths.nullb_root) == ["features"]

    def test_teardown_attempts_all_before_failing(self, host_paths):
        for name in ("nullb0", "nullb1"):
            os.mkdir(os.path.join(host_paths.nullb_root, name))
        removed = []

        def fake_rmdir(path):
            removed.append(os.path.basename(path))
            if path.endswith("nullb0"):
                raise OSError(16, "Device or resource busy")

        with patch("fiomatrix.core.host.os.rmdir", side_effect=fake_rmdir):
            with pytest.raises(HostMutationError, match="nullb0"):
                HostState(make_settings(), host_paths).teardown_nullblk()
        assert removed == ["nullb0", "nullb1"]

    def test_teardown_without_configfs_root(self, tmp_path, host_paths):
        paths = replace(host_paths, nullb_root=str(tmp_path / "absent"))
        with pytest.raises(HostMutationError):
            HostState(make_settings(), paths).teardown_nullblk()


class TestQueueKnobs:
    def test_scheduler_and_iostats(self, host_paths):
        host = HostState(make_settings(), host_paths)
        host.set_scheduler()
        host.disable_iostats()
        queue = os.path.join(host_paths.block_root, "nullb0", "queue")
        assert _read(os.path.join(queue, "scheduler")) == "none\n"
        assert _read(os.path.join(queue, "iostats")) == "0\n"

    def test_missing_device(self, host_paths):
        host = HostState(make_settings(device="nvme9n1"), host_paths)
        with pytest.raises(HostMutationError, match="scheduler"):
            host.set_scheduler()


class TestModule:
    def test_no_module_is_noop(self, host_paths):
        host = HostState(make_settings(), host_paths)
        with patch("fiomatrix.core.process.subprocess.Popen") as popen:
            host.load_module()
            host.unload_module()
        popen.assert_not_called()

    def test_insmod_with_args(self, host_paths):
        settings = make_settings(module="drv.ko", insmod=True, module_args=["queues=4"])
        with patch("fiomatrix.core.process.subprocess.Popen", return_value=make_proc(0)) as popen:
            HostState(settings, host_paths).load_module()
        assert popen.call_args.args[0] == ["insmod", "drv.ko", "queues=4"]

    def test_modprobe_load_and_unload(self, host_paths):
        settings = make_settings(module="null_blk", modprobe=True)
        host = HostState(settings, host_paths)
        with patch("fiomatrix.core.process.subprocess.Popen", return_value=make_proc(0)) as popen:
            host.load_module()
            host.unload_module()
        argvs = [c.args[0] for c in popen.call_args_list]
        assert argvs == [["modprobe", "null_blk"], ["modprobe", "-r", "null_blk"]]

    def test_rmmod_retries_three_times(self, host_paths):
        settings = make_settings(module="drv", insmod=True, unload_retry_delay=1.0)
        procs = [make_proc(1), make_proc(1), make_proc(1)]
        with patch("fiomatrix.core.process.subprocess.Popen", side_effect=procs) as popen, \
                patch("fiomatrix.core.process.time.sleep") as sleep:
            with pytest.raises(HostMutationError) as exc_info:
                HostState(settings, host_paths).unload_module()
        assert popen.call_count == 3
        assert all(c.args[0] == ["rmmod", "drv"] for c in popen.call_args_list)
        assert sleep.call_count == 2
        assert isinstance(exc_info.value.__cause__, ProcessFailedError)

    def test_load_failure(self, host_paths):
        settings = make_settings(module="drv.ko", insmod=True)
        with patch("fiomatrix.core.process.subprocess.Popen", return_value=make_proc(1)):
            with pytest.raises(HostMutationError, match="drv.ko"):
                HostState(settings, host_paths).load_module()


class TestCpuTuning:
    def test_governor_uses_cpupower(self, host_paths):
        with patch("fiomatrix.core.process.subprocess.Popen", return_value=make_proc(0)) as popen:
            HostState(make_settings(), host_paths).set_governor()
        assert popen.call_args.args[0] == ["cpupower", "frequency-set", "-g", "performance"]

    def test_boost_controls(self, host_paths):
        host = HostState(make_settings(), host_paths)
        os.makedirs(os.path.dirname(host_paths.cpufreq_boost), exist_ok=True)
        host.disable_boost_amd()
        host.disable_boost_intel()
        assert _read(host_paths.cpufreq_boost) == "0\n"
        assert _read(host_paths.intel_no_turbo) == "1\n"

    def test_amd_pstate_fixed(self, host_paths):
        for policy in ("policy0", "policy1"):
            path = os.path.join(host_paths.cpu_root, "cpufreq", policy, "scaling_max_freq")
            with open(path, "w") as f:
                f.write("4500000\n")
        host = HostState(make_settings(), host_paths)
        with patch("fiomatrix.core.process.subprocess.Popen", return_value=make_proc(0)) as popen:
            host.amd_pstate_fixed_3ghz()
        assert _read(host_paths.amd_pstate_status) == "guided\n"
        assert _read(host_paths.cpufreq_boost) == "0\n"
        popen.assert_called_once()
        for path in host_paths.scaling_max_freq_files():
            assert _read(path) == f"{AMD_PSTATE_MAX_FREQ_KHZ}\n"
        assert len(host_paths.scaling_max_freq_files()) == 2

    def test_governor_failure(self, host_paths):
        with patch("fiomatrix.core.process.subprocess.Popen", return_value=make_proc(1)):
            with pytest.raises(HostMutationError, match="governor"):
                HostState(make_settings(), host_paths).set_governor()


class TestHugePages:
    def test_apply_uses_host_path(self, host_paths):
        HostState(make_settings(), host_paths).apply_hugepages(12)
        assert _read(host_paths.nr_hugepages) == "12\n"


class TestRunStateMachine:
    def test_minimal_setup_and_teardown(self, host_paths):
        host = HostState(make_settings(), host_paths)
        assert host.stage == HostStage.IDLE
        host.setup_run()
        assert host.stage == HostStage.READY_FOR_RUN
        host.teardown_run()
        assert host.stage == HostStage.IDLE

    def test_always_policy_loads_and_unloads(self, host_paths):
        settings = make_settings(
            module="null_blk", modprobe=True,
            module_reload_policy=ModuleReloadPolicy.ALWAYS,
        )
        host = HostState(settings, host_paths)
        with patch("fiomatrix.core.process.subprocess.Popen", return_value=make_proc(0)) as popen:
            host.setup_run()
            host.teardown_run()
        argvs = [c.args[0] for c in popen.call_args_list]
        assert argvs == [["modprobe", "null_blk"], ["modprobe", "-r", "null_blk"]]
        assert host.stage == HostStage.IDLE

    def test_once_policy_leaves_module_alone(self, host_paths):
        settings = make_settings(
            module="null_blk", modprobe=True,
            module_reload_policy=ModuleReloadPolicy.ONCE,
        )
        host = HostState(settings, host_paths)
        with patch("fiomatrix.core.process.subprocess.Popen") as popen:
            host.setup_run()
            host.teardown_run()
        popen.assert_not_called()

    def test_failed_stage_is_named(self, host_paths):
        host = HostState(make_settings(device="missing0"), host_paths)
        with pytest.raises(HostTransitionError) as exc_info:
            host.setup_run()
        assert exc_info.value.stage == HostStage.SCHEDULER_TUNED
        assert host.stage == HostStage.IDLE

    def test_nullblk_setup_reaches_device_configured(self, host_paths):
        host = HostState(make_settings(configure_nullblk=True, device="nullb5"), host_paths)
        with patch("fiomatrix.core.host.write_control_file"):
            host.setup_run()
        assert os.path.isdir(os.path.join(host_paths.nullb_root, "nullb5"))
        assert host.stage == HostStage.READY_FOR_RUN

    def test_teardown_attempts_unload_after_device_failure(self, host_paths):
        settings = make_settings(
            module="null_blk", modprobe=True, configure_nullblk=True,
        )
        host = HostState(settings, host_paths)
        with patch("fiomatrix.core.process.subprocess.Popen", return_value=make_proc(0)), \
                patch("fiomatrix.core.host.write_control_file"):
            host.setup_run()
        with patch.object(host, "teardown_nullblk", side_effect=HostMutationError("busy")), \
                patch("fiomatrix.core.process.subprocess.Popen", return_value=make_proc(0)) as popen:
            with pytest.raises(HostTransitionError) as exc_info:
                host.teardown_run()
        assert exc_info.value.stage == HostStage.DEVICE_TORN_DOWN
        assert popen.call_args.args[0] == ["modprobe", "-r", "null_blk"]

    def test_failed_teardown_returns_to_idle(self, host_paths):
        host = HostState(make_settings(configure_nullblk=True), host_paths)
        with patch("fiomatrix.core.host.write_control_file"):
            host.setup_run()
        assert host.stage == HostStage.READY_FOR_RUN
        with patch.object(host, "teardown_nullblk", side_effect=HostMutationError("busy")):
            with pytest.raises(HostTransitionError):
                host.teardown_run()
        assert host.stage == HostStage.IDLE

    def test_failed_load_is_not_unloaded(self, host_paths):
        settings = make_settings(module="drv.ko", insmod=True)
        host = HostState(settings, host_paths)
        with patch("fiomatrix.core.process.subprocess.Popen", return_value=make_proc(1)):
            with pytest.raises(HostTransitionError) as exc_info:
                host.setup_run()
        assert exc_info.value.stage == HostStage.MODULE_LOADED
        with patch("fiomatrix.core.process.subprocess.Popen") as popen:
            host.teardown_run()
        popen.assert_not_called()
