from enum import Enum


class ModuleReloadPolicy(str, Enum):
    ALWAYS = "always"
    ONCE = "once"


class HostStage(str, Enum):
    IDLE = "idle"
    MODULE_LOADED = "module_loaded"
    DEVICE_CONFIGURED = "device_configured"
    SCHEDULER_TUNED = "scheduler_tuned"
    IOSTATS_DISABLED = "iostats_disabled"
    READY_FOR_RUN = "ready_for_run"
    DEVICE_TORN_DOWN = "device_torn_down"
    MODULE_UNLOADED = "module_unloaded"


class SweepPhase(str, Enum):
    SETUP = "setup"
    PREP = "prep"
    MEASUREMENT = "measurement"
    TEARDOWN = "teardown"
