from .enums import HostStage, ModuleReloadPolicy, SweepPhase
from .sweep import SweepPoint, SweepStatus

__all__ = [
    "HostStage",
    "ModuleReloadPolicy",
    "SweepPhase",
    "SweepPoint",
    "SweepStatus",
]
