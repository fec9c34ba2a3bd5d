from __future__ import annotations

from pydantic import BaseModel


class SweepPoint(BaseModel):
    """One concrete (block size, job count, workload, queue depth) combination."""

    model_config = {"frozen": True}

    block_size: str
    job_count: int
    workload: str
    queue_depth: int

    def output_id(self, runtime: int) -> str:
        """Artifact stem shared by the .json/.stdout/.stderr files of this point."""
        return (
            f"j{self.job_count}-r{runtime}-w{self.workload}"
            f"-bs{self.block_size}-qd{self.queue_depth}"
        )

    def describe(self) -> str:
        return (
            f"qd:{self.queue_depth} bs:{self.block_size} "
            f"jobs:{self.job_count} wl:{self.workload}"
        )


class SweepStatus(BaseModel):
    """Terminal outcome of a sweep: success, or the first failure recorded."""

    model_config = {"arbitrary_types_allowed": True}

    points_completed: int = 0
    points_total: int = 0
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1
