"""Huge-page pool sizing for fio's --iomem=mmaphuge.

fio sizes each job's I/O buffer as max_bs * iodepth, adds the page mask and
rounds to the huge-page size when it computes the buffer size, then adds the
page mask and rounds to the huge-page size again when it allocates. The
double rounding is reproduced as-is: a pool sized any smaller makes fio fail
to map its buffers.
"""

from __future__ import annotations

import logging

from fiomatrix.core.sysfs import HostMutationError, read_control_file, write_control_file
from fiomatrix.core.units import parse_size

logger = logging.getLogger(__name__)

PAGE_SIZE = 4 * 1024
PAGE_MASK = PAGE_SIZE - 1
HUGEPAGE_SIZE = 2 * 1024 * 1024
NR_HUGEPAGES_PATH = "/proc/sys/vm/nr_hugepages"


class HugePagesNotReservedError(HostMutationError):
    def __init__(self, requested: int, reserved: int):
        self.requested = requested
        self.reserved = reserved
        super().__init__(
            f"Kernel reserved {reserved} of {requested} requested huge pages"
        )


def _round_up(value: int, boundary: int) -> int:
    return (value + boundary - 1) // boundary * boundary


def calculate_hugepages(queue_depth: int, block_size: int, job_count: int) -> int:
    """Number of 2 MiB huge pages fio needs for job_count jobs."""
    per_job = block_size * queue_depth
    per_job = _round_up(per_job + PAGE_MASK, HUGEPAGE_SIZE)
    per_job = _round_up(per_job + PAGE_MASK, HUGEPAGE_SIZE)
    total = per_job * job_count
    return (total + HUGEPAGE_SIZE - 1) // HUGEPAGE_SIZE


def sweep_requirement(
    jobcounts: list[int], block_sizes: list[str], queue_depths: list[int]
) -> int:
    """Pool size covering the worst case of every axis, taken independently."""
    return calculate_hugepages(
        queue_depth=max(queue_depths),
        block_size=max(parse_size(bs) for bs in block_sizes),
        job_count=max(jobcounts),
    )


def apply_hugepages(count: int, path: str = NR_HUGEPAGES_PATH) -> None:
    """Size the system huge-page pool and verify the kernel honored it.

    The kernel may reserve fewer pages than requested when memory is
    fragmented; that is reported as HugePagesNotReservedError.
    """
    logger.info("Reserving %d huge pages", count)
    write_control_file(path, count)
    raw = read_control_file(path)
    try:
        reserved = int(raw)
    except ValueError as exc:
        raise HostMutationError(f"Unexpected value in {path}: {raw!r}") from exc
    if reserved != count:
        raise HugePagesNotReservedError(count, reserved)
