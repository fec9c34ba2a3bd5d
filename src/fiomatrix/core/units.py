"""fio-style size strings.

fio treats size suffixes as powers of 1024 by default (kb_base=1024), so
"4k" is 4096 bytes and "16M" is 16 MiB. An optional trailing "b"/"ib" is
accepted ("4kb", "4KiB").
"""

from __future__ import annotations

import re

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([kmgtp]?)(i?b)?\s*$", re.IGNORECASE)

_MULTIPLIERS = {
    "": 1,
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
    "p": 1024**5,
}


def parse_size(value: str | int) -> int:
    """Convert a fio size string into bytes.

    >>> parse_size("4k")
    4096
    >>> parse_size("512")
    512
    """
    if isinstance(value, int):
        return value
    m = _SIZE_RE.match(value)
    if not m:
        raise ValueError(f"Invalid size: {value!r}")
    number, suffix, _ = m.groups()
    return int(number) * _MULTIPLIERS[suffix.lower()]
