"""Human-readable formatting helpers shared by the pipelines.

``format_bytes`` / ``convert_to_bytes`` render and parse backup sizes and
transfer progress; ``slugify`` builds tenant-namespaced storage paths.

Example:
    >>> format_bytes(1024)
    '1 KB'
    >>> convert_to_bytes("1 KB")
    1024
    >>> slugify("Acme Corp!")
    'acme-corp'
"""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime

from dockyard.core.models import utcnow

_UNITS = ["B", "KB", "MB", "GB", "TB"]

_BINARY_FACTORS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}

_SIZE_RE = re.compile(r"^([\d.]+)\s*(B|KB|KIB|MB|MIB|GB|GIB|TB|TIB)$", re.IGNORECASE)


def format_bytes(num_bytes: int, precision: int = 2) -> str:
    """Format a byte count with binary (1024) units.

    Trailing zeros are dropped so that exact unit boundaries render as
    whole numbers: ``1024 -> "1 KB"``, ``1536 -> "1.5 KB"``.
    """
    value = float(max(num_bytes, 0))
    unit_index = 0

    while value >= 1024 and unit_index < len(_UNITS) - 1:
        value /= 1024
        unit_index += 1

    rendered = f"{round(value, precision):.{precision}f}".rstrip("0").rstrip(".")
    return f"{rendered} {_UNITS[unit_index]}"


def convert_to_bytes(value: str, *, si: bool = False) -> int:
    """Parse a size string back into bytes.

    ``KB``/``MB``/... are read as binary multiples so that
    ``convert_to_bytes(format_bytes(n))`` is stable at unit boundaries.
    ``KiB``/``MiB``/... are always binary. With ``si=True`` the plain
    suffixes use powers of 1000, which is what ``docker stats`` prints for
    network and block I/O.

    Unparseable input returns 0.
    """
    match = _SIZE_RE.match(value.strip())
    if not match:
        return 0

    number = float(match.group(1))
    unit = match.group(2).upper()

    if unit.endswith("IB"):
        factor = _BINARY_FACTORS[unit[0] + "B"]
    elif si:
        factor = 1000 ** _UNITS.index(unit)
    else:
        factor = _BINARY_FACTORS[unit]

    return int(round(number * factor))


def slugify(value: str) -> str:
    """Convert a name to a path-safe slug (``"Acme Corp" -> "acme-corp"``)."""
    value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^\w\s-]", "", value.lower())
    return re.sub(r"[-\s_]+", "-", value).strip("-_")


def log_line(message: str, at: datetime | None = None) -> str:
    """Format one accumulated log line: ``[2025-01-09 12:00:00] message``."""
    return f"[{(at or utcnow()).strftime('%Y-%m-%d %H:%M:%S')}] {message}"


__all__ = ["format_bytes", "convert_to_bytes", "slugify", "log_line"]
