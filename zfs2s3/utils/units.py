"""
Human-readable durations and byte sizes used in configuration files.

Durations follow the humantime conventions: "90d", "12w", "3 months",
"1h 30m". Note that "m" means minutes and "M" means months.
"""

import re
from datetime import timedelta
from typing import Union


_SECOND = 1
_MINUTE = 60
_HOUR = 60 * _MINUTE
_DAY = 24 * _HOUR

DURATION_UNITS = {
    'ns': 1e-9, 'nsec': 1e-9,
    'us': 1e-6, 'usec': 1e-6,
    'ms': 1e-3, 'msec': 1e-3,
    's': _SECOND, 'sec': _SECOND, 'secs': _SECOND, 'second': _SECOND, 'seconds': _SECOND,
    'm': _MINUTE, 'min': _MINUTE, 'mins': _MINUTE, 'minute': _MINUTE, 'minutes': _MINUTE,
    'h': _HOUR, 'hr': _HOUR, 'hrs': _HOUR, 'hour': _HOUR, 'hours': _HOUR,
    'd': _DAY, 'day': _DAY, 'days': _DAY,
    'w': 7 * _DAY, 'week': 7 * _DAY, 'weeks': 7 * _DAY,
    'M': 30.44 * _DAY, 'month': 30.44 * _DAY, 'months': 30.44 * _DAY,
    'y': 365.25 * _DAY, 'year': 365.25 * _DAY, 'years': 365.25 * _DAY,
}

SIZE_UNITS = {
    'B': 1,
    'KB': 1000, 'MB': 1000 ** 2, 'GB': 1000 ** 3, 'TB': 1000 ** 4, 'PB': 1000 ** 5,
    'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3, 'T': 1024 ** 4, 'P': 1024 ** 5,
    'KIB': 1024, 'MIB': 1024 ** 2, 'GIB': 1024 ** 3, 'TIB': 1024 ** 4, 'PIB': 1024 ** 5,
}

KIB = 1024
MIB = 1024 ** 2
GIB = 1024 ** 3
TIB = 1024 ** 4

_DURATION_TERM = re.compile(r'\s*(\d+)\s*([A-Za-z]+)')
_SIZE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$')


def parse_duration(text: str) -> timedelta:
    """
    Parse a duration such as "90d" or "3 months 2 days".

    Raises:
        ValueError: If the text is empty, has no unit or an unknown unit
    """
    if not isinstance(text, str) or not text.strip():
        raise ValueError(f"Empty duration: {text!r}")

    seconds = 0.0
    position = 0
    stripped = text.rstrip()
    while position < len(stripped):
        match = _DURATION_TERM.match(stripped, position)
        if not match:
            raise ValueError(f"Invalid duration: {text!r}")
        value, unit = match.groups()
        if unit not in DURATION_UNITS:
            raise ValueError(f"Unknown time unit {unit!r} in duration {text!r}")
        seconds += int(value) * DURATION_UNITS[unit]
        position = match.end()

    return timedelta(seconds=seconds)


def parse_size(value: Union[int, str]) -> int:
    """
    Parse a byte size such as "5TiB", "500 MB" or a plain integer.

    Raises:
        ValueError: If the size is negative or malformed
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Size must not be negative: {value}")
        return value

    match = _SIZE.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    unit = unit.upper() if unit else 'B'
    if unit not in SIZE_UNITS:
        raise ValueError(f"Unknown size unit {unit!r} in {value!r}")
    return int(float(number) * SIZE_UNITS[unit])


def format_size(size: int) -> str:
    """Format a byte count for log messages."""
    for unit, factor in (('TiB', TIB), ('GiB', GIB), ('MiB', MIB), ('KiB', KIB)):
        if size >= factor:
            return f'{size / factor:.2f} {unit}'
    return f'{size} B'
