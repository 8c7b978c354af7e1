import re

_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(time_str: str) -> int:
    """
    Parse a duration string like '15s', '10m', '1h', '30d' into seconds.
    Alias for parse_time for compatibility.
    """
    return parse_time(time_str)


def parse_time(time_str: str) -> int:
    """
    Parse a time string like '15s', '10m', '1h', '30d' into seconds.
    """
    if not isinstance(time_str, str):
        raise ValueError("Invalid time string format")

    match = re.fullmatch(r"\s*(\d+)\s*([smhd])\s*", time_str)
    if not match:
        raise ValueError("Invalid time string format")

    value, unit = match.groups()
    return int(value) * _UNITS[unit]


def parse_minutes(time_str: str) -> int:
    """Parse a duration into whole minutes, rounding up; bare numbers are minutes."""
    if isinstance(time_str, str) and time_str.strip().isdigit():
        return int(time_str.strip())
    seconds = parse_time(time_str)
    return -(-seconds // 60)
