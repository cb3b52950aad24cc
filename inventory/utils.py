"""Formatting and progress helpers shared by the CLI and task workers."""

from typing import Optional


def format_bytes(num_bytes: Optional[int], decimals: int = 2) -> str:
    if not num_bytes:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, max(decimals, 0)):g} {units[i]}"


def format_speed(bytes_per_sec: Optional[float]) -> str:
    if not bytes_per_sec:
        return "0 B/s"
    return f"{format_bytes(int(bytes_per_sec))}/s"


def format_eta(seconds: Optional[float]) -> str:
    if seconds is None or seconds < 0:
        return "calculating..."
    if seconds < 60:
        return f"{round(seconds)}s"
    mins, secs = divmod(int(round(seconds)), 60)
    if mins < 60:
        return f"{mins}m {secs}s"
    hours, mins = divmod(mins, 60)
    return f"{hours}h {mins}m"


def calculate_eta(current: Optional[int], total: Optional[int], speed: Optional[float]) -> Optional[int]:
    """Seconds left at the current speed, or None when it cannot be known."""
    if not total or not speed:
        return None
    remaining = total - (current or 0)
    if remaining <= 0:
        return 0
    return int(remaining / speed)


def calculate_progress(current: Optional[int], total: Optional[int]) -> int:
    """Whole percent in 0..100."""
    if not total or not current:
        return 0
    return min(100, max(0, round(current / total * 100)))
