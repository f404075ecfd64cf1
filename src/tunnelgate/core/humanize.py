"""Human-friendly formatting helpers (bytes, speeds, ages, timestamps)."""

from __future__ import annotations

from datetime import datetime


def format_bytes(num_bytes: int) -> str:
    value = float(max(0, int(num_bytes)))
    units = ["B", "KiB", "MiB", "GiB", "TiB"]
    unit = units[0]
    for next_unit in units[1:]:
        if value < 1024.0:
            break
        value /= 1024.0
        unit = next_unit
    if unit == "B":
        return f"{int(value)} {unit}"
    return f"{value:.1f} {unit}"


def format_speed(bytes_per_s: float) -> str:
    return f"{format_bytes(int(max(0.0, float(bytes_per_s))))}/s"


def format_age_hours(hours: float) -> str:
    hours = max(0.0, float(hours))
    if hours < 1:
        return "< 1h"
    if hours < 24:
        return f"{round(hours)}h"
    days = int(hours // 24)
    if days < 7:
        return f"{days}d"
    if days < 30:
        return f"{days // 7}w"
    if days < 365:
        return f"{days // 30}mo"
    return f"{days // 365}y"


def format_progress(fraction: float) -> str:
    return f"{max(0.0, min(1.0, float(fraction))) * 100:.1f}%"


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")
