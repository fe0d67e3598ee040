"""Small shared utility helpers used across backend modules."""

import math
from datetime import datetime, timezone


def utc_iso_now() -> str:
    """Return current UTC timestamp as ISO-8601 string."""

    return datetime.now(timezone.utc).isoformat()


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def circle_points(count: int, center_x: float, center_y: float, radius: float) -> list[tuple[float, float]]:
    """Spread `count` points evenly on a circle, starting at angle 0."""

    points: list[tuple[float, float]] = []
    for idx in range(count):
        angle = (idx / max(1, count)) * math.pi * 2
        points.append((center_x + math.cos(angle) * radius, center_y + math.sin(angle) * radius))
    return points
