"""Planar geometry shared by the layout generator, simulators and maze."""

from __future__ import annotations

import math
from typing import Tuple

Point = Tuple[float, float]

_PARALLEL_EPSILON = 1e-4


def js_round(value: float) -> int:
    """Round half up, matching browser pixel rounding."""
    return math.floor(value + 0.5)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def distance(a: Point, b: Point) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def wrapped_delta(delta: float, size: float) -> float:
    """Shortest signed displacement along an axis of a torus of length ``size``."""
    delta = (delta + size / 2) % size - size / 2
    return delta


def velocity_px_per_s(current: Point, previous: Point, elapsed_ms: float) -> float:
    """Speed between two positions in pixels per second (0 for no elapsed time)."""
    if elapsed_ms <= 0:
        return 0.0
    return distance(current, previous) / elapsed_ms * 1000


def normalize_heading(heading: float) -> float:
    """Map any angle in degrees onto [0, 360)."""
    heading = heading % 360.0
    # Tiny negative inputs round up to exactly 360.0 under float modulo
    return 0.0 if heading >= 360.0 else heading


def heading_delta(current: float, previous: float) -> float:
    """Signed smallest rotation from ``previous`` to ``current`` in (-180, 180]."""
    delta = (current - previous) % 360.0
    return delta - 360.0 if delta > 180.0 else delta


# ============================================================================
# Rectangles and segments
# ============================================================================


def point_in_rect(px: float, py: float, rx: float, ry: float, rw: float, rh: float) -> bool:
    """True when the point lies inside or on the border of the rectangle."""
    return rx <= px <= rx + rw and ry <= py <= ry + rh


def segments_intersect(
    x1: float, y1: float, x2: float, y2: float,
    x3: float, y3: float, x4: float, y4: float,
) -> bool:
    """Parametric test for two segments crossing; parallel segments never cross."""
    denom = (y4 - y3) * (x2 - x1) - (x4 - x3) * (y2 - y1)
    if abs(denom) < _PARALLEL_EPSILON:
        return False

    ua = ((x4 - x3) * (y1 - y3) - (y4 - y3) * (x1 - x3)) / denom
    ub = ((x2 - x1) * (y1 - y3) - (y2 - y1) * (x1 - x3)) / denom
    return 0 <= ua <= 1 and 0 <= ub <= 1


def segment_intersects_rect(
    x1: float, y1: float, x2: float, y2: float,
    rx: float, ry: float, rw: float, rh: float,
) -> bool:
    """Swept test: does the segment from (x1, y1) to (x2, y2) touch the rectangle?

    Checks the four edges, then containment of either endpoint (a segment lying
    wholly inside crosses no edge).
    """
    left, right = rx, rx + rw
    top, bottom = ry, ry + rh

    edges = (
        (left, top, right, top),
        (left, bottom, right, bottom),
        (left, top, left, bottom),
        (right, top, right, bottom),
    )
    for ex1, ey1, ex2, ey2 in edges:
        if segments_intersect(x1, y1, x2, y2, ex1, ey1, ex2, ey2):
            return True

    return point_in_rect(x1, y1, rx, ry, rw, rh) or point_in_rect(x2, y2, rx, ry, rw, rh)


def circle_intersects_rect(
    cx: float, cy: float, radius: float,
    rx: float, ry: float, rw: float, rh: float,
) -> bool:
    """Circle-vs-AABB overlap using the closest point of the rectangle."""
    closest_x = clamp(cx, rx, rx + rw)
    closest_y = clamp(cy, ry, ry + rh)
    dx = cx - closest_x
    dy = cy - closest_y
    return dx * dx + dy * dy < radius * radius
