# src/macocr/geometry.py
"""
Coordinate conversion between engine space and the public pixel space.

Engines report corners normalized to [0, 1] with the origin at the bottom-left
and y growing upward. Consumers get pixels with the origin at the top-left and
y growing downward, so every y is flipped against the image height.
"""
from __future__ import annotations

from typing import Iterable, List, Sequence, Tuple

from .exceptions import MalformedObservationError
from .models import Point, RawObservation, TextRegion


def to_pixel(point: Point, width: int, height: int) -> Point:
    return Point(x=point.x * width, y=(1.0 - point.y) * height)


def bounding_box(points: Iterable[Point]) -> Tuple[float, float, float, float]:
    """Tightest axis-aligned (x, y, w, h) enclosing the points."""
    pts = list(points)
    if not pts:
        raise MalformedObservationError("Cannot compute a bounding box without points")
    xs = [p.x for p in pts]
    ys = [p.y for p in pts]
    min_x, max_x = min(xs), max(xs)
    min_y, max_y = min(ys), max(ys)
    return min_x, min_y, max_x - min_x, max_y - min_y


def normalize_observation(obs: RawObservation, width: int, height: int) -> TextRegion:
    """
    Convert one engine observation into a TextRegion.
    The box is derived from the quadrilateral, never assumed axis aligned,
    since recognized lines may be slightly rotated.
    """
    corners = list(obs.corners or [])
    if len(corners) != 4:
        raise MalformedObservationError(
            f"Observation {obs.text!r} has {len(corners)} corners, expected 4"
        )

    tl, tr, br, bl = (to_pixel(c, width, height) for c in corners)
    x, y, w, h = bounding_box((tl, tr, br, bl))
    return TextRegion(
        text=obs.text,
        x=x,
        y=y,
        w=w,
        h=h,
        corners=(tl, tr, br, bl),
        confidence=obs.confidence,
    )


# --- Engine adapters ---

def normalized_rect_to_corners(x: float, y: float, w: float, h: float) -> List[Point]:
    """
    Corners of a normalized rectangle whose (x, y) is its bottom-left,
    the layout Vision's boundingBox uses.
    """
    return [
        Point(x, y + h),
        Point(x + w, y + h),
        Point(x + w, y),
        Point(x, y),
    ]


def pixel_quad_to_normalized(points: Sequence[Sequence[float]], width: int, height: int) -> List[Point]:
    """Map top-left origin pixel points back into normalized bottom-left space."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")
    return [Point(float(px) / width, 1.0 - float(py) / height) for px, py in points]
