"""
Planar geometry helpers

Point/vector algebra, axis-aligned bounds, and the polygon operations
(offset, simplify, clean, containment) the nesting engine relies on.
Polygon boolean work is delegated to shapely.
"""

import math
from typing import Iterable, List, Optional, Sequence, Tuple

import shapely
from shapely.geometry import LineString, MultiPolygon, Point as ShpPoint, Polygon
from shapely.geometry.base import BaseGeometry

Point = Tuple[float, float]
Vector = Tuple[float, float]
Line = Tuple[Point, Point]
Bounds = Tuple[Point, Point]

ORIGIN: Point = (0.0, 0.0)

EPS = 1e-9


# ============================================================================
# POINTS & VECTORS
# ============================================================================

def vector_add(a: Vector, b: Vector) -> Vector:
    return (a[0] + b[0], a[1] + b[1])


def vector_subtract(a: Vector, b: Vector) -> Vector:
    return (a[0] - b[0], a[1] - b[1])


def vector_multiply(vector: Vector, a: float) -> Vector:
    return (vector[0] * a, vector[1] * a)


def vector_dot_product(a: Vector, b: Vector) -> float:
    return a[0] * b[0] + a[1] * b[1]


def vector_length(vector: Vector) -> float:
    return math.hypot(vector[0], vector[1])


def vector_normalize(vector: Vector) -> Vector:
    """Unit vector in the direction of *vector* (zero vector stays zero)"""
    length = vector_length(vector)
    if length < EPS:
        return (0.0, 0.0)
    return (vector[0] / length, vector[1] / length)


def vector_to(start: Point, end: Point) -> Vector:
    return (end[0] - start[0], end[1] - start[1])


def point_distance_to(a: Point, b: Point) -> float:
    return vector_length(vector_to(a, b))


def _rotation_terms(angle: float) -> Tuple[float, float]:
    """Cosine and sine of *angle* degrees, exact for quarter turns"""
    normalized = angle_normalize(angle)
    turns = normalized / 90.0
    if abs(turns - round(turns)) < EPS:
        return ((1.0, 0.0), (0.0, 1.0), (-1.0, 0.0), (0.0, -1.0))[int(round(turns)) % 4]
    radians = math.radians(normalized)
    return math.cos(radians), math.sin(radians)


def point_rotate(point: Point, angle: float, center: Point = ORIGIN) -> Point:
    """Rotate *point* counter-clockwise by *angle* degrees around *center*"""
    cos_a, sin_a = _rotation_terms(angle)
    dx, dy = point[0] - center[0], point[1] - center[1]
    return (center[0] + dx * cos_a - dy * sin_a, center[1] + dx * sin_a + dy * cos_a)


def angle_normalize(angle: float) -> float:
    """Map an angle in degrees onto [0, 360)"""
    normalized = math.fmod(angle, 360.0)
    if normalized < 0.0:
        normalized += 360.0
    return 0.0 if normalized >= 360.0 else normalized


# ============================================================================
# LINES
# ============================================================================

def line_length(line: Line) -> float:
    return point_distance_to(line[0], line[1])


def line_direction(line: Line) -> Vector:
    return vector_normalize(vector_to(line[0], line[1]))


def point_on_line(point: Point, line: Line, tolerance: float = EPS) -> bool:
    """True when *point* lies on the closed segment *line*"""
    return point_distance_to(point, line_closest_point_to(line, point)) <= tolerance


def line_closest_point_to(line: Line, p: Point) -> Point:
    direction = line_direction(line)
    num = vector_dot_product(vector_to(line[0], p), direction)
    num = min(max(num, 0.0), line_length(line))
    return vector_add(line[0], vector_multiply(direction, num))


# ============================================================================
# BOUNDS
# ============================================================================

def bounds_of_points(points: Iterable[Point]) -> Optional[Bounds]:
    """Tight axis-aligned box of *points*, or None when there are none"""
    xs: List[float] = []
    ys: List[float] = []
    for x, y in points:
        xs.append(x)
        ys.append(y)
    if not xs:
        return None
    return ((min(xs), min(ys)), (max(xs), max(ys)))


def bounds_size(bounds: Bounds) -> Tuple[float, float]:
    return (bounds[1][0] - bounds[0][0], bounds[1][1] - bounds[0][1])


def bounds_area(bounds: Bounds) -> float:
    w, h = bounds_size(bounds)
    return max(0.0, w) * max(0.0, h)


def bounds_offset(bounds: Bounds, delta: float) -> Bounds:
    """Grow *bounds* by *delta* on every side (shrink when negative)"""
    return (
        (bounds[0][0] - delta, bounds[0][1] - delta),
        (bounds[1][0] + delta, bounds[1][1] + delta),
    )


def bounds_extents_points(bounds: Bounds) -> List[Point]:
    w, h = bounds_size(bounds)
    return [bounds[0], vector_add(bounds[0], (w, 0.0)), bounds[1], vector_add(bounds[0], (0.0, h))]


def bounds_from_minimum_point_and_size(minimum_point: Point, size: Tuple[float, float]) -> Bounds:
    return (minimum_point, (minimum_point[0] + size[0], minimum_point[1] + size[1]))


def bounds_union(a: Optional[Bounds], b: Optional[Bounds]) -> Optional[Bounds]:
    if a is None:
        return b
    if b is None:
        return a
    return (
        (min(a[0][0], b[0][0]), min(a[0][1], b[0][1])),
        (max(a[1][0], b[1][0]), max(a[1][1], b[1][1])),
    )


def bounds_overlap(a: Bounds, b: Bounds, tolerance: float = EPS) -> bool:
    """True when the interiors intersect; boxes that only touch do not overlap"""
    return (
        a[0][0] < b[1][0] - tolerance and b[0][0] < a[1][0] - tolerance
        and a[0][1] < b[1][1] - tolerance and b[0][1] < a[1][1] - tolerance
    )


def bounds_contains(outer: Bounds, inner: Bounds, tolerance: float = EPS) -> bool:
    return (
        inner[0][0] >= outer[0][0] - tolerance and inner[0][1] >= outer[0][1] - tolerance
        and inner[1][0] <= outer[1][0] + tolerance and inner[1][1] <= outer[1][1] + tolerance
    )


# ============================================================================
# POLYGONS
# ============================================================================

def _ring_points(coords: Sequence[Sequence[float]]) -> List[Point]:
    points = [(float(c[0]), float(c[1])) for c in coords]
    if len(points) > 1 and points[0] == points[-1]:
        points = points[:-1]
    return points


def _polygons_of(geometry: BaseGeometry) -> List[Polygon]:
    if geometry.is_empty:
        return []
    if isinstance(geometry, Polygon):
        return [geometry]
    if isinstance(geometry, MultiPolygon):
        return list(geometry.geoms)
    return [g for g in getattr(geometry, "geoms", []) if isinstance(g, Polygon) and not g.is_empty]


def polygon_area(points: Sequence[Point], signed: bool = False) -> float:
    """Shoelace area; positive for counter-clockwise rings when *signed*"""
    if len(points) < 3:
        return 0.0
    s = 0.0
    for i in range(len(points)):
        x1, y1 = points[i]
        x2, y2 = points[(i + 1) % len(points)]
        s += x1 * y2 - x2 * y1
    area = 0.5 * s
    return area if signed else abs(area)


def polygon_translate_by_vector(points: Sequence[Point], vector: Vector) -> List[Point]:
    return [(p[0] + vector[0], p[1] + vector[1]) for p in points]


def point_in_polygon(point: Point, polygon: BaseGeometry) -> bool:
    """Strict containment; points on the boundary are outside"""
    return bool(shapely.contains_xy(polygon, point[0], point[1]))


def polygon_offset(points: Sequence[Point], delta: float, quad_segs: int = 8) -> List[List[Point]]:
    """
    Offset a closed polygon outward (positive *delta*) or inward

    Uses round joins; the result may split into several regions or vanish.
    """
    if not points or len(points) < 3:
        return []
    result = Polygon(points).buffer(delta, quad_segs=quad_segs, join_style="round", mitre_limit=2.0)
    return [_ring_points(p.exterior.coords) for p in _polygons_of(result)]


def polygon_simplify(points: Sequence[Point]) -> List[Point]:
    """Resolve self-intersections and keep the largest simple polygon"""
    if not points or len(points) < 3:
        return []
    polygons = _polygons_of(shapely.make_valid(Polygon(points)))
    if not polygons:
        return []
    largest = max(polygons, key=lambda p: p.area)
    return _ring_points(largest.exterior.coords)


def polygon_clean(points: Sequence[Point], tolerance: float) -> List[Point]:
    """Drop near-duplicate and collinear vertices within *tolerance*"""
    if len(points) < 3:
        return list(points)
    cleaned = Polygon(points).simplify(tolerance, preserve_topology=True)
    polygons = _polygons_of(cleaned)
    if not polygons:
        return []
    return _ring_points(polygons[0].exterior.coords)


def polygon_closest_point_to(points: Sequence[Point], p: Point) -> Point:
    """Closest point to *p* on the closed ring *points*"""
    if not points:
        return ORIGIN
    if len(points) == 1:
        return points[0]
    ring = LineString(list(points) + [points[0]])
    nearest = ring.interpolate(ring.project(ShpPoint(p)))
    return (nearest.x, nearest.y)
