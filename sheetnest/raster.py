"""
Raster sampling and the no-fit raster engine

Regions and polygons are discretized into dots spaced ``pitch`` apart.
Overlap between two polygons is then approximated by exact coincidence of
their dots, which turns the no-fit polygon into a dense boolean grid test.

All dots that are compared with each other live on one lattice,
``anchor + (i * pitch, j * pitch)``; ``lattice_bounds`` snaps a region onto
it so that rows walked in either direction hit the same columns.
"""

import math
from typing import Iterable, List, Optional, Sequence, Union

import numpy as np
import shapely
from shapely.geometry import Polygon
from shapely.geometry.base import BaseGeometry

from .dispatch import GridDispatcher, SerialDispatcher
from .geometry import (
    ORIGIN,
    Bounds,
    Line,
    Point,
    line_direction,
    line_length,
    vector_add,
    vector_multiply,
    vector_subtract,
    vector_to,
)
from .utils import get_logger

logger = get_logger("raster")

PolygonLike = Union[BaseGeometry, Sequence[Point], None]

# Relative slack when deciding whether a step still lands on a segment
_SNAP = 1e-9


def line_split(line: Line, gap: float) -> List[Point]:
    """Start point and every further point ``gap`` apart that stays on the segment"""
    start = line[0]
    length = line_length(line)
    if length <= 0.0:
        return [start]
    direction = line_direction(line)
    count = int(math.floor(length / gap + _SNAP))
    return [vector_add(start, vector_multiply(direction, gap * i)) for i in range(count + 1)]


def generate_grid(bounds: Optional[Bounds], pitch: float) -> List[Point]:
    """
    Evenly spaced dots covering *bounds*

    Rows start at the top edge and step down by *pitch*; even rows run left
    to right, odd rows right to left.
    """
    if bounds is None or pitch <= 0:
        return []
    (min_x, min_y), (max_x, max_y) = bounds
    if max_x < min_x or max_y < min_y:
        return []

    rows = int(math.floor((max_y - min_y) / pitch + _SNAP))
    dots: List[Point] = []
    for i in range(rows + 1):
        y = max_y - i * pitch
        start, end = (min_x, y), (max_x, y)
        dots.extend(line_split((start, end) if i % 2 == 0 else (end, start), pitch))
    return dots


def lattice_bounds(
    bounds: Optional[Bounds],
    pitch: float,
    anchor: Point = ORIGIN,
    inward: bool = False,
) -> Optional[Bounds]:
    """
    Snap *bounds* onto the lattice of *anchor* and *pitch*

    Outward snapping covers the region, inward snapping stays inside it.
    Returns None when no lattice point remains.
    """
    if bounds is None:
        return None
    lo = [(bounds[0][k] - anchor[k]) / pitch for k in (0, 1)]
    hi = [(bounds[1][k] - anchor[k]) / pitch for k in (0, 1)]
    if inward:
        lo_i = [math.ceil(v - _SNAP) for v in lo]
        hi_i = [math.floor(v + _SNAP) for v in hi]
    else:
        lo_i = [math.floor(v + _SNAP) for v in lo]
        hi_i = [math.ceil(v - _SNAP) for v in hi]
    if hi_i[0] < lo_i[0] or hi_i[1] < lo_i[1]:
        return None
    return (
        (anchor[0] + lo_i[0] * pitch, anchor[1] + lo_i[1] * pitch),
        (anchor[0] + hi_i[0] * pitch, anchor[1] + hi_i[1] * pitch),
    )


def lattice_indices(dots: Sequence[Point], pitch: float, anchor: Point = ORIGIN) -> np.ndarray:
    """Integer (i, j) lattice coordinates of *dots*, shape (n, 2)"""
    if not dots:
        return np.zeros((0, 2), dtype=np.int64)
    arr = np.asarray(dots, dtype=float)
    return np.rint((arr - np.asarray(anchor, dtype=float)) / pitch).astype(np.int64)


def as_polygon(polygon: PolygonLike) -> Optional[BaseGeometry]:
    if polygon is None:
        return None
    if isinstance(polygon, BaseGeometry):
        return None if polygon.is_empty else polygon
    points = list(polygon)
    if len(points) < 3:
        return None
    shape = Polygon(points)
    return None if shape.is_empty else shape


def polygon_bounds(polygon: PolygonLike) -> Optional[Bounds]:
    shape = as_polygon(polygon)
    if shape is None:
        return None
    minx, miny, maxx, maxy = shape.bounds
    return ((minx, miny), (maxx, maxy))


def sample_polygon(
    polygon: PolygonLike,
    pitch: float,
    anchor: Point = ORIGIN,
    boundary: bool = False,
) -> List[Point]:
    """Lattice dots inside *polygon*; dots on its boundary count only with *boundary*"""
    shape = as_polygon(polygon)
    if shape is None:
        return []
    region = lattice_bounds(polygon_bounds(shape), pitch, anchor)
    dots = generate_grid(region, pitch)
    if not dots:
        return []
    arr = np.asarray(dots, dtype=float)
    shapely.prepare(shape)
    test = shapely.intersects_xy if boundary else shapely.contains_xy
    inside = test(shape, arr[:, 0], arr[:, 1])
    return [dots[i] for i in np.flatnonzero(inside)]


def no_fit_raster(
    stationary: PolygonLike,
    orbiting: PolygonLike,
    pitch: float,
    anchor: Point = ORIGIN,
    dispatcher: Optional[GridDispatcher] = None,
    reference: Optional[Point] = None,
) -> List[Point]:
    """
    Forbidden translations of *orbiting* relative to *stationary*

    The result lists board dots: positions for the orbiting polygon's
    *reference* point (its bounding-box minimum corner by default) at which
    one of its interior dots coincides with a stationary dot (boundary
    included), so polygons that merely touch are not forbidden. Board dots
    lie on the lattice of *anchor* and span every position that brings the
    two bounding boxes into contact; positions that are not returned are
    free of coincidences. Degenerate input yields [].
    """
    stationary_bounds = polygon_bounds(stationary)
    orbiting_bounds = polygon_bounds(orbiting)
    if stationary_bounds is None or orbiting_bounds is None:
        return []
    if reference is None:
        reference = orbiting_bounds[0]

    board_region = lattice_bounds(
        (
            vector_subtract(stationary_bounds[0], vector_to(reference, orbiting_bounds[1])),
            vector_subtract(stationary_bounds[1], vector_to(reference, orbiting_bounds[0])),
        ),
        pitch,
        anchor,
    )
    board_dots = generate_grid(board_region, pitch)
    stationary_dots = sample_polygon(stationary, pitch, anchor, boundary=True)
    orbiting_dots = sample_polygon(orbiting, pitch, reference)
    if not board_dots or not stationary_dots or not orbiting_dots:
        return []

    board = lattice_indices(board_dots, pitch, anchor)
    stationary_idx = lattice_indices(stationary_dots, pitch, anchor)
    orbiting_idx = lattice_indices(orbiting_dots, pitch, reference)

    # Offsets relative to the orbiting dots' own minimum point; the board is
    # shifted by the same amount so results refer to the reference point.
    orbiting_minimum = orbiting_idx.min(axis=0)
    relative = orbiting_idx - orbiting_minimum
    width, height = int(relative[:, 0].max()) + 1, int(relative[:, 1].max()) + 1
    lookup = np.zeros((height, width), dtype=bool)
    lookup[relative[:, 1], relative[:, 0]] = True
    shifted_board = board + orbiting_minimum

    def kernel(start: int, stop: int) -> np.ndarray:
        delta = stationary_idx[None, :, :] - shifted_board[start:stop, None, :]
        dx, dy = delta[..., 0], delta[..., 1]
        inside = (dx >= 0) & (dy >= 0) & (dx < width) & (dy < height)
        hit = np.zeros(dx.shape, dtype=bool)
        hit[inside] = lookup[dy[inside], dx[inside]]
        return hit

    dispatcher = dispatcher or SerialDispatcher()
    matrix = dispatcher.evaluate(len(board_dots), len(stationary_dots), kernel)
    forbidden = matrix.any(axis=1)
    logger.debug(
        f"No-fit raster: {len(board_dots)} board x {len(stationary_dots)} stationary "
        f"x {len(orbiting_dots)} orbiting dots, {int(forbidden.sum())} forbidden"
    )
    return [board_dots[i] for i in np.flatnonzero(forbidden)]


def _dot_key(point: Point):
    return (round(point[0], 9), round(point[1], 9))


def raster_difference(a: Iterable[Point], b: Iterable[Point]) -> List[Point]:
    """Dots of *a* that do not coincide with any dot of *b*, in the order of *a*"""
    excluded = {_dot_key(p) for p in b}
    if not excluded:
        return list(a)
    return [p for p in a if _dot_key(p) not in excluded]
