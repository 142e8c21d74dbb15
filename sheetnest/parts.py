"""
Rigid-body transforms of entities and parts

Every transform returns a new value and rebuilds the entity from its moved
points, so the cached bounds always match the loop.
"""

from typing import List, Optional, Sequence

from shapely.geometry import Polygon

from .geometry import (
    ORIGIN,
    Bounds,
    Point,
    Vector,
    angle_normalize,
    bounds_offset,
    point_rotate,
    polygon_translate_by_vector,
)
from .models import Entity, Part


def _rebuild(entity: Entity, points: List[Point], **changes) -> Entity:
    fields = entity.model_dump(exclude={"extents_points", "bounds"})
    fields.update(changes)
    return Entity.from_points(points, **fields)


def entity_with_layer(entity: Entity, layer: str) -> Entity:
    return entity.model_copy(update={"layer": layer})


def entity_with_nesting_metadata(
    entity: Entity,
    nesting_id: str,
    nesting_key: str,
    nesting_rotation_in_degrees: Optional[float],
) -> Entity:
    return entity.model_copy(update={
        "nesting_id": nesting_id,
        "nesting_key": nesting_key,
        "nesting_rotation_in_degrees": nesting_rotation_in_degrees,
    })


def entity_translate(entity: Entity, vector: Vector) -> Entity:
    return _rebuild(entity, polygon_translate_by_vector(entity.points(), vector))


def entity_rotate(entity: Entity, angle: float) -> Entity:
    """Rotate about the coordinate origin; the rotation annotation accumulates if present"""
    rotation = entity.nesting_rotation_in_degrees
    if rotation is not None:
        rotation = angle_normalize(rotation + angle)
    return _rebuild(
        entity,
        [point_rotate(p, angle) for p in entity.points()],
        nesting_rotation_in_degrees=rotation,
    )


def part_translate(part: Part, vector: Vector) -> Part:
    return Part(
        outside_loop=entity_translate(part.outside_loop, vector),
        inside_loops=[entity_translate(loop, vector) for loop in part.inside_loops],
    )


def part_rotate(part: Part, angle: float) -> Part:
    """
    Rotate every loop about the coordinate origin

    Move the part to the origin first to rotate it in place.
    """
    return Part(
        outside_loop=entity_rotate(part.outside_loop, angle),
        inside_loops=[entity_rotate(loop, angle) for loop in part.inside_loops],
    )


def part_nesting_bounds(part: Part, gap: float) -> Optional[Bounds]:
    """Outside-loop bounds grown by half the part-to-part gap on every side"""
    bounds = part.outside_loop.bounds_tuple()
    if bounds is None:
        return None
    return bounds_offset(bounds, gap / 2.0)


def part_move_to(part: Part, point: Point, gap: float) -> Part:
    """Translate so the nesting-bounds minimum corner lands on *point*"""
    bounds = part_nesting_bounds(part, gap)
    if bounds is None:
        return part
    minimum = bounds[0]
    return part_translate(part, (point[0] - minimum[0], point[1] - minimum[1]))


def part_with_nesting_metadata(
    part: Part,
    nesting_id: str,
    nesting_key: str,
    nesting_rotation_in_degrees: Optional[float],
) -> Part:
    return Part(
        outside_loop=entity_with_nesting_metadata(
            part.outside_loop, nesting_id, nesting_key, nesting_rotation_in_degrees
        ),
        inside_loops=list(part.inside_loops),
    )


# ============================================================================
# SHAPELY CONVERSIONS
# ============================================================================

def part_from_points(
    outside: Sequence[Point],
    holes: Sequence[Sequence[Point]] = (),
    nesting_id: str = "",
    nesting_key: str = "",
    layer: str = "0",
) -> Part:
    """Build a part from an outer ring and hole rings"""
    return Part(
        outside_loop=Entity.from_points(
            list(outside),
            layer=layer,
            nesting_id=nesting_id,
            nesting_key=nesting_key,
            nesting_rotation_in_degrees=0.0,
        ),
        inside_loops=[
            Entity.from_points(list(hole), layer=layer, nesting_key=nesting_key)
            for hole in holes
        ],
    )


def part_from_polygon(polygon: Polygon, nesting_id: str = "", nesting_key: str = "", layer: str = "0") -> Part:
    return part_from_points(
        list(polygon.exterior.coords)[:-1],
        [list(interior.coords)[:-1] for interior in polygon.interiors],
        nesting_id=nesting_id,
        nesting_key=nesting_key,
        layer=layer,
    )


def rectangle_part(width: float, height: float, nesting_id: str = "", origin: Point = ORIGIN) -> Part:
    x, y = origin
    return part_from_points(
        [(x, y), (x + width, y), (x + width, y + height), (x, y + height)],
        nesting_id=nesting_id,
    )


def part_to_polygon(part: Part) -> Optional[Polygon]:
    """Outside loop with the inside loops as holes, or None without geometry"""
    outside = part.outside_loop.points()
    if len(outside) < 3:
        return None
    holes = [loop.points() for loop in part.inside_loops if len(loop.extents_points) >= 3]
    polygon = Polygon(outside, holes)
    return polygon if not polygon.is_empty else None


def part_nesting_polygon(part: Part, gap: float) -> Optional[Polygon]:
    """The part grown by half the gap; holes shrink by the same amount"""
    polygon = part_to_polygon(part)
    if polygon is None:
        return None
    grown = polygon.buffer(gap / 2.0, quad_segs=8, join_style="round", mitre_limit=2.0)
    if grown.is_empty:
        return None
    if grown.geom_type == "MultiPolygon":
        grown = max(grown.geoms, key=lambda g: g.area)
    return grown
