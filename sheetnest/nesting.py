"""
Nesting search

Greedy placement of design parts onto one sheet. For every rotation and
every part that is not nested yet, the search collects candidate locations
on the sheet's raster (and inside the holes of nested parts), removes the
ones that collide with what is already there, and commits the best one.

Candidate order: least occupied-envelope area after placement, then lowest,
then leftmost, then sheet placements before embedded ones.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.affinity import translate
from shapely.geometry.base import BaseGeometry

from .dispatch import GridDispatcher, get_dispatcher
from .embedding import EmbeddedPartsIndex
from .geometry import (
    EPS,
    ORIGIN,
    Bounds,
    Point,
    bounds_offset,
    bounds_overlap,
    bounds_size,
    bounds_union,
)
from .models import (
    DesignDocumentPart,
    Nesting,
    NestingConfig,
    DuplicateNestingIdError,
    NestingConsistencyError,
    NestResult,
    Part,
    Placement,
)
from .parts import part_move_to, part_nesting_bounds, part_nesting_polygon, part_rotate, part_to_polygon
from .raster import generate_grid, lattice_bounds, no_fit_raster, raster_difference
from .utils import get_logger

logger = get_logger("nesting")

# Slack on the exact clearance check for float noise of rotated geometry
_CLEARANCE_TOLERANCE = 1e-7


@dataclass
class SearchResult:
    """Chosen nesting-bounds minimum corner and, for hole placements, the host"""
    location: Point
    embedding_handle: Optional[int] = None


@dataclass
class PartShapes:
    """shapely forms of a nested part: its own outline and its gap-grown footprint"""
    polygon: Optional[BaseGeometry]
    nesting_polygon: Optional[BaseGeometry]


@dataclass
class NestOneResult:
    nested: bool
    nested_part: Optional[Part] = None
    embedding_handle: Optional[int] = None
    rotation: float = 0.0
    location: Optional[Point] = None


def sheet_bounds_for(nesting: Nesting, sheet_gap: float) -> Bounds:
    return ((sheet_gap, sheet_gap), (nesting.sheet_width, nesting.sheet_height))


def sheet_inner_fit_bounds(sheet_bounds: Bounds, part_size: Tuple[float, float], sheet_gap: float) -> Optional[Bounds]:
    """Region for the part's nesting-bounds minimum corner, None if it cannot fit"""
    sheet_w, sheet_h = bounds_size(sheet_bounds)
    w = sheet_w - part_size[0] - sheet_gap
    h = sheet_h - part_size[1] - sheet_gap
    if w < -EPS or h < -EPS:
        return None
    minimum = sheet_bounds[0]
    return (minimum, (minimum[0] + max(0.0, w), minimum[1] + max(0.0, h)))


def _covered_by_boxes(dots: List[Point], size: Tuple[float, float], boxes: Sequence[Bounds]) -> List[Point]:
    """Dots at which a box of *size* would overlap one of *boxes* (touching is fine)"""
    if not dots or not boxes:
        return []
    arr = np.asarray(dots, dtype=float)
    x, y = arr[:, 0], arr[:, 1]
    covered = np.zeros(len(dots), dtype=bool)
    for (min_x, min_y), (max_x, max_y) in boxes:
        covered |= (
            (x < max_x - EPS) & (min_x < x + size[0] - EPS)
            & (y < max_y - EPS) & (min_y < y + size[1] - EPS)
        )
    return [dots[i] for i in np.flatnonzero(covered)]


def _hole_fit_bounds(host: Part, gap: float) -> List[Bounds]:
    """Hole bounds of *host* shrunk by half the gap"""
    result = []
    for loop in host.inside_loops:
        bounds = loop.bounds_tuple()
        if bounds is not None:
            result.append(bounds_offset(bounds, -gap / 2.0))
    return result


def _check_unique_nesting_ids(parts: Sequence[Part]) -> None:
    duplicates = sorted(nesting_id for nesting_id, n in Counter(p.nesting_id for p in parts).items() if n > 1)
    if duplicates:
        raise DuplicateNestingIdError(f"Nesting ids must be unique within a pass, repeated: {duplicates}")


def _tie_break_order(
    candidates: List[Tuple[Point, Optional[int]]],
    size: Tuple[float, float],
    nested_parts_bounds: Optional[Bounds],
) -> np.ndarray:
    """Candidate indices, best first"""
    pts = np.asarray([c[0] for c in candidates], dtype=float)
    hosts = np.asarray([-1 if c[1] is None else c[1] for c in candidates])
    x, y = pts[:, 0], pts[:, 1]
    if nested_parts_bounds is None:
        area = np.full(len(candidates), size[0] * size[1])
    else:
        (env_min_x, env_min_y), (env_max_x, env_max_y) = nested_parts_bounds
        width = np.maximum(env_max_x, x + size[0]) - np.minimum(env_min_x, x)
        height = np.maximum(env_max_y, y + size[1]) - np.minimum(env_min_y, y)
        area = width * height
    # np.lexsort sorts by the last key first
    return np.lexsort((hosts, np.round(x, 9), np.round(y, 9), np.round(area, 9)))


def _clears(placed: BaseGeometry, obstacles: np.ndarray, gap: float) -> bool:
    """
    Exact check of a placed part against the nested parts

    With a gap every obstacle must be at least ``gap`` away; without one
    the interiors must not overlap.
    """
    if len(obstacles) == 0:
        return True
    if gap > 0:
        return bool(np.all(shapely.distance(placed, obstacles) >= gap - _CLEARANCE_TOLERANCE))
    overlapping = shapely.intersects(placed, obstacles) & ~shapely.touches(placed, obstacles)
    return not bool(np.any(overlapping))


def nest_by_bounding_boxes(
    part: Part,
    nested_parts: Sequence[Part],
    nested_parts_bounds: Optional[Bounds],
    sheet_bounds: Bounds,
    embedded_parts: EmbeddedPartsIndex,
    config: NestingConfig,
    dispatcher: Optional[GridDispatcher] = None,
    shapes: Optional[Dict[int, PartShapes]] = None,
) -> Optional[SearchResult]:
    """
    Find where *part* can go on the sheet at its current rotation

    *part* is expected rotated and sitting at the origin. Candidates are the
    raster dots of the sheet's inner-fit region minus the dots covered by
    nested parts, plus (when embedding is allowed) the dots inside the holes
    of nested parts that clear the host and whatever it already embeds.
    The raster can miss overlaps thinner than a pitch, so candidates are
    then checked in tie-break order against the exact outlines; the first
    that keeps the gap wins. Returns None when nothing fits.
    """
    gap = config.part_to_part_gap
    pitch = config.pitch
    anchor = sheet_bounds[0]
    dispatcher = dispatcher or get_dispatcher()
    shapes = shapes if shapes is not None else {}

    part_bounds = part_nesting_bounds(part, gap)
    if part_bounds is None:
        return None
    size = bounds_size(part_bounds)
    reference = part_bounds[0]

    def shapes_of(handle: int) -> PartShapes:
        if handle not in shapes:
            nested = nested_parts[handle]
            shapes[handle] = PartShapes(part_to_polygon(nested), part_nesting_polygon(nested, gap))
        return shapes[handle]

    def nesting_polygon(handle: int) -> Optional[BaseGeometry]:
        return shapes_of(handle).nesting_polygon

    nested_boxes: Dict[int, Bounds] = {}
    for handle, nested in enumerate(nested_parts):
        bounds = part_nesting_bounds(nested, gap)
        if bounds is not None:
            nested_boxes[handle] = bounds

    orbiting = part_nesting_polygon(part, gap) if (config.raster or config.allow_embedding) else None
    candidates: List[Tuple[Point, Optional[int]]] = []

    # Free area of the sheet
    inner_fit = sheet_inner_fit_bounds(sheet_bounds, size, config.part_to_sheet_gap)
    sheet_dots = generate_grid(lattice_bounds(inner_fit, pitch, anchor, inward=True), pitch)
    if sheet_dots and config.raster and orbiting is not None:
        forbidden: List[Point] = []
        for handle in nested_boxes:
            forbidden.extend(no_fit_raster(
                nesting_polygon(handle), orbiting, pitch, anchor, dispatcher, reference=reference
            ))
        holes = {
            handle: _hole_fit_bounds(nested_parts[handle], gap)
            for handle in nested_boxes if nested_parts[handle].inside_loops
        }
        for dot in raster_difference(sheet_dots, forbidden):
            host = _hole_host(dot, size, holes, nested_boxes)
            if host is None or config.allow_embedding:
                candidates.append((dot, host))
    elif sheet_dots:
        covered = _covered_by_boxes(sheet_dots, size, list(nested_boxes.values()))
        candidates.extend((dot, None) for dot in raster_difference(sheet_dots, covered))

    # Holes of nested parts
    if config.allow_embedding and not config.raster and orbiting is not None:
        for handle, host in enumerate(nested_parts):
            if not host.inside_loops or handle not in nested_boxes:
                continue
            embedded = [h for h in embedded_parts.embedded_handles(handle) if h in nested_boxes]
            for hole in _hole_fit_bounds(host, gap):
                region = (hole[0], (hole[1][0] - size[0], hole[1][1] - size[1]))
                if region[1][0] < region[0][0] - EPS or region[1][1] < region[0][1] - EPS:
                    continue
                dots = generate_grid(lattice_bounds(region, pitch, anchor, inward=True), pitch)
                if not dots:
                    continue
                # What the hole already holds, plus anything else reaching into it
                obstacles = [nested_boxes[h] for h in embedded] + [
                    box for h, box in nested_boxes.items()
                    if h != handle and h not in embedded and bounds_overlap(box, hole)
                ]
                dots = raster_difference(dots, _covered_by_boxes(dots, size, obstacles))
                if not dots:
                    continue
                forbidden = no_fit_raster(
                    nesting_polygon(handle), orbiting, pitch, anchor, dispatcher, reference=reference
                )
                candidates.extend((dot, handle) for dot in raster_difference(dots, forbidden))

    if not candidates:
        return None
    outline = part_to_polygon(part)
    obstacles = np.array(
        [s for s in (shapes_of(h).polygon for h in nested_boxes) if s is not None], dtype=object
    )
    for i in _tie_break_order(candidates, size, nested_parts_bounds):
        location, host = candidates[int(i)]
        if outline is None:
            return SearchResult(location=location, embedding_handle=host)
        placed = translate(outline, location[0] - reference[0], location[1] - reference[1])
        if _clears(placed, obstacles, gap):
            return SearchResult(location=location, embedding_handle=host)
    return None


def _hole_host(
    dot: Point,
    size: Tuple[float, float],
    holes: Dict[int, List[Bounds]],
    nested_boxes: Dict[int, Bounds],
) -> Optional[int]:
    """Nested part whose hole holds a box of *size* at *dot*, innermost first"""
    box = (dot, (dot[0] + size[0], dot[1] + size[1]))
    hosts = []
    for handle, fit_bounds in holes.items():
        host_w, host_h = bounds_size(nested_boxes[handle])
        for (min_x, min_y), (max_x, max_y) in fit_bounds:
            if (box[0][0] >= min_x - EPS and box[0][1] >= min_y - EPS
                    and box[1][0] <= max_x + EPS and box[1][1] <= max_y + EPS):
                hosts.append((host_w * host_h, handle))
    return min(hosts)[1] if hosts else None


class NestingPass:
    """
    State of one pass over a sheet

    Owns the part arena (nested parts and boundary obstacles, addressed by
    handle), the occupied envelope and the embedded-parts index, and mutates
    them only in ``commit``.
    """

    def __init__(
        self,
        nesting: Nesting,
        config: Optional[NestingConfig] = None,
        dispatcher: Optional[GridDispatcher] = None,
    ):
        self.nesting = nesting
        self.config = config or NestingConfig()
        self.dispatcher = dispatcher or get_dispatcher()

        gap = self.config.part_to_part_gap
        self.parts: List[Part] = [*nesting.already_nested_parts, *nesting.already_cut_boundary_parts]
        first_boundary = len(nesting.already_nested_parts)
        self.boundary_handles = set(range(first_boundary, len(self.parts)))
        _check_unique_nesting_ids(self.parts)

        self.nested_parts_bounds: Optional[Bounds] = None
        for part in self.parts:
            self.nested_parts_bounds = bounds_union(self.nested_parts_bounds, part_nesting_bounds(part, gap))

        self.embedded_parts = EmbeddedPartsIndex.build(self.parts, gap)
        self.sheet_bounds = sheet_bounds_for(nesting, self.config.part_to_sheet_gap)
        self.newly_nested: List[DesignDocumentPart] = []
        self.placements: List[Placement] = []
        self._shapes: Dict[int, PartShapes] = {}

    def nest_one(self, design_part: DesignDocumentPart, rotation: float) -> NestOneResult:
        """Try to place one design part at *rotation*; nothing is committed"""
        gap = self.config.part_to_part_gap
        part = part_move_to(design_part.part, ORIGIN, gap)
        part = part_move_to(part_rotate(part, rotation), ORIGIN, gap)

        search = nest_by_bounding_boxes(
            part,
            self.parts,
            self.nested_parts_bounds,
            self.sheet_bounds,
            self.embedded_parts,
            self.config,
            self.dispatcher,
            self._shapes,
        )
        if search is None:
            return NestOneResult(nested=False, rotation=rotation)

        return NestOneResult(
            nested=True,
            nested_part=part_move_to(part, search.location, gap),
            embedding_handle=search.embedding_handle,
            rotation=rotation,
            location=search.location,
        )

    def commit(self, design_part: DesignDocumentPart, result: NestOneResult) -> int:
        """Append a successful placement to the pass state and return its handle"""
        if result.nested_part is None or result.location is None:
            raise NestingConsistencyError(
                f"Search reported a placement for '{design_part.part.nesting_id}' without a moved part"
            )

        part = result.nested_part
        handle = len(self.parts)
        self.parts.append(part)
        self.nested_parts_bounds = bounds_union(
            self.nested_parts_bounds, part_nesting_bounds(part, self.config.part_to_part_gap)
        )

        embedding_nesting_id = None
        if result.embedding_handle is not None:
            self.embedded_parts.add(result.embedding_handle, handle)
            embedding_nesting_id = self.parts[result.embedding_handle].nesting_id

        self.newly_nested.append(DesignDocumentPart(nesting_id=design_part.nesting_id, part=part))
        self.placements.append(Placement(
            nesting_id=part.nesting_id,
            rotation=result.rotation,
            location=result.location,
            embedding_nesting_id=embedding_nesting_id,
        ))
        logger.debug(
            f"Nested '{part.nesting_id}' at ({result.location[0]:.3f}, {result.location[1]:.3f}) "
            f"rotated {result.rotation:g}°"
            + (f" inside '{embedding_nesting_id}'" if embedding_nesting_id is not None else "")
        )
        return handle

    def run(self, design_parts: Sequence[DesignDocumentPart]) -> NestResult:
        """Sweep every rotation over every part that is not nested yet"""
        candidates: List[DesignDocumentPart] = []
        pending: List[DesignDocumentPart] = []
        for design_part in design_parts:
            if design_part.nesting_id != self.nesting.id:
                logger.warning(
                    f"Part '{design_part.part.nesting_id}' belongs to sheet {design_part.nesting_id}, "
                    f"not {self.nesting.id}; skipped"
                )
                pending.append(design_part)
            elif not design_part.part.has_geometry():
                logger.warning(f"Part '{design_part.part.nesting_id}' has no geometry; skipped")
                pending.append(design_part)
            else:
                candidates.append(design_part)

        _check_unique_nesting_ids([*self.parts, *(dp.part for dp in candidates)])

        rotations = self.config.rotation_angles()
        logger.info(
            f"Nesting {len(candidates)} parts on sheet {self.nesting.id} "
            f"({self.nesting.sheet_width:g} x {self.nesting.sheet_height:g}), "
            f"{len(self.parts)} already placed, rotations {rotations}"
        )

        nested = [False] * len(candidates)
        for rotation in rotations:
            for i, design_part in enumerate(candidates):
                if nested[i]:
                    continue
                result = self.nest_one(design_part, rotation)
                if result.nested:
                    self.commit(design_part, result)
                    nested[i] = True

        not_nested = [dp for dp, done in zip(candidates, nested) if not done]
        for design_part in not_nested:
            logger.info(f"Part '{design_part.part.nesting_id}' did not fit on sheet {self.nesting.id}")

        return self.result(not_nested + pending)

    def result(self, not_nested: Sequence[DesignDocumentPart] = ()) -> NestResult:
        all_nested = [part for handle, part in enumerate(self.parts) if handle not in self.boundary_handles]
        sheet_area = self.nesting.sheet_width * self.nesting.sheet_height
        return NestResult(
            newly_nested_design_document_parts=list(self.newly_nested),
            not_nested_design_document_parts=list(not_nested),
            all_nested_parts=all_nested,
            placements=list(self.placements),
            embedded_parts=self.embedded_parts.as_nesting_ids(self.parts),
            nested_parts_bounds=self.nested_parts_bounds,
            utilization=sum(part.area() for part in all_nested) / sheet_area,
        )


def nest(
    nesting: Nesting,
    design_parts: Sequence[DesignDocumentPart],
    config: Optional[NestingConfig] = None,
    dispatcher: Optional[GridDispatcher] = None,
) -> NestResult:
    """
    Run one nesting pass

    Returns the newly nested design parts (with their placed geometry), the
    ones that did not fit, and every nested part on the sheet. Boundary
    parts are obstacles only and never appear among the nested parts.
    Nesting ids must be unique across the sheet's parts and the candidates
    (DuplicateNestingIdError otherwise). Raises NestingConsistencyError if
    the search contradicts itself.
    """
    return NestingPass(nesting, config, dispatcher).run(design_parts)
