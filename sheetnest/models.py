"""
Data models for the nesting engine

Pydantic models for parts, sheets, nesting configuration and results.
They double as the request/response schema of the HTTP API.
"""

import math
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import get_settings
from .geometry import Bounds, Point, bounds_of_points, polygon_area


class RestPoint(BaseModel):
    """Serialized point"""
    x: float
    y: float


def rest_point_to_point(rest_point: RestPoint) -> Point:
    return (rest_point.x, rest_point.y)


def point_to_rest_point(point: Point) -> RestPoint:
    return RestPoint(x=point[0], y=point[1])


class Entity(BaseModel):
    """
    A closed loop of a part

    ``bounds`` is derived: it is recomputed from ``extents_points`` whenever
    an entity is built, so the two can never drift apart. Loops with fewer
    than two points carry no bounds.
    """
    layer: str = "0"
    nesting_id: str = ""
    nesting_key: str = ""
    nesting_rotation_in_degrees: Optional[float] = None
    extents_points: List[RestPoint] = Field(default_factory=list)
    bounds: List[RestPoint] = Field(default_factory=list)
    is_circle: bool = False
    circle_diameter: Optional[float] = Field(None, gt=0)

    @model_validator(mode="after")
    def _derive_bounds(self) -> "Entity":
        box = bounds_of_points(self.points()) if len(self.extents_points) >= 2 else None
        self.bounds = [] if box is None else [point_to_rest_point(box[0]), point_to_rest_point(box[1])]
        return self

    @classmethod
    def from_points(cls, points: List[Point], **kwargs) -> "Entity":
        return cls(extents_points=[point_to_rest_point(p) for p in points], **kwargs)

    def points(self) -> List[Point]:
        return [rest_point_to_point(p) for p in self.extents_points]

    def bounds_tuple(self) -> Optional[Bounds]:
        if len(self.bounds) != 2:
            return None
        return (rest_point_to_point(self.bounds[0]), rest_point_to_point(self.bounds[1]))

    def area(self) -> float:
        return polygon_area(self.points())


class Part(BaseModel):
    """A cut part: outer silhouette plus interior holes"""
    outside_loop: Entity
    inside_loops: List[Entity] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "outside_loop": {
                    "nesting_id": "part-1",
                    "extents_points": [
                        {"x": 0, "y": 0}, {"x": 10, "y": 0}, {"x": 10, "y": 10}, {"x": 0, "y": 10}
                    ],
                },
                "inside_loops": [],
            }
        }

    @property
    def nesting_id(self) -> str:
        return self.outside_loop.nesting_id

    def has_geometry(self) -> bool:
        return self.outside_loop.bounds_tuple() is not None

    def area(self) -> float:
        """Outside-loop area minus the hole areas"""
        return max(0.0, self.outside_loop.area() - sum(loop.area() for loop in self.inside_loops))


class Nesting(BaseModel):
    """A sheet and what already sits on it"""
    id: int
    sheet_width: float = Field(gt=0, description="Sheet width (must be positive)")
    sheet_height: float = Field(gt=0, description="Sheet height (must be positive)")
    already_nested_parts: List[Part] = Field(default_factory=list)
    already_cut_boundary_parts: List[Part] = Field(
        default_factory=list, description="Immovable obstacles carried over from a prior pass"
    )


class DesignDocumentPart(BaseModel):
    """A part that is a candidate for the sheet ``nesting_id``"""
    nesting_id: int
    part: Part


class NestingConfig(BaseModel):
    """Configuration for a nesting pass"""
    part_to_part_gap: float = Field(2.0, ge=0, description="Clearance between parts")
    part_to_sheet_gap: float = Field(2.0, ge=0, description="Clearance to the sheet edge")
    pitch: float = Field(
        default_factory=lambda: get_settings().default_pitch,
        gt=0,
        description="Raster dot spacing",
    )
    rotation_step: float = Field(90.0, gt=0, le=360, description="Degrees between tried rotations")
    rotations: Optional[List[float]] = Field(None, description="Explicit rotations, overrides rotation_step")
    raster: bool = Field(False, description="Use the no-fit raster for free-area candidates")
    allow_embedding: bool = Field(True, description="Allow parts inside holes of nested parts")

    class Config:
        json_schema_extra = {
            "example": {
                "part_to_part_gap": 2.0,
                "part_to_sheet_gap": 2.0,
                "pitch": 1.0,
                "rotation_step": 90.0,
                "rotations": None,
                "raster": False,
                "allow_embedding": True,
            }
        }

    @field_validator("rotations")
    @classmethod
    def _rotations_not_empty(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        if v is not None and not v:
            raise ValueError("rotations must not be empty")
        return v

    def rotation_angles(self) -> List[float]:
        """Rotations to try, in order"""
        if self.rotations is not None:
            return list(self.rotations)
        count = math.ceil(360.0 / self.rotation_step - 1e-9)
        return [self.rotation_step * i for i in range(count)]


class NestingError(Exception):
    """Custom exception for nesting failures"""
    pass


class NestingConsistencyError(NestingError):
    """The placement search contradicted itself; the pass cannot continue"""
    pass


class DuplicateNestingIdError(NestingError):
    """Two parts of one pass share a nesting id, so results could not tell them apart"""
    pass


class Placement(BaseModel):
    """Where a newly nested part went"""
    nesting_id: str
    rotation: float
    location: Tuple[float, float]
    embedding_nesting_id: Optional[str] = None


class NestResult(BaseModel):
    """Outcome of one nesting pass"""
    newly_nested_design_document_parts: List[DesignDocumentPart] = Field(default_factory=list)
    not_nested_design_document_parts: List[DesignDocumentPart] = Field(default_factory=list)
    all_nested_parts: List[Part] = Field(default_factory=list)
    placements: List[Placement] = Field(default_factory=list)
    embedded_parts: Dict[str, List[str]] = Field(default_factory=dict)
    nested_parts_bounds: Optional[Tuple[Tuple[float, float], Tuple[float, float]]] = None
    utilization: float = 0.0


class NestRequest(BaseModel):
    """Request body for a nesting pass"""
    nesting: Nesting
    design_parts: List[DesignDocumentPart]
    config: NestingConfig = Field(default_factory=NestingConfig)


class NestResponse(BaseModel):
    """Response for a nesting pass"""
    success: bool = True
    result: NestResult
    num_nested: int
    num_not_nested: int
    message: Optional[str] = None


class NoFitRequest(BaseModel):
    """Request body for a raw no-fit raster query"""
    stationary: List[Tuple[float, float]]
    orbiting: List[Tuple[float, float]]
    pitch: float = Field(gt=0)


class NoFitResponse(BaseModel):
    """Forbidden positions of the orbiting polygon's minimum corner"""
    success: bool = True
    positions: List[Tuple[float, float]]
    count: int


class ErrorResponse(BaseModel):
    """Error response format"""
    success: bool = False
    error: str
    detail: Optional[str] = None
