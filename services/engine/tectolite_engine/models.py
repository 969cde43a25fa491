from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

Coordinate = tuple[float, float]


class PlateNotFoundError(KeyError):
    def __init__(self, plate_id: str) -> None:
        super().__init__(plate_id)
        self.plate_id = plate_id

    def __str__(self) -> str:
        return f"plate {self.plate_id} not found"


class FeatureType(str, Enum):
    mountain = "mountain"
    volcano = "volcano"
    hotspot = "hotspot"
    rift = "rift"
    trench = "trench"
    island = "island"
    weakness = "weakness"
    flowline = "flowline"
    seafloor = "seafloor"


class PlateType(str, Enum):
    plate = "plate"
    rift = "rift"
    oceanic = "oceanic"


class CrustType(str, Enum):
    continental = "continental"
    oceanic = "oceanic"


class BoundaryType(str, Enum):
    convergent = "convergent"
    divergent = "divergent"
    transform = "transform"


class PlateEventType(str, Enum):
    birth = "birth"
    motion_change = "motion_change"
    split = "split"
    fusion = "fusion"
    link = "link"
    unlink = "unlink"


class EulerPole(BaseModel):
    position: Coordinate = (0.0, 90.0)
    rate: float = 0.0
    visible: bool = False


class Polygon(BaseModel):
    id: str
    points: list[Coordinate] = Field(default_factory=list)
    closed: bool = True
    riftEdgeIndices: list[int] = Field(default_factory=list)


class Feature(BaseModel):
    id: str
    type: FeatureType
    position: Coordinate
    originalPosition: Coordinate | None = None
    generatedAt: float | None = None
    deathTime: float | None = None
    name: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    trail: list[Coordinate] | None = None


class MotionKeyframe(BaseModel):
    time: float
    eulerPole: EulerPole
    snapshotPolygons: list[Polygon] = Field(default_factory=list)
    snapshotFeatures: list[Feature] = Field(default_factory=list)


class PlateMotion(BaseModel):
    eulerPole: EulerPole = Field(default_factory=EulerPole)


class PlateEvent(BaseModel):
    id: str
    time: float
    type: PlateEventType
    description: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class TectonicPlate(BaseModel):
    id: str
    name: str
    color: str = "#8c8c8c"
    type: PlateType = PlateType.plate
    crustType: CrustType = CrustType.continental
    polygons: list[Polygon] = Field(default_factory=list)
    features: list[Feature] = Field(default_factory=list)
    center: Coordinate = (0.0, 0.0)
    birthTime: float = 0.0
    deathTime: float | None = None
    parentPlateIds: list[str] = Field(default_factory=list)
    initialPolygons: list[Polygon] = Field(default_factory=list)
    initialFeatures: list[Feature] = Field(default_factory=list)
    motionKeyframes: list[MotionKeyframe] = Field(default_factory=list)
    motion: PlateMotion = Field(default_factory=PlateMotion)
    events: list[PlateEvent] = Field(default_factory=list)
    linkedToPlateId: str | None = None
    linkTime: float | None = None
    unlinkTime: float | None = None
    connectedRiftIds: list[str] = Field(default_factory=list)
    locked: bool = False
    visible: bool = True

    def is_alive_at(self, time: float) -> bool:
        if time < self.birthTime:
            return False
        return self.deathTime is None or time < self.deathTime


class Boundary(BaseModel):
    id: str
    type: BoundaryType
    plateIds: tuple[str, str]
    points: list[list[Coordinate]] = Field(default_factory=list)
    velocity: float = 0.0


class WorldState(BaseModel):
    plates: list[TectonicPlate] = Field(default_factory=list)
    boundaries: list[Boundary] = Field(default_factory=list)
    currentTime: float = 0.0
    timeScale: float = 1.0
    isPlaying: bool = False


class ValidationIssue(BaseModel):
    code: str
    severity: Literal["error", "warning"]
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class PlateCreateRequest(BaseModel):
    name: str
    points: list[Coordinate]
    color: str = "#8c8c8c"
    type: PlateType = PlateType.plate
    crustType: CrustType = CrustType.continental
    birthTime: float | None = None
    eulerPole: EulerPole = Field(default_factory=EulerPole)
    riftEdgeIndices: list[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_outline(self) -> "PlateCreateRequest":
        minimum = 2 if self.type == PlateType.rift else 3
        if len(self.points) < minimum:
            raise ValueError(f"outline needs at least {minimum} points")
        return self


class TimeRequest(BaseModel):
    timeMa: float


class TickRequest(BaseModel):
    deltaMa: float | None = None


class PlaybackRequest(BaseModel):
    isPlaying: bool | None = None
    timeScale: float | None = None

    @model_validator(mode="after")
    def validate_scale(self) -> "PlaybackRequest":
        if self.timeScale is not None and self.timeScale <= 0:
            raise ValueError("timeScale must be positive")
        return self


class MotionChangeRequest(BaseModel):
    eulerPole: EulerPole
    timeMa: float | None = None


class FeatureCreateRequest(BaseModel):
    type: FeatureType
    position: Coordinate
    name: str | None = None
    timeMa: float | None = None
    properties: dict[str, Any] = Field(default_factory=dict)


class SplitRequest(BaseModel):
    polyline: list[Coordinate]
    timeMa: float | None = None
    inheritMomentum: bool = False

    @model_validator(mode="after")
    def validate_polyline(self) -> "SplitRequest":
        if len(self.polyline) < 2:
            raise ValueError("split polyline needs at least 2 points")
        return self


class LinkRequest(BaseModel):
    parentPlateId: str
    childPlateId: str
    timeMa: float | None = None


class UnlinkRequest(BaseModel):
    timeMa: float | None = None


class FuseRequest(BaseModel):
    plateIds: tuple[str, str]
    timeMa: float | None = None
    addWeaknessFeatures: bool = True
    weaknessIntervalDeg: float = 1.0


class SplitSummary(BaseModel):
    applied: bool
    parentPlateId: str
    leftPlateId: str | None = None
    rightPlateId: str | None = None
    createdPlateIds: list[str] = Field(default_factory=list)


class FuseSummary(BaseModel):
    success: bool
    error: str | None = None
    fusedPlateId: str | None = None


class BoundarySummary(BaseModel):
    timeMa: float
    boundaries: list[Boundary]
    digest: str
