from __future__ import annotations

from typing import Protocol, Sequence

import numpy as np
import structlog
from shapely.errors import GEOSException
from shapely.geometry import MultiPolygon
from shapely.geometry import Polygon as ShapelyPolygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from ..models import Boundary, BoundaryType, Coordinate, TectonicPlate
from .motion import angular_velocity
from .spherical import Vector, normalize, to_vector

log = structlog.get_logger()

Ring = list[Coordinate]


class PolygonBoolean(Protocol):
    def intersect(self, rings_a: Sequence[Ring], rings_b: Sequence[Ring]) -> list[Ring]: ...

    def union(self, rings_a: Sequence[Ring], rings_b: Sequence[Ring]) -> list[Ring]: ...

    def difference(self, rings_a: Sequence[Ring], rings_b: Sequence[Ring]) -> list[Ring]: ...


class ShapelyPolygonBoolean:
    def _geometry(self, rings: Sequence[Ring]) -> BaseGeometry:
        shapes = []
        for ring in rings:
            if len(ring) < 3:
                continue
            shape = ShapelyPolygon(ring)
            if not shape.is_valid:
                shape = shape.buffer(0)
            if not shape.is_empty:
                shapes.append(shape)
        return unary_union(shapes)

    def _rings(self, geometry: BaseGeometry) -> list[Ring]:
        if geometry.is_empty:
            return []
        if isinstance(geometry, ShapelyPolygon):
            polygons = [geometry]
        elif isinstance(geometry, MultiPolygon):
            polygons = list(geometry.geoms)
        else:
            polygons = [part for part in getattr(geometry, "geoms", []) if isinstance(part, ShapelyPolygon)]
        return [[(float(x), float(y)) for x, y in polygon.exterior.coords] for polygon in polygons]

    def intersect(self, rings_a: Sequence[Ring], rings_b: Sequence[Ring]) -> list[Ring]:
        return self._rings(self._geometry(rings_a).intersection(self._geometry(rings_b)))

    def union(self, rings_a: Sequence[Ring], rings_b: Sequence[Ring]) -> list[Ring]:
        return self._rings(self._geometry(rings_a).union(self._geometry(rings_b)))

    def difference(self, rings_a: Sequence[Ring], rings_b: Sequence[Ring]) -> list[Ring]:
        return self._rings(self._geometry(rings_a).difference(self._geometry(rings_b)))


def unwrap_ring(points: Sequence[Coordinate]) -> Ring:
    if not points:
        return []
    result: Ring = [(round(points[0][0], 4), round(points[0][1], 4))]
    previous = points[0][0]
    for lon, lat in points[1:]:
        diff = lon - previous
        if diff > 180.0:
            lon -= 360.0
        elif diff < -180.0:
            lon += 360.0
        previous = lon
        result.append((round(lon, 4), round(lat, 4)))
    return result


def _normalize_lon(lon: float) -> float:
    while lon > 180.0:
        lon -= 360.0
    while lon < -180.0:
        lon += 360.0
    return lon


def ring_area_deg2(ring: Sequence[Coordinate]) -> float:
    total = 0.0
    for idx in range(len(ring) - 1):
        x1, y1 = ring[idx]
        x2, y2 = ring[idx + 1]
        total += x1 * y2 - x2 * y1
    return abs(total) * 0.5


def _plate_rings(plate: TectonicPlate) -> list[Ring]:
    return [unwrap_ring(polygon.points) for polygon in plate.polygons if polygon.closed and len(polygon.points) >= 3]


def overlap_rings(
    plate_a: TectonicPlate,
    plate_b: TectonicPlate,
    boolean: PolygonBoolean,
    *,
    min_area_deg2: float = 0.2,
    max_rings: int = 5,
) -> list[Ring]:
    rings_a = _plate_rings(plate_a)
    rings_b = _plate_rings(plate_b)
    if not rings_a or not rings_b:
        return []

    intersection: list[Ring] = []
    for offset in (0.0, 360.0, -360.0):
        shifted = [[(lon + offset, lat) for lon, lat in ring] for ring in rings_b]
        try:
            intersection = boolean.intersect(rings_a, shifted)
        except (GEOSException, ValueError) as exc:
            log.warning("boundary_clip_failed", plate_a=plate_a.id, plate_b=plate_b.id, offset=offset, error=str(exc))
            intersection = []
        if intersection:
            break

    rings: list[Ring] = []
    for ring in intersection:
        if len(ring) < 4 or ring_area_deg2(ring) < min_area_deg2:
            continue
        rings.append([(_normalize_lon(lon), lat) for lon, lat in ring])
    if len(rings) > max_rings:
        rings = sorted(rings, key=len, reverse=True)[:max_rings]
    return rings


def velocity_at(omega: Vector, point: Coordinate) -> Vector:
    return np.cross(omega, to_vector(point))


def classify_closing_speed(closing_speed: float, relative_speed: float, threshold: float = 0.05) -> tuple[BoundaryType, float]:
    if closing_speed > threshold:
        return BoundaryType.convergent, abs(closing_speed)
    if closing_speed < -threshold:
        return BoundaryType.divergent, abs(closing_speed)
    return BoundaryType.transform, relative_speed


def classify_boundary(
    velocity_a: Vector,
    velocity_b: Vector,
    center_a: Coordinate,
    center_b: Coordinate,
    *,
    threshold: float = 0.05,
) -> tuple[BoundaryType, float]:
    relative = velocity_a - velocity_b
    direction = normalize(to_vector(center_b) - to_vector(center_a))
    closing_speed = float(np.dot(relative, direction))
    return classify_closing_speed(closing_speed, float(np.linalg.norm(relative)), threshold)


def detect_boundaries(
    plates: Sequence[TectonicPlate],
    time: float,
    *,
    boolean: PolygonBoolean | None = None,
    threshold: float = 0.05,
    min_area_deg2: float = 0.2,
    max_rings: int = 5,
) -> list[Boundary]:
    boolean = boolean or ShapelyPolygonBoolean()
    plates_by_id = {plate.id: plate for plate in plates}
    active = [plate for plate in plates if plate.is_alive_at(time)]
    boundaries: list[Boundary] = []

    for i, plate_a in enumerate(active):
        for plate_b in active[i + 1 :]:
            rings = overlap_rings(plate_a, plate_b, boolean, min_area_deg2=min_area_deg2, max_rings=max_rings)
            if not rings or not rings[0]:
                continue
            point = rings[0][len(rings[0]) // 2]
            boundary_type, speed = classify_boundary(
                velocity_at(angular_velocity(plate_a, time, plates_by_id), point),
                velocity_at(angular_velocity(plate_b, time, plates_by_id), point),
                plate_a.center,
                plate_b.center,
                threshold=threshold,
            )
            boundaries.append(
                Boundary(
                    id=f"{plate_a.id}-{plate_b.id}-col",
                    type=boundary_type,
                    plateIds=(plate_a.id, plate_b.id),
                    points=rings,
                    velocity=speed,
                )
            )
    return boundaries
