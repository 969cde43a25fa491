from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence

import structlog
from shapely.errors import GEOSException

from ..models import (
    Coordinate,
    Feature,
    FeatureType,
    MotionKeyframe,
    PlateEvent,
    PlateEventType,
    Polygon,
    TectonicPlate,
)
from ..utils import IdGenerator
from .baking import bake_plate
from .boundaries import PolygonBoolean, ShapelyPolygonBoolean, unwrap_ring
from .motion import active_pole
from .spherical import spherical_centroid, wrap_lon

log = structlog.get_logger()


@dataclass
class FuseResult:
    success: bool
    plates: list[TectonicPlate]
    error: str | None = None
    fused_id: str | None = None
    weakness_ids: list[str] = field(default_factory=list)


def _closed_rings(polygons: Sequence[Polygon]) -> list[list[Coordinate]]:
    return [unwrap_ring(polygon.points) for polygon in polygons if polygon.closed and len(polygon.points) >= 3]


def _shifted_toward(ring: Sequence[Coordinate], anchor: float) -> list[Coordinate]:
    mean = sum(lon for lon, _ in ring) / len(ring)
    offset = min((0.0, 360.0, -360.0), key=lambda shift: abs(mean + shift - anchor))
    return [(lon + offset, lat) for lon, lat in ring]


def aligned_rings(
    polygons_a: Sequence[Polygon],
    polygons_b: Sequence[Polygon],
) -> tuple[list[list[Coordinate]], list[list[Coordinate]]]:
    # Every ring is moved into one continuous longitude window around the first ring of a.
    rings_a = _closed_rings(polygons_a)
    rings_b = _closed_rings(polygons_b)
    if not rings_a:
        return rings_a, rings_b
    anchor = sum(lon for lon, _ in rings_a[0]) / len(rings_a[0])
    return (
        [_shifted_toward(ring, anchor) for ring in rings_a],
        [_shifted_toward(ring, anchor) for ring in rings_b],
    )


def _closest_pair(rings_a: Sequence[Sequence[Coordinate]], rings_b: Sequence[Sequence[Coordinate]]) -> list[Coordinate]:
    best: list[Coordinate] = []
    best_distance = math.inf
    for point_a in (point for ring in rings_a for point in ring):
        for point_b in (point for ring in rings_b for point in ring):
            distance = math.hypot(point_a[0] - point_b[0], point_a[1] - point_b[1])
            if distance < best_distance:
                best_distance = distance
                best = [point_a, point_b]
    return best


def fusion_outline(
    polygons_a: Sequence[Polygon],
    polygons_b: Sequence[Polygon],
    boolean: PolygonBoolean,
) -> list[Coordinate]:
    rings_a, rings_b = aligned_rings(polygons_a, polygons_b)
    try:
        rings = boolean.intersect(rings_a, rings_b)
    except (GEOSException, ValueError) as exc:
        log.warning("fusion_intersection_failed", error=str(exc))
        rings = []
    outline = [point for ring in rings for point in ring]
    if outline:
        return outline
    return _closest_pair(rings_a, rings_b)


def weakness_positions(outline: Sequence[Coordinate], interval: float) -> list[Coordinate]:
    if not outline:
        return []
    positions: list[Coordinate] = [outline[0]]
    if len(outline) == 1 or interval <= 0:
        return positions

    carried = 0.0
    for prev, curr in zip(outline, outline[1:]):
        length = math.hypot(curr[0] - prev[0], curr[1] - prev[1])
        if length == 0:
            continue
        dx = (curr[0] - prev[0]) / length
        dy = (curr[1] - prev[1]) / length
        along = interval - carried
        while along <= length:
            positions.append((prev[0] + dx * along, prev[1] + dy * along))
            along += interval
        carried = length - (along - interval)

    last = outline[-1]
    tail = positions[-1]
    if math.hypot(last[0] - tail[0], last[1] - tail[1]) > interval * 0.3:
        positions.append(last)
    return positions


def merge_polygons(
    polygons_a: Sequence[Polygon],
    polygons_b: Sequence[Polygon],
    boolean: PolygonBoolean,
    ids: IdGenerator,
) -> list[Polygon]:
    try:
        rings = boolean.union(*aligned_rings(polygons_a, polygons_b))
    except (GEOSException, ValueError) as exc:
        log.warning("fusion_union_failed", error=str(exc))
        rings = []

    merged = [
        Polygon(id=ids(), points=[(wrap_lon(lon), lat) for lon, lat in ring[:-1]], closed=True)
        for ring in rings
        if len(ring) - 1 >= 3
    ]
    if merged:
        return merged
    log.info("fusion_union_fallback", polygons=len(polygons_a) + len(polygons_b))
    return [polygon.model_copy(update={"id": ids()}) for polygon in (*polygons_a, *polygons_b)]


def fuse_plates(
    plates: Sequence[TectonicPlate],
    plate_a_id: str,
    plate_b_id: str,
    time: float,
    *,
    ids: IdGenerator,
    boolean: PolygonBoolean | None = None,
    add_weakness_features: bool = True,
    weakness_interval: float = 1.0,
) -> FuseResult:
    boolean = boolean or ShapelyPolygonBoolean()
    by_id = {plate.id: plate for plate in plates}
    plate_a = by_id.get(plate_a_id)
    plate_b = by_id.get(plate_b_id)
    if plate_a is None or plate_b is None:
        return FuseResult(success=False, plates=list(plates), error="One or both plates not found")
    if plate_a.id == plate_b.id:
        return FuseResult(success=False, plates=list(plates), error="Cannot fuse a plate with itself")

    baked_a = bake_plate(plate_a, time, plates)
    baked_b = bake_plate(plate_b, time, plates)
    polygons = merge_polygons(baked_a.polygons, baked_b.polygons, boolean, ids)

    weakness: list[Feature] = []
    if add_weakness_features:
        outline = fusion_outline(baked_a.polygons, baked_b.polygons, boolean)
        weakness = [
            Feature(
                id=ids(),
                type=FeatureType.weakness,
                position=(wrap_lon(lon), lat),
                originalPosition=(wrap_lon(lon), lat),
                generatedAt=time,
                properties={"fusedFrom": [plate_a.name, plate_b.name], "fusedAt": time},
            )
            for lon, lat in weakness_positions(outline, weakness_interval)
        ]

    features = [*baked_a.features, *baked_b.features, *weakness]
    pole = active_pole(plate_a, time).model_copy()
    fused_id = ids()
    fused = TectonicPlate(
        id=fused_id,
        name=f"{plate_a.name}-{plate_b.name} (Fused)",
        color=plate_a.color,
        type=plate_a.type,
        crustType=plate_a.crustType,
        polygons=polygons,
        features=features,
        center=spherical_centroid([point for polygon in polygons for point in polygon.points]),
        birthTime=time,
        parentPlateIds=[plate_a.id, plate_b.id],
        initialPolygons=polygons,
        initialFeatures=features,
        motionKeyframes=[MotionKeyframe(time=time, eulerPole=pole, snapshotPolygons=polygons, snapshotFeatures=features)],
        motion=plate_a.motion.model_copy(update={"eulerPole": pole}),
        events=[
            PlateEvent(
                id=ids(),
                time=time,
                type=PlateEventType.fusion,
                description="Plate formed by fusion",
                details={"parentPlateIds": [plate_a.id, plate_b.id]},
            )
        ],
        connectedRiftIds=sorted(set(plate_a.connectedRiftIds) | set(plate_b.connectedRiftIds)),
    )

    updated: list[TectonicPlate] = []
    for plate in plates:
        if plate.id in (plate_a.id, plate_b.id):
            plate = plate.model_copy(
                update={
                    "deathTime": time,
                    "events": [
                        *plate.events,
                        PlateEvent(
                            id=ids(),
                            time=time,
                            type=PlateEventType.fusion,
                            description="Plate fused",
                            details={"fusedPlateId": fused_id},
                        ),
                    ],
                }
            )
        updated.append(plate)
    updated.append(fused)

    log.info("plates_fused", plate_a=plate_a.id, plate_b=plate_b.id, fused_id=fused_id, weakness=len(weakness))
    return FuseResult(
        success=True,
        plates=updated,
        fused_id=fused_id,
        weakness_ids=[feature.id for feature in weakness],
    )
