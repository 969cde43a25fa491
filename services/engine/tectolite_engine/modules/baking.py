from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from ..models import EulerPole, Feature, MotionKeyframe, Polygon, TectonicPlate
from .motion import active_pole, calculate_plate_at_time


@dataclass
class BakedGeometry:
    time: float
    polygons: list[Polygon]
    features: list[Feature]
    center: tuple[float, float]


def bake_plate(plate: TectonicPlate, time: float, plates: Sequence[TectonicPlate]) -> BakedGeometry:
    evaluated = calculate_plate_at_time(plate, time, plates)
    features = [
        feature.model_copy(update={"originalPosition": feature.position, "trail": None})
        for feature in evaluated.features
    ]
    return BakedGeometry(
        time=time,
        polygons=[polygon.model_copy() for polygon in evaluated.polygons],
        features=features,
        center=evaluated.center,
    )


def rebirth_plate(
    plate: TectonicPlate,
    baked: BakedGeometry,
    *,
    plate_id: str,
    name: str,
    pole: EulerPole | None = None,
    parent_ids: list[str] | None = None,
) -> TectonicPlate:
    keyframe = MotionKeyframe(
        time=baked.time,
        eulerPole=pole if pole is not None else active_pole(plate, baked.time),
        snapshotPolygons=baked.polygons,
        snapshotFeatures=baked.features,
    )
    return plate.model_copy(
        update={
            "id": plate_id,
            "name": name,
            "polygons": baked.polygons,
            "features": baked.features,
            "center": baked.center,
            "birthTime": baked.time,
            "deathTime": None,
            "parentPlateIds": parent_ids if parent_ids is not None else [plate.id],
            "initialPolygons": baked.polygons,
            "initialFeatures": baked.features,
            "motionKeyframes": [keyframe],
            "motion": plate.motion.model_copy(update={"eulerPole": keyframe.eulerPole}),
            "events": [],
        }
    )
