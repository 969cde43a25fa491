from __future__ import annotations

import math
from typing import Any, Sequence

import numpy as np
import structlog

from ..models import (
    Coordinate,
    EulerPole,
    Feature,
    FeatureType,
    MotionKeyframe,
    PlateEvent,
    PlateEventType,
    PlateNotFoundError,
    PlateType,
    TectonicPlate,
)
from ..utils import IdGenerator
from .baking import bake_plate
from .motion import angular_velocity
from .spherical import Quaternion, Vector, axis_angle_from_quat, quat_from_axis_angle, quat_multiply, to_coord

log = structlog.get_logger()

KEYFRAME_TIME_EPSILON = 0.001
MIN_DRAG_DURATION = 0.001


def get_plate(plates: Sequence[TectonicPlate], plate_id: str) -> TectonicPlate:
    for plate in plates:
        if plate.id == plate_id:
            return plate
    raise PlateNotFoundError(plate_id)


def replace_plate(plates: Sequence[TectonicPlate], updated: TectonicPlate) -> list[TectonicPlate]:
    return [updated if plate.id == updated.id else plate for plate in plates]


def linked_descendants(plates: Sequence[TectonicPlate], plate_id: str) -> list[str]:
    found: list[str] = []
    visited = {plate_id}
    frontier = [plate_id]
    while frontier:
        current = frontier.pop()
        for plate in plates:
            if plate.linkedToPlateId == current and plate.id not in visited:
                visited.add(plate.id)
                found.append(plate.id)
                frontier.append(plate.id)
    return found


def _with_history_backfill(plate: TectonicPlate, time: float) -> list[MotionKeyframe]:
    keyframes = list(plate.motionKeyframes)
    has_prior = any(keyframe.time < time for keyframe in keyframes)
    if not has_prior and time > plate.birthTime:
        keyframes.append(
            MotionKeyframe(
                time=plate.birthTime,
                eulerPole=plate.motion.eulerPole,
                snapshotPolygons=list(plate.initialPolygons or plate.polygons),
                snapshotFeatures=list(plate.initialFeatures),
            )
        )
    return keyframes


def _place_keyframe(keyframes: Sequence[MotionKeyframe], keyframe: MotionKeyframe) -> list[MotionKeyframe]:
    kept = [existing for existing in keyframes if abs(existing.time - keyframe.time) > KEYFRAME_TIME_EPSILON]
    kept.append(keyframe)
    return sorted(kept, key=lambda item: item.time)


def _baked_keyframe(
    plate: TectonicPlate,
    keyframes: list[MotionKeyframe],
    plates: Sequence[TectonicPlate],
    time: float,
    pole: EulerPole,
) -> MotionKeyframe:
    provisional = plate.model_copy(update={"motionKeyframes": keyframes})
    baked = bake_plate(provisional, time, replace_plate(plates, provisional))
    return MotionKeyframe(time=time, eulerPole=pole, snapshotPolygons=baked.polygons, snapshotFeatures=baked.features)


def add_motion_keyframe(
    plates: Sequence[TectonicPlate],
    plate_id: str,
    pole: EulerPole,
    time: float,
    *,
    ids: IdGenerator,
) -> list[TectonicPlate]:
    plate = get_plate(plates, plate_id)
    affected = {plate_id, *linked_descendants(plates, plate_id)}

    keyframes = _with_history_backfill(plate, time)
    keyframe = _baked_keyframe(plate, keyframes, plates, time, pole)
    keyframes = _place_keyframe(keyframes, keyframe)

    events = list(plate.events)
    existing = next(
        (
            idx
            for idx, event in enumerate(events)
            if event.type == PlateEventType.motion_change and abs(event.time - time) < KEYFRAME_TIME_EPSILON
        ),
        None,
    )
    details = {"pole": list(pole.position), "rate": pole.rate}
    if existing is None:
        events.append(
            PlateEvent(id=ids(), time=time, type=PlateEventType.motion_change, description="Motion Change", details=details)
        )
    else:
        events[existing] = events[existing].model_copy(update={"details": details})

    updated = plate.model_copy(
        update={
            "motionKeyframes": keyframes,
            "motion": plate.motion.model_copy(update={"eulerPole": pole}),
            "events": events,
        }
    )

    result: list[TectonicPlate] = []
    pruned: list[str] = []
    for candidate in replace_plate(plates, updated):
        if (
            candidate.type == PlateType.oceanic
            and candidate.birthTime >= time
            and candidate.linkedToPlateId in affected
        ):
            pruned.append(candidate.id)
            continue
        result.append(candidate)

    log.info("motion_keyframe_added", plate_id=plate_id, time=time, rate=pole.rate, pruned=pruned)
    return result


def _would_cycle(plates: Sequence[TectonicPlate], parent_id: str, child_id: str) -> bool:
    by_id = {plate.id: plate for plate in plates}
    visited: set[str] = set()
    current: str | None = parent_id
    while current is not None and current not in visited:
        if current == child_id:
            return True
        visited.add(current)
        plate = by_id.get(current)
        current = plate.linkedToPlateId if plate is not None else None
    return False


def toggle_rift_connection(
    plates: Sequence[TectonicPlate],
    rift_id: str,
    plate_id: str,
) -> tuple[list[TectonicPlate], bool]:
    plate = get_plate(plates, plate_id)
    get_plate(plates, rift_id)
    if rift_id in plate.connectedRiftIds:
        connections = [existing for existing in plate.connectedRiftIds if existing != rift_id]
        connected = False
    else:
        connections = [*plate.connectedRiftIds, rift_id]
        connected = True
    log.info("rift_connection_toggled", plate_id=plate_id, rift_id=rift_id, connected=connected)
    return replace_plate(plates, plate.model_copy(update={"connectedRiftIds": connections})), connected


def link_plates(
    plates: Sequence[TectonicPlate],
    parent_id: str,
    child_id: str,
    time: float,
    *,
    ids: IdGenerator,
) -> list[TectonicPlate]:
    parent = get_plate(plates, parent_id)
    child = get_plate(plates, child_id)
    if parent_id == child_id:
        raise ValueError("cannot link a plate to itself")

    if parent.type == PlateType.rift or child.type == PlateType.rift:
        if parent.type == child.type:
            raise ValueError("cannot link two rifts")
        rift, plate = (parent, child) if parent.type == PlateType.rift else (child, parent)
        toggled, _ = toggle_rift_connection(plates, rift.id, plate.id)
        return toggled

    if _would_cycle(plates, parent_id, child_id):
        raise ValueError(f"linking {child_id} to {parent_id} would create a cycle")

    keyframes = _with_history_backfill(child, time)
    if not any(abs(keyframe.time - time) <= KEYFRAME_TIME_EPSILON for keyframe in keyframes):
        keyframe = _baked_keyframe(child, keyframes, plates, time, EulerPole())
        keyframes = _place_keyframe(keyframes, keyframe)

    updated = child.model_copy(
        update={
            "motionKeyframes": keyframes,
            "linkedToPlateId": parent_id,
            "linkTime": time,
            "unlinkTime": None,
            "events": [
                *child.events,
                PlateEvent(
                    id=ids(),
                    time=time,
                    type=PlateEventType.link,
                    description=f"Linked to {parent.name}",
                    details={"parentPlateId": parent_id},
                ),
            ],
        }
    )
    log.info("plates_linked", parent_id=parent_id, child_id=child_id, time=time)
    return replace_plate(plates, updated)


def combined_pole(plate: TectonicPlate, time: float, plates: Sequence[TectonicPlate]) -> EulerPole:
    omega = angular_velocity(plate, time, {candidate.id: candidate for candidate in plates})
    magnitude = float(np.linalg.norm(omega))
    if magnitude < 1e-12:
        return EulerPole()
    return EulerPole(position=to_coord(omega / magnitude), rate=math.degrees(magnitude))


def unlink_plates(
    plates: Sequence[TectonicPlate],
    child_id: str,
    time: float,
    *,
    ids: IdGenerator,
) -> list[TectonicPlate]:
    child = get_plate(plates, child_id)
    if child.linkedToPlateId is None:
        raise ValueError(f"plate {child_id} is not linked")

    pole = combined_pole(child, time, plates)
    keyframes = _with_history_backfill(child, time)
    keyframe = _baked_keyframe(child, keyframes, plates, time, pole)
    updated = child.model_copy(
        update={
            "motionKeyframes": _place_keyframe(keyframes, keyframe),
            "motion": child.motion.model_copy(update={"eulerPole": pole}),
            "unlinkTime": time,
            "events": [
                *child.events,
                PlateEvent(
                    id=ids(),
                    time=time,
                    type=PlateEventType.unlink,
                    description="Unlinked from parent, motion baked in",
                    details={"parentPlateId": child.linkedToPlateId},
                ),
            ],
        }
    )
    log.info("plates_unlinked", child_id=child_id, parent_id=child.linkedToPlateId, time=time)
    return replace_plate(plates, updated)


def add_feature(
    plates: Sequence[TectonicPlate],
    plate_id: str,
    feature_type: FeatureType,
    position: Coordinate,
    time: float,
    *,
    ids: IdGenerator,
    name: str | None = None,
    properties: dict[str, Any] | None = None,
) -> tuple[list[TectonicPlate], Feature]:
    plate = get_plate(plates, plate_id)
    feature = Feature(
        id=ids(),
        type=feature_type,
        position=position,
        originalPosition=position,
        generatedAt=time,
        name=name,
        properties=properties or {},
        trail=[position] if feature_type == FeatureType.flowline else None,
    )
    updated = plate.model_copy(update={"features": [*plate.features, feature]})
    return replace_plate(plates, updated), feature


def pole_from_drag(
    rotations: Sequence[tuple[Vector, float]],
    current_time: float,
    target_time: float,
) -> EulerPole:
    duration = target_time - current_time
    if abs(duration) < MIN_DRAG_DURATION:
        raise ValueError("target time must differ from the current time")

    composed = Quaternion.identity()
    for axis, angle in rotations:
        composed = quat_multiply(quat_from_axis_angle(axis, angle), composed)
    axis, angle = axis_angle_from_quat(composed)
    return EulerPole(position=to_coord(axis), rate=math.degrees(angle) / duration)
