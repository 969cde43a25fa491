from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Mapping, NamedTuple, Sequence

import numpy as np
import structlog

from ..models import (
    Coordinate,
    EulerPole,
    Feature,
    MotionKeyframe,
    Polygon,
    TectonicPlate,
    ValidationIssue,
)
from .spherical import Vector, rotate, spherical_centroid, to_coord, to_vector, wrap_lon

log = structlog.get_logger()


class RotationSegment(NamedTuple):
    axis: Vector
    angle: float


def pole_segment(pole: EulerPole, duration: float) -> RotationSegment | None:
    if pole.rate == 0 or duration == 0:
        return None
    return RotationSegment(axis=to_vector(pole.position), angle=math.radians(pole.rate * duration))


def apply_segments(vector: Vector, segments: Iterable[RotationSegment]) -> Vector:
    result = vector
    for segment in segments:
        if segment.angle != 0:
            result = rotate(result, segment.axis, segment.angle)
    return result


def lock_segment(segment: RotationSegment, frame: Sequence[RotationSegment]) -> RotationSegment:
    return RotationSegment(axis=apply_segments(segment.axis, frame), angle=segment.angle)


def sorted_keyframes(plate: TectonicPlate) -> list[MotionKeyframe]:
    return sorted(plate.motionKeyframes, key=lambda kf: kf.time)


def active_keyframe(plate: TectonicPlate, time: float) -> MotionKeyframe | None:
    active: MotionKeyframe | None = None
    for keyframe in plate.motionKeyframes:
        if keyframe.time <= time and (active is None or keyframe.time >= active.time):
            active = keyframe
    return active


def active_pole(plate: TectonicPlate, time: float) -> EulerPole:
    keyframe = active_keyframe(plate, time)
    if keyframe is not None:
        return keyframe.eulerPole
    if plate.motionKeyframes:
        return EulerPole(position=plate.motion.eulerPole.position, rate=0.0)
    return plate.motion.eulerPole


def link_active(plate: TectonicPlate, time: float) -> bool:
    if plate.linkedToPlateId is None:
        return False
    if plate.linkTime is not None and time < plate.linkTime:
        return False
    if plate.unlinkTime is not None and time >= plate.unlinkTime:
        return False
    return True


def angular_velocity(
    plate: TectonicPlate,
    time: float,
    plates_by_id: Mapping[str, TectonicPlate],
) -> Vector:
    omega = np.zeros(3)
    visited: set[str] = set()
    current: TectonicPlate | None = plate
    while current is not None and current.id not in visited:
        visited.add(current.id)
        pole = active_pole(current, time)
        omega = omega + to_vector(pole.position) * math.radians(pole.rate)
        if not link_active(current, time):
            break
        current = plates_by_id.get(current.linkedToPlateId or "")
    return omega


def keyframe_segments(plate: TectonicPlate, start: float, end: float) -> list[RotationSegment]:
    if end <= start:
        return []
    keyframes = sorted_keyframes(plate)
    if not keyframes:
        begin = max(start, plate.birthTime)
        segment = pole_segment(plate.motion.eulerPole, end - begin) if end > begin else None
        return [segment] if segment is not None else []

    segments: list[RotationSegment] = []
    for idx, keyframe in enumerate(keyframes):
        next_time = keyframes[idx + 1].time if idx + 1 < len(keyframes) else end
        seg_start = max(start, keyframe.time)
        seg_end = min(end, next_time)
        if seg_end <= seg_start:
            continue
        segment = pole_segment(keyframe.eulerPole, seg_end - seg_start)
        if segment is not None:
            segments.append(segment)
    return segments


def parent_segments(
    plate: TectonicPlate,
    time: float,
    plates_by_id: Mapping[str, TectonicPlate],
    *,
    start: float,
    visited: frozenset[str] = frozenset(),
) -> list[RotationSegment]:
    """Rotation segments inherited through the link chain over ``[start, time]``.

    Ancestor contributions come first; each level's own segments have their
    axes expressed in the frame already drifted by the levels above it.
    """
    if plate.linkedToPlateId is None:
        return []
    visited = visited | {plate.id}
    if plate.linkedToPlateId in visited:
        log.warning("link_cycle_detected", plate_id=plate.id, parent_id=plate.linkedToPlateId)
        return []
    parent = plates_by_id.get(plate.linkedToPlateId)
    if parent is None or not link_active(plate, time):
        return []

    window_start = start if plate.linkTime is None else max(start, plate.linkTime)
    if time <= window_start:
        return []

    inherited = parent_segments(parent, time, plates_by_id, start=window_start, visited=visited)
    own = [lock_segment(segment, inherited) for segment in keyframe_segments(parent, window_start, time)]
    return inherited + own


@dataclass
class PlateTransform:
    parent: list[RotationSegment] = field(default_factory=list)
    own: RotationSegment | None = None

    @property
    def is_identity(self) -> bool:
        return all(segment.angle == 0 for segment in self.parent) and (self.own is None or self.own.angle == 0)

    def apply_vector(self, vector: Vector) -> Vector:
        result = apply_segments(vector, self.parent)
        if self.own is not None and self.own.angle != 0:
            result = rotate(result, self.own.axis, self.own.angle)
        return result

    def apply(self, coord: Coordinate) -> Coordinate:
        if self.is_identity:
            return coord
        return to_coord(self.apply_vector(to_vector(coord)))


class _Evaluator:
    def __init__(
        self,
        plate: TectonicPlate,
        time: float,
        plates_by_id: Mapping[str, TectonicPlate],
        pole: EulerPole | None,
        frame_start: float,
    ) -> None:
        self.plate = plate
        self.time = time
        self.plates_by_id = plates_by_id
        self.pole = pole
        self.frame_start = frame_start
        self._parent_cache: dict[float, list[RotationSegment]] = {}
        self.frame = self.parents_from(frame_start)

    def parents_from(self, start: float) -> list[RotationSegment]:
        if start not in self._parent_cache:
            self._parent_cache[start] = parent_segments(self.plate, self.time, self.plates_by_id, start=start)
        return self._parent_cache[start]

    def transform_from(self, start: float) -> PlateTransform:
        parent = self.parents_from(max(start, self.frame_start))
        own = None
        if self.pole is not None:
            elapsed = max(0.0, self.time - start)
            segment = pole_segment(self.pole, elapsed)
            if segment is not None:
                own = lock_segment(segment, self.frame)
        return PlateTransform(parent=parent, own=own)

    def polygons(self, polygons: Sequence[Polygon]) -> list[Polygon]:
        transform = self.transform_from(self.frame_start)
        if transform.is_identity:
            return list(polygons)
        return [
            polygon.model_copy(update={"points": [transform.apply(point) for point in polygon.points]})
            for polygon in polygons
        ]

    def feature(self, feature: Feature, start: float, *, use_original: bool) -> Feature:
        source = feature.originalPosition if use_original and feature.originalPosition is not None else feature.position
        position = self.transform_from(start).apply(source)
        update: dict[str, object] = {"position": position}
        if use_original and feature.originalPosition is None:
            update["originalPosition"] = source
        return feature.model_copy(update=update)


def _winding_number(p_lon: float, p_lat: float, ring: Sequence[Coordinate]) -> int:
    winding = 0
    prev = ring[-1]
    for curr in ring:
        lon1, lat1 = prev
        lon2, lat2 = curr
        if (lat1 <= p_lat < lat2) or (lat2 <= p_lat < lat1):
            t = (p_lat - lat1) / (lat2 - lat1)
            if p_lon < lon1 + t * (lon2 - lon1):
                winding += 1 if lat2 > lat1 else -1
        prev = curr
    return winding


def point_in_polygon(point: Coordinate, ring: Sequence[Coordinate]) -> bool:
    if len(ring) < 3:
        return False
    # Consecutive vertices never jump more than 180 degrees, so a ring crossing the antimeridian stays contiguous.
    local: list[Coordinate] = []
    for lon, lat in ring:
        if local:
            lon = local[-1][0] + wrap_lon(lon - local[-1][0])
        local.append((lon, lat))
    p_lon, p_lat = point
    return any(_winding_number(lon, p_lat, local) != 0 for lon in (p_lon, p_lon + 360.0, p_lon - 360.0))


def inherited_features(
    plate: TectonicPlate,
    plates_by_id: Mapping[str, TectonicPlate],
    exclude_ids: set[str],
) -> list[Feature]:
    inherited: list[Feature] = []
    seen = set(exclude_ids)
    for parent_id in plate.parentPlateIds:
        parent = plates_by_id.get(parent_id)
        if parent is None:
            continue
        for feature in parent.features:
            if feature.id in seen or feature.generatedAt is None:
                continue
            if not (parent.birthTime <= feature.generatedAt <= plate.birthTime):
                continue
            if any(point_in_polygon(feature.position, polygon.points) for polygon in plate.initialPolygons):
                inherited.append(feature)
                seen.add(feature.id)
    return inherited


def _center_of(polygons: Sequence[Polygon], fallback: Coordinate) -> Coordinate:
    points = [point for polygon in polygons for point in polygon.points]
    if not points:
        return fallback
    return spherical_centroid(points)


def calculate_plate_at_time(
    plate: TectonicPlate,
    time: float,
    plates: Sequence[TectonicPlate],
) -> TectonicPlate:
    plates_by_id = {candidate.id: candidate for candidate in plates}
    keyframe = active_keyframe(plate, time)

    base_ids = {feature.id for feature in plate.initialFeatures}
    if keyframe is not None:
        base_ids |= {feature.id for feature in keyframe.snapshotFeatures}
    inherited = inherited_features(plate, plates_by_id, base_ids)
    inherited_ids = {feature.id for feature in inherited}

    if not plate.motionKeyframes:
        return calculate_with_legacy_motion(plate, time, plates_by_id, inherited)

    if keyframe is None:
        evaluator = _Evaluator(plate, time, plates_by_id, pole=None, frame_start=plate.birthTime)
        polygons = evaluator.polygons(plate.initialPolygons)
        features = [evaluator.feature(feature, plate.birthTime, use_original=False) for feature in plate.initialFeatures]
        dynamic = [
            feature
            for feature in plate.features
            if feature.id not in base_ids and feature.id not in inherited_ids and feature.generatedAt is not None
        ]
    else:
        evaluator = _Evaluator(plate, time, plates_by_id, pole=keyframe.eulerPole, frame_start=keyframe.time)
        polygons = evaluator.polygons(keyframe.snapshotPolygons)
        features = [evaluator.feature(feature, keyframe.time, use_original=False) for feature in keyframe.snapshotFeatures]
        dynamic = [
            feature
            for feature in plate.features
            if feature.id not in base_ids
            and feature.id not in inherited_ids
            and feature.generatedAt is not None
            and feature.generatedAt >= keyframe.time
        ]

    features.extend(evaluator.feature(feature, feature.generatedAt, use_original=True) for feature in dynamic)  # type: ignore[arg-type]
    features.extend(evaluator.feature(feature, plate.birthTime, use_original=False) for feature in inherited)

    return plate.model_copy(
        update={
            "polygons": polygons,
            "features": features,
            "center": _center_of(polygons, plate.center),
        }
    )


def calculate_with_legacy_motion(
    plate: TectonicPlate,
    time: float,
    plates_by_id: Mapping[str, TectonicPlate],
    inherited: Sequence[Feature] = (),
) -> TectonicPlate:
    source_polygons = plate.initialPolygons or plate.polygons
    evaluator = _Evaluator(plate, time, plates_by_id, pole=plate.motion.eulerPole, frame_start=plate.birthTime)
    polygons = evaluator.polygons(source_polygons)

    initial_ids = {feature.id for feature in plate.initialFeatures}
    inherited_ids = {feature.id for feature in inherited}
    features = [evaluator.feature(feature, plate.birthTime, use_original=False) for feature in plate.initialFeatures]
    for feature in plate.features:
        if feature.id in initial_ids or feature.id in inherited_ids:
            continue
        start = feature.generatedAt if feature.generatedAt is not None else plate.birthTime
        features.append(evaluator.feature(feature, start, use_original=True))
    features.extend(evaluator.feature(feature, plate.birthTime, use_original=False) for feature in inherited)

    return plate.model_copy(
        update={
            "polygons": polygons,
            "features": features,
            "center": _center_of(polygons, plate.center),
        }
    )


def _rotate_polygons(polygons: Sequence[Polygon], segment: RotationSegment | None) -> list[Polygon]:
    if segment is None:
        return list(polygons)
    return [
        polygon.model_copy(
            update={"points": [to_coord(rotate(to_vector(point), segment.axis, segment.angle)) for point in polygon.points]}
        )
        for polygon in polygons
    ]


def _rotate_features(features: Sequence[Feature], segment: RotationSegment | None) -> list[Feature]:
    if segment is None:
        return list(features)
    return [
        feature.model_copy(update={"position": to_coord(rotate(to_vector(feature.position), segment.axis, segment.angle))})
        for feature in features
    ]


def recalculate_motion_history(plate: TectonicPlate) -> tuple[TectonicPlate, list[ValidationIssue]]:
    issues: list[ValidationIssue] = []
    previous_time: float | None = None
    for keyframe in plate.motionKeyframes:
        if previous_time is not None and keyframe.time < previous_time:
            log.warning(
                "negative_keyframe_delta",
                plate_id=plate.id,
                keyframe_time=keyframe.time,
                previous_time=previous_time,
            )
            issues.append(
                ValidationIssue(
                    code="motion.negative_time_delta",
                    severity="warning",
                    message=f"keyframe at {keyframe.time} precedes keyframe at {previous_time} on plate {plate.id}",
                    details={"plateId": plate.id, "keyframeTime": keyframe.time, "previousTime": previous_time},
                )
            )
        previous_time = keyframe.time

    rebuilt: list[MotionKeyframe] = []
    for keyframe in sorted_keyframes(plate):
        if not rebuilt:
            rebuilt.append(
                keyframe.model_copy(
                    update={
                        "snapshotPolygons": list(plate.initialPolygons),
                        "snapshotFeatures": list(plate.initialFeatures),
                    }
                )
            )
            continue

        previous = rebuilt[-1]
        segment = pole_segment(previous.eulerPole, keyframe.time - previous.time)
        rebuilt.append(
            keyframe.model_copy(
                update={
                    "snapshotPolygons": _rotate_polygons(previous.snapshotPolygons, segment),
                    "snapshotFeatures": _rotate_features(previous.snapshotFeatures, segment),
                }
            )
        )

    return plate.model_copy(update={"motionKeyframes": rebuilt}), issues


def point_position_at_time(
    point: Coordinate,
    plate: TectonicPlate,
    time: float,
    plates: Sequence[TectonicPlate],
    *,
    start: float,
) -> Coordinate:
    if time <= start:
        return point
    plates_by_id = {candidate.id: candidate for candidate in plates}
    inherited = parent_segments(plate, time, plates_by_id, start=start)
    own = [lock_segment(segment, inherited) for segment in keyframe_segments(plate, start, time)]
    if not inherited and not own:
        return point
    return to_coord(apply_segments(to_vector(point), inherited + own))


def flowline_trail(
    plate: TectonicPlate,
    feature: Feature,
    time: float,
    plates: Sequence[TectonicPlate],
    *,
    step: float = 5.0,
) -> list[Coordinate]:
    start = feature.generatedAt if feature.generatedAt is not None else plate.birthTime
    origin = feature.originalPosition or feature.position
    trail: list[Coordinate] = []
    for sample in np.arange(start, time + 1e-9, step):
        trail.append(point_position_at_time(origin, plate, float(sample), plates, start=start))
    trail.append(point_position_at_time(origin, plate, time, plates, start=start))
    return trail
