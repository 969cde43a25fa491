from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import NamedTuple, Sequence

import numpy as np
import structlog

from ..models import (
    Coordinate,
    EulerPole,
    Feature,
    MotionKeyframe,
    PlateEvent,
    PlateEventType,
    PlateNotFoundError,
    PlateType,
    Polygon,
    TectonicPlate,
)
from ..utils import IdGenerator
from .baking import BakedGeometry, bake_plate, rebirth_plate
from .motion import active_pole, link_active, point_in_polygon
from .spherical import (
    Vector,
    angular_distance,
    normalize,
    spherical_centroid,
    to_coord,
    to_vector,
    vector_area,
)

log = structlog.get_logger()

ARC_TOLERANCE_RAD = 1e-4
PARALLEL_TOLERANCE = 1e-6
MIN_VECTOR_AREA = 1e-12
RIGHT_CHILD_COLOR = "#D4AF37"


class Crossing(NamedTuple):
    edge: int
    cut_index: int
    along: float
    point: Coordinate


class SplitRings(NamedTuple):
    left: Polygon
    right: Polygon | None


def _on_arc(p: Vector, start: Vector, end: Vector) -> bool:
    total = angular_distance(start, end)
    return abs(angular_distance(start, p) + angular_distance(end, p) - total) < ARC_TOLERANCE_RAD


def segment_intersection(a1: Coordinate, a2: Coordinate, b1: Coordinate, b2: Coordinate) -> Coordinate | None:
    va1, va2, vb1, vb2 = (to_vector(point) for point in (a1, a2, b1, b2))
    n_a = normalize(np.cross(va1, va2))
    n_b = normalize(np.cross(vb1, vb2))
    direction = np.cross(n_a, n_b)
    length = float(np.linalg.norm(direction))
    if length < PARALLEL_TOLERANCE:
        return None
    direction = direction / length
    for sign in (1.0, -1.0):
        candidate = direction * sign
        if _on_arc(candidate, va1, va2) and _on_arc(candidate, vb1, vb2):
            return to_coord(candidate)
    return None


def boundary_crossings(ring: Sequence[Coordinate], polyline: Sequence[Coordinate]) -> list[Crossing]:
    crossings: list[Crossing] = []
    n = len(ring)
    for cut_index in range(len(polyline) - 1):
        start = polyline[cut_index]
        end = polyline[cut_index + 1]
        start_vector = to_vector(start)
        for edge in range(n):
            point = segment_intersection(start, end, ring[edge], ring[(edge + 1) % n])
            if point is not None:
                along = angular_distance(start_vector, to_vector(point))
                crossings.append(Crossing(edge=edge, cut_index=cut_index, along=along, point=point))
    crossings.sort(key=lambda crossing: (crossing.cut_index, crossing.along))
    return crossings


def _arc_distance(p: Vector, start: Vector, end: Vector) -> float:
    normal = normalize(np.cross(start, end))
    if not normal.any():
        return angular_distance(p, start)
    projected = normalize(p - normal * float(np.dot(p, normal)))
    if projected.any() and _on_arc(projected, start, end):
        return abs(math.asin(max(-1.0, min(1.0, float(np.dot(p, normal))))))
    return min(angular_distance(p, start), angular_distance(p, end))


def side_score(point: Coordinate, polyline: Sequence[Coordinate], *, first: int = 0, last: int | None = None) -> float:
    if len(polyline) < 2:
        return 0.0
    last = len(polyline) - 2 if last is None else last
    vector = to_vector(point)
    best_normal: Vector | None = None
    best_distance = math.inf
    for idx in range(first, last + 1):
        start = to_vector(polyline[idx])
        end = to_vector(polyline[idx + 1])
        distance = _arc_distance(vector, start, end)
        if distance < best_distance:
            best_distance = distance
            best_normal = normalize(np.cross(start, end))
    if best_normal is None:
        return 0.0
    return float(np.dot(vector, best_normal))


def is_degenerate_ring(points: Sequence[Coordinate]) -> bool:
    distinct = {(round(lon, 9), round(lat, 9)) for lon, lat in points}
    if len(distinct) < 3:
        return True
    return float(np.linalg.norm(vector_area(points))) < MIN_VECTOR_AREA


def _walk_lengths(ring: Sequence[Coordinate], first: Crossing, second: Crossing) -> tuple[int, int]:
    n = len(ring)
    if first.edge != second.edge:
        return (second.edge - first.edge) % n, (first.edge - second.edge) % n
    edge_start = to_vector(ring[first.edge])
    first_offset = angular_distance(edge_start, to_vector(first.point))
    second_offset = angular_distance(edge_start, to_vector(second.point))
    if first_offset <= second_offset:
        return 0, n
    return n, 0


def _build_ring(
    ring: Sequence[Coordinate],
    rift_edges: set[int],
    *,
    entry: Crossing,
    exit: Crossing,
    walk: int,
    cut: Sequence[Coordinate],
) -> tuple[list[Coordinate], list[int]]:
    n = len(ring)
    points: list[Coordinate] = [entry.point]
    points.extend(ring[(entry.edge + step) % n] for step in range(1, walk + 1))
    points.append(exit.point)
    points.extend(cut)

    rift_indices = [step for step in range(walk + 1) if (entry.edge + step) % n in rift_edges]
    rift_indices.extend(range(walk + 1, len(points)))
    return points, rift_indices


def split_polygon_with_polyline(
    polygon: Polygon,
    polyline: Sequence[Coordinate],
    *,
    ids: IdGenerator | None = None,
) -> SplitRings:
    """Cut a closed ring with a polyline using its first and last boundary crossings.

    Returns the polygon unchanged as ``left`` with ``right=None`` when the input is
    degenerate or the polyline crosses the boundary fewer than twice.
    """
    ring = list(polygon.points)
    if len(polyline) < 2 or len(ring) < 3 or not polygon.closed:
        return SplitRings(left=polygon, right=None)

    crossings = boundary_crossings(ring, polyline)
    if len(crossings) < 2:
        return SplitRings(left=polygon, right=None)

    first = crossings[0]
    second = crossings[-1]
    cut = list(polyline[first.cut_index + 1 : second.cut_index + 1])
    walk_a, walk_b = _walk_lengths(ring, first, second)
    rift_edges = set(polygon.riftEdgeIndices)

    points_a, rift_a = _build_ring(ring, rift_edges, entry=first, exit=second, walk=walk_a, cut=list(reversed(cut)))
    points_b, rift_b = _build_ring(ring, rift_edges, entry=second, exit=first, walk=walk_b, cut=cut)

    cut_first = first.cut_index
    cut_last = second.cut_index
    score_a = side_score(spherical_centroid(points_a), polyline, first=cut_first, last=cut_last)
    score_b = side_score(spherical_centroid(points_b), polyline, first=cut_first, last=cut_last)
    if score_b > score_a:
        points_a, rift_a, points_b, rift_b = points_b, rift_b, points_a, rift_a

    left_id = ids() if ids is not None else f"{polygon.id}-l"
    right_id = ids() if ids is not None else f"{polygon.id}-r"
    left = polygon.model_copy(update={"id": left_id, "points": points_a, "riftEdgeIndices": rift_a})
    right = polygon.model_copy(update={"id": right_id, "points": points_b, "riftEdgeIndices": rift_b})
    return SplitRings(left=left, right=right)


class _SplitAborted(Exception):
    pass


@dataclass
class SplitResult:
    plates: list[TectonicPlate]
    applied: bool
    left_id: str | None = None
    right_id: str | None = None
    created_ids: list[str] = field(default_factory=list)
    reason: str | None = None


@dataclass
class _LRifts:
    left: TectonicPlate
    right: TectonicPlate


@dataclass
class _Halves:
    left: TectonicPlate
    right: TectonicPlate


def _open_polyline(polygons: Sequence[Polygon]) -> list[Coordinate]:
    for polygon in polygons:
        if len(polygon.points) >= 2:
            return list(polygon.points)
    return []


def _polyline_intersection(
    split_line: Sequence[Coordinate],
    rift_line: Sequence[Coordinate],
) -> tuple[int, int, Coordinate] | None:
    for split_index in range(len(split_line) - 1):
        for rift_index in range(len(rift_line) - 1):
            point = segment_intersection(
                split_line[split_index],
                split_line[split_index + 1],
                rift_line[rift_index],
                rift_line[rift_index + 1],
            )
            if point is not None:
                return split_index, rift_index, point
    return None


class _SplitTransaction:
    def __init__(
        self,
        plates: Sequence[TectonicPlate],
        *,
        time: float,
        ids: IdGenerator,
        inherit_momentum: bool,
    ) -> None:
        self.source = list(plates)
        self.by_id = {plate.id: plate for plate in plates}
        self.order = [plate.id for plate in plates]
        self.time = time
        self.ids = ids
        self.inherit_momentum = inherit_momentum
        self.created: list[str] = []
        self.l_rifts: dict[str, _LRifts] = {}

    def result(self) -> list[TectonicPlate]:
        return [self.by_id[plate_id] for plate_id in self.order]

    def _store(self, plate: TectonicPlate) -> None:
        if plate.id not in self.by_id:
            self.order.append(plate.id)
            self.created.append(plate.id)
        self.by_id[plate.id] = plate

    def _event(self, event_type: PlateEventType, description: str, **details: object) -> PlateEvent:
        return PlateEvent(id=self.ids(), time=self.time, type=event_type, description=description, details=dict(details))

    def _child_pole(self, plate: TectonicPlate) -> EulerPole:
        if self.inherit_momentum:
            return active_pole(plate, self.time).model_copy()
        return EulerPole()

    def split(
        self,
        plate: TectonicPlate,
        polyline: Sequence[Coordinate],
        visited: set[str],
    ) -> _Halves | None:
        visited.add(plate.id)
        baked = bake_plate(plate, self.time, self.source)

        left_polygons: list[Polygon] = []
        right_polygons: list[Polygon] = []
        crossed = False
        for polygon in baked.polygons:
            rings = split_polygon_with_polyline(polygon, polyline, ids=self.ids)
            if rings.right is None:
                target = left_polygons if side_score(spherical_centroid(polygon.points), polyline) >= 0 else right_polygons
                target.append(polygon)
                continue
            crossed = True
            for ring in (rings.left, rings.right):
                if is_degenerate_ring(ring.points):
                    raise _SplitAborted(f"split of plate {plate.id} produced a zero-area ring")
            left_polygons.append(rings.left)
            right_polygons.append(rings.right)

        if not crossed:
            return None
        if not left_polygons or not right_polygons:
            raise _SplitAborted(f"split of plate {plate.id} left one side without polygons")

        left_features, right_features = self._assign_features(baked.features, left_polygons, right_polygons, polyline)
        left_rifts, right_rifts, parent_rifts = self._assign_rifts(plate, baked, polyline)

        left = self._child(plate, baked, polygons=left_polygons, features=left_features, suffix="A", rifts=left_rifts)
        right = self._child(
            plate,
            baked,
            polygons=right_polygons,
            features=right_features,
            suffix="B",
            rifts=right_rifts,
            color=RIGHT_CHILD_COLOR,
        )

        dead = plate.model_copy(
            update={
                "deathTime": self.time,
                "connectedRiftIds": parent_rifts,
                "events": [
                    *plate.events,
                    self._event(
                        PlateEventType.split,
                        "Plate split into two children",
                        childPlateIds=[left.id, right.id],
                    ),
                ],
            }
        )
        self._store(dead)
        self._store(left)
        self._store(right)

        self._split_linked_children(plate, polyline, _Halves(left=left, right=right), visited)
        return _Halves(left=self.by_id[left.id], right=self.by_id[right.id])

    def _assign_features(
        self,
        features: Sequence[Feature],
        left_polygons: Sequence[Polygon],
        right_polygons: Sequence[Polygon],
        polyline: Sequence[Coordinate],
    ) -> tuple[list[Feature], list[Feature]]:
        left: list[Feature] = []
        right: list[Feature] = []
        for feature in features:
            in_left = any(point_in_polygon(feature.position, polygon.points) for polygon in left_polygons)
            in_right = any(point_in_polygon(feature.position, polygon.points) for polygon in right_polygons)
            if in_left and not in_right:
                left.append(feature)
            elif in_right and not in_left:
                right.append(feature)
            elif side_score(feature.position, polyline) >= 0:
                left.append(feature)
            else:
                right.append(feature)
        return left, right

    def _assign_rifts(
        self,
        plate: TectonicPlate,
        baked: BakedGeometry,
        polyline: Sequence[Coordinate],
    ) -> tuple[list[str], list[str], list[str]]:
        left: list[str] = []
        right: list[str] = []
        parent = [rift_id for rift_id in plate.connectedRiftIds]
        for rift_id in plate.connectedRiftIds:
            rift = self.by_id.get(rift_id)
            if rift is None or not rift.is_alive_at(self.time):
                continue
            rift_line = _open_polyline(bake_plate(rift, self.time, self.source).polygons)
            l_rifts = self.l_rifts.get(rift_id)
            if l_rifts is None:
                l_rifts = self._build_l_rifts(rift, rift_line, baked, polyline)
            if l_rifts is None:
                centroid = spherical_centroid(rift_line) if rift_line else baked.center
                (left if side_score(centroid, polyline) >= 0 else right).append(rift_id)
                continue
            self.l_rifts[rift_id] = l_rifts
            parent.remove(rift_id)
            parent.extend([l_rifts.left.id, l_rifts.right.id])
            left.append(l_rifts.left.id)
            right.append(l_rifts.right.id)
        return left, right, parent

    def _build_l_rifts(
        self,
        rift: TectonicPlate,
        rift_line: Sequence[Coordinate],
        baked: BakedGeometry,
        polyline: Sequence[Coordinate],
    ) -> _LRifts | None:
        if len(rift_line) < 2:
            return None
        junction = _polyline_intersection(polyline, rift_line)
        if junction is None:
            return None
        split_index, rift_index, point = junction

        arm_start = [*rift_line[: rift_index + 1], point]
        arm_end = [point, *rift_line[rift_index + 1 :]]

        normal = normalize(np.cross(to_vector(polyline[0]), to_vector(polyline[1])))
        start_score = float(np.dot(to_vector(arm_start[0]), normal))
        end_score = float(np.dot(to_vector(arm_end[-1]), normal))
        if start_score >= end_score:
            left_arm, right_arm = arm_start, list(reversed(arm_end))
        else:
            left_arm, right_arm = list(reversed(arm_end)), arm_start

        before, after = self._trimmed_portions(baked, polyline, split_index, point)
        left_line = [*left_arm, *reversed(before[:-1])]
        right_line = [*right_arm, *after[1:]]

        pole = active_pole(rift, self.time)
        left = self._rift_plate(rift, left_line, "LA", pole)
        right = self._rift_plate(rift, right_line, "LB", pole)
        self._store(left)
        self._store(right)
        log.info("l_rift_created", rift_id=rift.id, left_id=left.id, right_id=right.id)
        return _LRifts(left=left, right=right)

    def _trimmed_portions(
        self,
        baked: BakedGeometry,
        polyline: Sequence[Coordinate],
        split_index: int,
        junction: Coordinate,
    ) -> tuple[list[Coordinate], list[Coordinate]]:
        crossings: list[Crossing] = []
        for polygon in baked.polygons:
            if polygon.closed and len(polygon.points) >= 3:
                crossings.extend(boundary_crossings(polygon.points, polyline))
        crossings.sort(key=lambda crossing: (crossing.cut_index, crossing.along))
        junction_along = angular_distance(to_vector(polyline[split_index]), to_vector(junction))

        before: list[Coordinate] = [polyline[0], *polyline[1 : split_index + 1], junction]
        after: list[Coordinate] = [junction, *polyline[split_index + 1 :]]
        if crossings:
            head = crossings[0]
            if (head.cut_index, head.along) < (split_index, junction_along):
                before = [head.point, *polyline[head.cut_index + 1 : split_index + 1], junction]
            tail = crossings[-1]
            if (tail.cut_index, tail.along) > (split_index, junction_along):
                after = [junction, *polyline[split_index + 1 : tail.cut_index + 1], tail.point]
        return before, after

    def _rift_plate(self, rift: TectonicPlate, line: list[Coordinate], suffix: str, pole: EulerPole) -> TectonicPlate:
        polygon = Polygon(id=self.ids(), points=line, closed=False, riftEdgeIndices=list(range(len(line) - 1)))
        keyframe = MotionKeyframe(time=self.time, eulerPole=pole, snapshotPolygons=[polygon], snapshotFeatures=[])
        return rift.model_copy(
            update={
                "id": self.ids(),
                "name": f"{rift.name} ({suffix})",
                "type": PlateType.rift,
                "polygons": [polygon],
                "features": [],
                "center": spherical_centroid(line),
                "birthTime": self.time,
                "deathTime": None,
                "parentPlateIds": [rift.id],
                "initialPolygons": [polygon],
                "initialFeatures": [],
                "motionKeyframes": [keyframe],
                "motion": rift.motion.model_copy(update={"eulerPole": pole}),
                "events": [self._event(PlateEventType.birth, "L-rift created at split junction", sourceRiftId=rift.id)],
                "connectedRiftIds": [],
            }
        )

    def _child(
        self,
        plate: TectonicPlate,
        baked: BakedGeometry,
        *,
        polygons: list[Polygon],
        features: list[Feature],
        suffix: str,
        rifts: list[str],
        color: str | None = None,
    ) -> TectonicPlate:
        pole = self._child_pole(plate)
        keyframe = MotionKeyframe(time=self.time, eulerPole=pole, snapshotPolygons=polygons, snapshotFeatures=features)
        points = [point for polygon in polygons for point in polygon.points]
        update: dict[str, object] = {
            "id": self.ids(),
            "name": f"{plate.name} ({suffix})",
            "color": color or plate.color,
            "polygons": polygons,
            "features": features,
            "center": spherical_centroid(points),
            "birthTime": self.time,
            "deathTime": None,
            "parentPlateIds": [plate.id],
            "initialPolygons": polygons,
            "initialFeatures": features,
            "motionKeyframes": [keyframe],
            "motion": plate.motion.model_copy(update={"eulerPole": pole}),
            "events": [self._event(PlateEventType.birth, "Plate born from split", parentPlateId=plate.id)],
            "connectedRiftIds": rifts,
            "locked": False,
            "visible": True,
        }
        if link_active(plate, self.time):
            update.update({"linkTime": self.time, "unlinkTime": None})
        else:
            update.update({"linkedToPlateId": None, "linkTime": None, "unlinkTime": None})
        return plate.model_copy(update=update)

    def _relink(self, plate: TectonicPlate, parent_id: str) -> TectonicPlate:
        relinked = plate.model_copy(
            update={"linkedToPlateId": parent_id, "linkTime": self.time, "unlinkTime": None}
        )
        self._store(relinked)
        return relinked

    def _split_linked_children(
        self,
        plate: TectonicPlate,
        polyline: Sequence[Coordinate],
        halves: _Halves,
        visited: set[str],
    ) -> None:
        for child in self._linked_children(plate, visited):
            if child.id in visited or child.type == PlateType.rift:
                continue
            child_halves = self.split(child, polyline, visited)
            if child_halves is not None:
                self._relink(child_halves.left, halves.left.id)
                self._relink(child_halves.right, halves.right.id)
                continue

            center = bake_plate(child, self.time, self.source).center
            parent_half = halves.left if side_score(center, polyline) >= 0 else halves.right
            self._rebirth_linked(child, parent_half.id, visited)

    def _linked_children(self, plate: TectonicPlate, visited: set[str]) -> list[TectonicPlate]:
        return [
            candidate
            for candidate in self.source
            if candidate.linkedToPlateId == plate.id
            and candidate.id not in visited
            and candidate.is_alive_at(self.time)
            and link_active(candidate, self.time)
        ]

    def _rebirth_linked(self, child: TectonicPlate, parent_id: str, visited: set[str]) -> None:
        visited.add(child.id)
        baked = bake_plate(child, self.time, self.source)
        reborn = rebirth_plate(child, baked, plate_id=self.ids(), name=child.name)
        reborn = reborn.model_copy(
            update={
                "linkedToPlateId": parent_id,
                "linkTime": self.time,
                "unlinkTime": None,
                "events": [self._event(PlateEventType.birth, "Plate re-born after parent split", parentPlateId=child.id)],
            }
        )
        self._store(reborn)
        self._store(
            child.model_copy(
                update={
                    "deathTime": self.time,
                    "events": [
                        *child.events,
                        self._event(PlateEventType.split, "Linked parent split", rebornPlateId=reborn.id),
                    ],
                }
            )
        )
        for descendant in self._linked_children(child, visited):
            if descendant.id not in visited:
                self._rebirth_linked(descendant, reborn.id, visited)


def split_plate(
    plates: Sequence[TectonicPlate],
    plate_id: str,
    polyline: Sequence[Coordinate],
    time: float,
    *,
    ids: IdGenerator,
    inherit_momentum: bool = False,
) -> SplitResult:
    by_id = {plate.id: plate for plate in plates}
    plate = by_id.get(plate_id)
    if plate is None:
        raise PlateNotFoundError(plate_id)
    if len(polyline) < 2:
        return SplitResult(plates=list(plates), applied=False, reason="polyline needs at least 2 points")
    if plate.type == PlateType.rift:
        return SplitResult(plates=list(plates), applied=False, reason="rift plates cannot be split")
    if not plate.is_alive_at(time):
        return SplitResult(plates=list(plates), applied=False, reason="plate is not alive at split time")

    transaction = _SplitTransaction(plates, time=time, ids=ids, inherit_momentum=inherit_momentum)
    try:
        halves = transaction.split(plate, polyline, visited=set())
    except _SplitAborted as exc:
        log.info("split_rejected", plate_id=plate_id, reason=str(exc))
        return SplitResult(plates=list(plates), applied=False, reason=str(exc))

    if halves is None:
        log.info("split_noop", plate_id=plate_id, reason="fewer than two boundary crossings")
        return SplitResult(plates=list(plates), applied=False, reason="split line does not cross the plate")

    log.info(
        "plate_split",
        plate_id=plate_id,
        left_id=halves.left.id,
        right_id=halves.right.id,
        created=len(transaction.created),
    )
    return SplitResult(
        plates=transaction.result(),
        applied=True,
        left_id=halves.left.id,
        right_id=halves.right.id,
        created_ids=list(transaction.created),
    )
