from __future__ import annotations

from collections import deque
from typing import Any, Sequence

import structlog

from .models import (
    Coordinate,
    EulerPole,
    Feature,
    FeatureType,
    MotionKeyframe,
    PlateCreateRequest,
    PlateEvent,
    PlateEventType,
    PlateMotion,
    PlateType,
    Polygon,
    TectonicPlate,
    ValidationIssue,
    WorldState,
)
from .modules.boundaries import PolygonBoolean, ShapelyPolygonBoolean, detect_boundaries
from .modules.fusion import FuseResult, fuse_plates
from .modules.motion import calculate_plate_at_time, flowline_trail, recalculate_motion_history
from .modules.plate_edits import (
    add_feature,
    add_motion_keyframe,
    get_plate,
    link_plates,
    replace_plate,
    unlink_plates,
)
from .modules.spherical import spherical_centroid
from .modules.split_engine import SplitResult, split_plate
from .settings import Settings
from .utils import IdGenerator, stable_hash, uuid_ids

log = structlog.get_logger()


class SimulationService:
    def __init__(
        self,
        settings: Settings,
        *,
        ids: IdGenerator | None = None,
        boolean: PolygonBoolean | None = None,
    ):
        self.settings = settings
        self.ids = ids or uuid_ids()
        self.boolean = boolean or ShapelyPolygonBoolean()
        self._world = WorldState()
        self._issues: list[ValidationIssue] = []
        self._past: deque[WorldState] = deque(maxlen=max(settings.history_limit, 0))
        self._future: list[WorldState] = []

    @property
    def world(self) -> WorldState:
        return self._world

    @property
    def issues(self) -> list[ValidationIssue]:
        return list(self._issues)

    def _resolve_time(self, time: float | None) -> float:
        return self._world.currentTime if time is None else time

    def _refresh_flowlines(self, plates: Sequence[TectonicPlate], time: float) -> list[TectonicPlate]:
        refreshed: list[TectonicPlate] = []
        for plate in plates:
            if not plate.is_alive_at(time) or not any(f.type == FeatureType.flowline for f in plate.features):
                refreshed.append(plate)
                continue
            features = [
                feature.model_copy(
                    update={"trail": flowline_trail(plate, feature, time, plates, step=self.settings.flowline_step_myr)}
                )
                if feature.type == FeatureType.flowline
                else feature
                for feature in plate.features
            ]
            refreshed.append(plate.model_copy(update={"features": features}))
        return refreshed

    def _evaluate(self, plates: Sequence[TectonicPlate], time: float) -> WorldState:
        recomputed = [
            calculate_plate_at_time(plate, time, plates) if plate.is_alive_at(time) and not plate.locked else plate
            for plate in plates
        ]
        recomputed = self._refresh_flowlines(recomputed, time)
        boundaries = []
        if self.settings.enable_boundaries:
            boundaries = detect_boundaries(
                recomputed,
                time,
                boolean=self.boolean,
                threshold=self.settings.boundary_velocity_threshold,
                min_area_deg2=self.settings.min_overlap_area_deg2,
                max_rings=self.settings.max_boundary_rings,
            )
        return self._world.model_copy(update={"plates": recomputed, "boundaries": boundaries, "currentTime": time})

    def _commit(self, plates: Sequence[TectonicPlate], time: float | None = None) -> WorldState:
        self._world = self._evaluate(plates, self._resolve_time(time))
        return self._world

    def _record(self, plates: Sequence[TectonicPlate], time: float | None = None) -> WorldState:
        previous = self._world
        world = self._commit(plates, time)
        self._past.append(previous)
        self._future.clear()
        return world

    @property
    def can_undo(self) -> bool:
        return bool(self._past)

    @property
    def can_redo(self) -> bool:
        return bool(self._future)

    def undo(self) -> WorldState:
        if not self._past:
            raise ValueError("nothing to undo")
        self._future.append(self._world)
        world = self._commit(self._past.pop().plates)
        log.info("edit_undone", undo_depth=len(self._past), redo_depth=len(self._future))
        return world

    def redo(self) -> WorldState:
        if not self._future:
            raise ValueError("nothing to redo")
        self._past.append(self._world)
        world = self._commit(self._future.pop().plates)
        log.info("edit_redone", undo_depth=len(self._past), redo_depth=len(self._future))
        return world

    def set_time(self, time: float) -> WorldState:
        return self._commit(self._world.plates, time)

    def tick(self, delta: float | None = None) -> WorldState:
        step = self._world.timeScale if delta is None else delta
        return self._commit(self._world.plates, self._world.currentTime + step)

    def set_playback(self, *, is_playing: bool | None = None, time_scale: float | None = None) -> WorldState:
        update: dict[str, Any] = {}
        if is_playing is not None:
            update["isPlaying"] = is_playing
        if time_scale is not None:
            if time_scale <= 0:
                raise ValueError("time scale must be positive")
            update["timeScale"] = time_scale
        self._world = self._world.model_copy(update=update)
        return self._world

    def get_plate(self, plate_id: str) -> TectonicPlate:
        return get_plate(self._world.plates, plate_id)

    def add_plate(self, request: PlateCreateRequest) -> TectonicPlate:
        birth = self._resolve_time(request.birthTime)
        is_rift = request.type == PlateType.rift
        points: list[Coordinate] = list(request.points)
        edges = len(points) - 1 if is_rift else len(points)
        rift_edges = list(range(edges)) if is_rift else [idx for idx in request.riftEdgeIndices if 0 <= idx < edges]
        polygon = Polygon(id=self.ids(), points=points, closed=not is_rift, riftEdgeIndices=rift_edges)
        plate = TectonicPlate(
            id=self.ids(),
            name=request.name,
            color=request.color,
            type=request.type,
            crustType=request.crustType,
            polygons=[polygon],
            center=spherical_centroid(points),
            birthTime=birth,
            initialPolygons=[polygon],
            motionKeyframes=[MotionKeyframe(time=birth, eulerPole=request.eulerPole, snapshotPolygons=[polygon])],
            motion=PlateMotion(eulerPole=request.eulerPole),
            events=[PlateEvent(id=self.ids(), time=birth, type=PlateEventType.birth, description="Plate created")],
        )
        self._record([*self._world.plates, plate])
        log.info("plate_added", plate_id=plate.id, name=plate.name, birth_time=birth)
        return self.get_plate(plate.id)

    def load_plates(self, plates: Sequence[TectonicPlate], time: float | None = None) -> WorldState:
        return self._record(list(plates), time)

    def change_motion(self, plate_id: str, pole: EulerPole, time: float | None = None) -> TectonicPlate:
        at = self._resolve_time(time)
        plates = add_motion_keyframe(self._world.plates, plate_id, pole, at, ids=self.ids)
        self._record(plates)
        return self.get_plate(plate_id)

    def add_feature(
        self,
        plate_id: str,
        feature_type: FeatureType,
        position: Coordinate,
        *,
        time: float | None = None,
        name: str | None = None,
        properties: dict[str, Any] | None = None,
    ) -> Feature:
        plates, feature = add_feature(
            self._world.plates,
            plate_id,
            feature_type,
            position,
            self._resolve_time(time),
            ids=self.ids,
            name=name,
            properties=properties,
        )
        self._record(plates)
        return feature

    def split(
        self,
        plate_id: str,
        polyline: Sequence[Coordinate],
        *,
        time: float | None = None,
        inherit_momentum: bool = False,
    ) -> SplitResult:
        at = self._resolve_time(time)
        result = split_plate(self._world.plates, plate_id, polyline, at, ids=self.ids, inherit_momentum=inherit_momentum)
        if result.applied:
            self._record(result.plates)
        return result

    def fuse(
        self,
        plate_a_id: str,
        plate_b_id: str,
        *,
        time: float | None = None,
        add_weakness_features: bool = True,
        weakness_interval: float = 1.0,
    ) -> FuseResult:
        result = fuse_plates(
            self._world.plates,
            plate_a_id,
            plate_b_id,
            self._resolve_time(time),
            ids=self.ids,
            boolean=self.boolean,
            add_weakness_features=add_weakness_features,
            weakness_interval=weakness_interval,
        )
        if result.success:
            self._record(result.plates)
        return result

    def link(self, parent_id: str, child_id: str, time: float | None = None) -> TectonicPlate:
        plates = link_plates(self._world.plates, parent_id, child_id, self._resolve_time(time), ids=self.ids)
        self._record(plates)
        return self.get_plate(child_id)

    def unlink(self, child_id: str, time: float | None = None) -> TectonicPlate:
        plates = unlink_plates(self._world.plates, child_id, self._resolve_time(time), ids=self.ids)
        self._record(plates)
        return self.get_plate(child_id)

    def recalculate_history(self, plate_id: str) -> list[ValidationIssue]:
        plate, issues = recalculate_motion_history(self.get_plate(plate_id))
        self._issues.extend(issues)
        self._record(replace_plate(self._world.plates, plate))
        return issues

    def boundaries_digest(self) -> str:
        return stable_hash([boundary.model_dump(mode="json") for boundary in self._world.boundaries])
