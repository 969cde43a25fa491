from __future__ import annotations

from typing import Callable, TypeVar

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .log_setup import configure_logging
from .models import (
    BoundarySummary,
    Feature,
    FeatureCreateRequest,
    FuseRequest,
    FuseSummary,
    LinkRequest,
    MotionChangeRequest,
    PlateCreateRequest,
    PlateNotFoundError,
    PlaybackRequest,
    SplitRequest,
    SplitSummary,
    TectonicPlate,
    TickRequest,
    TimeRequest,
    UnlinkRequest,
    ValidationIssue,
    WorldState,
)
from .settings import Settings, load_settings
from .simulation_service import SimulationService

log = structlog.get_logger()

T = TypeVar("T")


def _guarded(action: Callable[[], T]) -> T:
    try:
        return action()
    except PlateNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        log.info("edit_rejected", error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def create_app(settings: Settings | None = None, simulation: SimulationService | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings)
    simulation = simulation or SimulationService(settings)

    app = FastAPI(title="TectoLite Engine", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.simulation = simulation

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/world", response_model=WorldState)
    def get_world() -> WorldState:
        return simulation.world

    @app.post("/v1/plates", response_model=TectonicPlate)
    def create_plate(request: PlateCreateRequest) -> TectonicPlate:
        return _guarded(lambda: simulation.add_plate(request))

    @app.get("/v1/plates/{plate_id}", response_model=TectonicPlate)
    def get_plate(plate_id: str) -> TectonicPlate:
        return _guarded(lambda: simulation.get_plate(plate_id))

    @app.post("/v1/time", response_model=WorldState)
    def set_time(request: TimeRequest) -> WorldState:
        return simulation.set_time(request.timeMa)

    @app.post("/v1/tick", response_model=WorldState)
    def tick(request: TickRequest) -> WorldState:
        return simulation.tick(request.deltaMa)

    @app.post("/v1/playback", response_model=WorldState)
    def set_playback(request: PlaybackRequest) -> WorldState:
        return _guarded(lambda: simulation.set_playback(is_playing=request.isPlaying, time_scale=request.timeScale))

    @app.post("/v1/undo", response_model=WorldState)
    def undo() -> WorldState:
        return _guarded(simulation.undo)

    @app.post("/v1/redo", response_model=WorldState)
    def redo() -> WorldState:
        return _guarded(simulation.redo)

    @app.post("/v1/plates/{plate_id}/motion", response_model=TectonicPlate)
    def change_motion(plate_id: str, request: MotionChangeRequest) -> TectonicPlate:
        return _guarded(lambda: simulation.change_motion(plate_id, request.eulerPole, request.timeMa))

    @app.post("/v1/plates/{plate_id}/features", response_model=Feature)
    def create_feature(plate_id: str, request: FeatureCreateRequest) -> Feature:
        return _guarded(
            lambda: simulation.add_feature(
                plate_id,
                request.type,
                request.position,
                time=request.timeMa,
                name=request.name,
                properties=request.properties,
            )
        )

    @app.post("/v1/plates/{plate_id}/recalculate", response_model=list[ValidationIssue])
    def recalculate(plate_id: str) -> list[ValidationIssue]:
        return _guarded(lambda: simulation.recalculate_history(plate_id))

    @app.post("/v1/plates/{plate_id}/split", response_model=SplitSummary)
    def split_plate(plate_id: str, request: SplitRequest) -> SplitSummary:
        result = _guarded(
            lambda: simulation.split(
                plate_id,
                request.polyline,
                time=request.timeMa,
                inherit_momentum=request.inheritMomentum,
            )
        )
        return SplitSummary(
            applied=result.applied,
            parentPlateId=plate_id,
            leftPlateId=result.left_id,
            rightPlateId=result.right_id,
            createdPlateIds=result.created_ids,
        )

    @app.post("/v1/links", response_model=TectonicPlate)
    def link(request: LinkRequest) -> TectonicPlate:
        return _guarded(lambda: simulation.link(request.parentPlateId, request.childPlateId, request.timeMa))

    @app.post("/v1/links/{child_id}/unlink", response_model=TectonicPlate)
    def unlink(child_id: str, request: UnlinkRequest) -> TectonicPlate:
        return _guarded(lambda: simulation.unlink(child_id, request.timeMa))

    @app.post("/v1/fusions", response_model=FuseSummary)
    def fuse(request: FuseRequest) -> FuseSummary:
        plate_a, plate_b = request.plateIds
        result = simulation.fuse(
            plate_a,
            plate_b,
            time=request.timeMa,
            add_weakness_features=request.addWeaknessFeatures,
            weakness_interval=request.weaknessIntervalDeg,
        )
        return FuseSummary(success=result.success, error=result.error, fusedPlateId=result.fused_id)

    @app.get("/v1/boundaries", response_model=BoundarySummary)
    def get_boundaries() -> BoundarySummary:
        world = simulation.world
        return BoundarySummary(
            timeMa=world.currentTime,
            boundaries=world.boundaries,
            digest=simulation.boundaries_digest(),
        )

    return app
