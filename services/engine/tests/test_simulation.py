from __future__ import annotations

import pytest

from tectolite_engine.models import (
    BoundaryType,
    EulerPole,
    FeatureType,
    PlateCreateRequest,
    PlateNotFoundError,
    PlateType,
)
from tectolite_engine.settings import Settings, load_settings
from tectolite_engine.simulation_service import SimulationService
from tectolite_engine.utils import CounterIds


def _build_service(**settings_overrides):
    settings = Settings(**settings_overrides)
    return SimulationService(settings, ids=CounterIds("t"))


def _square(west: float, east: float, south: float = -5.0, north: float = 5.0):
    return [(west, south), (east, south), (east, north), (west, north)]


def test_tick_advances_time_and_moves_plates():
    service = _build_service()
    plate = service.add_plate(
        PlateCreateRequest(name="Laurentia", points=_square(-10.0, 10.0), eulerPole=EulerPole(position=(0.0, 90.0), rate=2.0))
    )

    service.set_playback(time_scale=2.5)
    world = service.tick()
    world = service.tick()

    assert world.currentTime == pytest.approx(5.0)
    moved = service.get_plate(plate.id)
    assert moved.polygons[0].points[0][0] == pytest.approx(0.0)
    assert moved.center[0] == pytest.approx(10.0)


def test_scrubbing_time_is_deterministic():
    service = _build_service()
    service.add_plate(
        PlateCreateRequest(name="Gondwana", points=_square(-10.0, 10.0), eulerPole=EulerPole(position=(20.0, 60.0), rate=1.0))
    )

    first = service.set_time(30.0).model_dump(mode="json")
    service.set_time(80.0)
    second = service.set_time(30.0).model_dump(mode="json")

    assert first == second


def test_unborn_plates_keep_their_birth_geometry():
    service = _build_service()
    plate = service.add_plate(
        PlateCreateRequest(
            name="Late",
            points=_square(0.0, 10.0),
            birthTime=50.0,
            eulerPole=EulerPole(position=(0.0, 90.0), rate=1.0),
        )
    )

    service.set_time(10.0)

    assert service.get_plate(plate.id).polygons[0].points == plate.polygons[0].points


def test_rift_plates_are_open_polylines():
    service = _build_service()
    rift = service.add_plate(PlateCreateRequest(name="Rift", type=PlateType.rift, points=[(0.0, -5.0), (0.0, 5.0)]))

    assert not rift.polygons[0].closed
    assert rift.polygons[0].riftEdgeIndices == [0]


def test_boundaries_are_detected_and_hashed():
    service = _build_service()
    service.add_plate(
        PlateCreateRequest(name="West", points=_square(-10.0, 1.0), eulerPole=EulerPole(position=(0.0, 90.0), rate=5.0))
    )
    service.add_plate(PlateCreateRequest(name="East", points=_square(-1.0, 10.0)))

    world = service.set_time(0.0)

    assert len(world.boundaries) == 1
    assert world.boundaries[0].type == BoundaryType.convergent
    digest = service.boundaries_digest()
    assert digest == service.boundaries_digest()
    assert len(digest) == 64


def test_boundaries_can_be_disabled():
    service = _build_service(enable_boundaries=False)
    service.add_plate(PlateCreateRequest(name="West", points=_square(-10.0, 1.0)))
    service.add_plate(PlateCreateRequest(name="East", points=_square(-1.0, 10.0)))

    assert service.world.boundaries == []


def test_split_and_fuse_through_service():
    service = _build_service()
    plate = service.add_plate(PlateCreateRequest(name="Pangaea", points=_square(-10.0, 10.0, -10.0, 10.0)))

    result = service.split(plate.id, [(0.0, -20.0), (0.0, 20.0)], time=0.0)
    assert result.applied
    assert service.get_plate(plate.id).deathTime == 0.0

    service.set_time(1.0)
    fused = service.fuse(result.left_id, result.right_id)
    assert fused.success
    merged = service.get_plate(fused.fused_id)
    assert merged.birthTime == 1.0
    assert merged.parentPlateIds == [result.left_id, result.right_id]


def test_flowline_trails_are_refreshed_each_tick():
    service = _build_service(flowline_step_myr=2.0)
    plate = service.add_plate(
        PlateCreateRequest(name="Track", points=_square(-10.0, 10.0), eulerPole=EulerPole(position=(0.0, 90.0), rate=1.0))
    )
    feature = service.add_feature(plate.id, FeatureType.flowline, (0.0, 0.0))

    service.set_time(6.0)

    moved = next(item for item in service.get_plate(plate.id).features if item.id == feature.id)
    assert moved.position[0] == pytest.approx(6.0)
    assert [round(lon, 6) for lon, _ in moved.trail] == [0.0, 2.0, 4.0, 6.0, 6.0]


def test_link_and_motion_edits_through_service():
    service = _build_service()
    parent = service.add_plate(
        PlateCreateRequest(name="Parent", points=_square(-10.0, 10.0), eulerPole=EulerPole(position=(0.0, 90.0), rate=1.0))
    )
    child = service.add_plate(PlateCreateRequest(name="Child", points=_square(40.0, 50.0)))

    service.link(parent.id, child.id, time=0.0)
    service.set_time(10.0)
    assert service.get_plate(child.id).polygons[0].points[0][0] == pytest.approx(50.0)

    service.change_motion(parent.id, EulerPole(), time=10.0)
    service.set_time(20.0)
    assert service.get_plate(child.id).polygons[0].points[0][0] == pytest.approx(50.0)


def test_recalculate_history_reports_issues():
    service = _build_service()
    plate = service.add_plate(PlateCreateRequest(name="Solo", points=_square(-10.0, 10.0)))

    assert service.recalculate_history(plate.id) == []
    with pytest.raises(PlateNotFoundError):
        service.recalculate_history("missing")


def test_playback_rejects_non_positive_scale():
    service = _build_service()
    with pytest.raises(ValueError):
        service.set_playback(time_scale=0.0)
    assert service.set_playback(is_playing=True).isPlaying


def test_load_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("TECTOLITE_BOUNDARY_VELOCITY_THRESHOLD", "0.1")
    monkeypatch.setenv("TECTOLITE_ENABLE_BOUNDARIES", "off")
    monkeypatch.setenv("TECTOLITE_LOG_FORMAT", "JSON")
    monkeypatch.setenv("TECTOLITE_HISTORY_LIMIT", "7")

    settings = load_settings()

    assert settings.boundary_velocity_threshold == 0.1
    assert settings.enable_boundaries is False
    assert settings.log_format == "json"
    assert settings.history_limit == 7


def test_undo_and_redo_walk_edit_history():
    service = _build_service()
    plate = service.add_plate(
        PlateCreateRequest(name="Avalonia", points=_square(-10.0, 10.0), eulerPole=EulerPole(position=(0.0, 90.0), rate=1.0))
    )
    assert service.can_undo
    assert not service.can_redo

    service.change_motion(plate.id, EulerPole(position=(0.0, 90.0), rate=3.0), time=5.0)
    service.set_time(10.0)
    assert service.get_plate(plate.id).polygons[0].points[0][0] == pytest.approx(10.0)

    world = service.undo()
    assert world.currentTime == 10.0
    assert [keyframe.time for keyframe in service.get_plate(plate.id).motionKeyframes] == [0.0]
    assert service.get_plate(plate.id).polygons[0].points[0][0] == pytest.approx(0.0)
    assert service.can_redo

    service.redo()
    assert [keyframe.time for keyframe in service.get_plate(plate.id).motionKeyframes] == [0.0, 5.0]
    assert service.get_plate(plate.id).polygons[0].points[0][0] == pytest.approx(10.0)

    service.undo()
    service.undo()
    assert service.world.plates == []
    with pytest.raises(ValueError):
        service.undo()


def test_new_edit_clears_redo_and_history_is_bounded():
    service = _build_service(history_limit=2)
    for name in ("One", "Two", "Three"):
        service.add_plate(PlateCreateRequest(name=name, points=_square(-5.0, 5.0)))

    service.undo()
    assert service.can_redo
    service.add_plate(PlateCreateRequest(name="Four", points=_square(-5.0, 5.0)))
    assert not service.can_redo
    with pytest.raises(ValueError):
        service.redo()

    service.undo()
    service.undo()
    assert not service.can_undo
    assert [plate.name for plate in service.world.plates] == ["One"]
