from __future__ import annotations

import math

import pytest

from tectolite_engine.models import (
    EulerPole,
    FeatureType,
    MotionKeyframe,
    PlateEventType,
    PlateMotion,
    Polygon,
    TectonicPlate,
)
from tectolite_engine.modules.boundaries import ring_area_deg2, unwrap_ring
from tectolite_engine.modules.fusion import fuse_plates, weakness_positions
from tectolite_engine.utils import CounterIds


def _plate(plate_id: str, points, *, rate: float = 0.0) -> TectonicPlate:
    pole = EulerPole(position=(0.0, 90.0), rate=rate)
    polygon = Polygon(id=f"{plate_id}-poly", points=points)
    return TectonicPlate(
        id=plate_id,
        name=plate_id.upper(),
        polygons=[polygon],
        initialPolygons=[polygon],
        motion=PlateMotion(eulerPole=pole),
        motionKeyframes=[MotionKeyframe(time=0.0, eulerPole=pole, snapshotPolygons=[polygon])],
    )


def test_weakness_positions_follow_outline_spacing():
    positions = weakness_positions([(0.0, 0.0), (3.0, 0.0)], 1.0)
    assert positions == [(0.0, 0.0), (1.0, 0.0), (2.0, 0.0), (3.0, 0.0)]

    short_tail = weakness_positions([(0.0, 0.0), (2.1, 0.0)], 1.0)
    assert short_tail == [(0.0, 0.0), (1.0, 0.0), (2.0, 0.0)]

    assert weakness_positions([], 1.0) == []


def test_fuse_overlapping_plates():
    a = _plate("a", [(0.0, 0.0), (4.0, 0.0), (4.0, 4.0), (0.0, 4.0)], rate=1.5)
    b = _plate("b", [(2.0, 0.0), (6.0, 0.0), (6.0, 4.0), (2.0, 4.0)])

    result = fuse_plates([a, b], "a", "b", 0.0, ids=CounterIds("f"))

    assert result.success
    by_id = {plate.id: plate for plate in result.plates}
    fused = by_id[result.fused_id]
    assert fused.name == "A-B (Fused)"
    assert fused.parentPlateIds == ["a", "b"]
    assert fused.motion.eulerPole.rate == 1.5
    assert len(fused.polygons) == 1
    lons = [lon for lon, _ in fused.polygons[0].points]
    assert min(lons) == pytest.approx(0.0)
    assert max(lons) == pytest.approx(6.0)

    assert by_id["a"].deathTime == 0.0
    assert by_id["b"].deathTime == 0.0
    assert by_id["a"].events[-1].type == PlateEventType.fusion
    assert fused.events[0].type == PlateEventType.fusion

    weakness = [feature for feature in fused.features if feature.type == FeatureType.weakness]
    assert weakness
    assert [feature.id for feature in weakness] == result.weakness_ids
    assert all(feature.generatedAt == 0.0 for feature in weakness)
    assert weakness[0].properties["fusedFrom"] == ["A", "B"]


def test_fuse_without_weakness_features():
    a = _plate("a", [(0.0, 0.0), (4.0, 0.0), (4.0, 4.0), (0.0, 4.0)])
    b = _plate("b", [(2.0, 0.0), (6.0, 0.0), (6.0, 4.0), (2.0, 4.0)])

    result = fuse_plates([a, b], "a", "b", 0.0, ids=CounterIds("f"), add_weakness_features=False)

    assert result.success
    assert result.weakness_ids == []


def test_fuse_disjoint_plates_keeps_both_outlines():
    a = _plate("a", [(0.0, 0.0), (2.0, 0.0), (2.0, 2.0), (0.0, 2.0)])
    b = _plate("b", [(5.0, 0.0), (7.0, 0.0), (7.0, 2.0), (5.0, 2.0)])

    result = fuse_plates([a, b], "a", "b", 0.0, ids=CounterIds("f"), weakness_interval=1.0)

    fused = next(plate for plate in result.plates if plate.id == result.fused_id)
    assert len(fused.polygons) == 2
    weakness = [feature.position for feature in fused.features if feature.type == FeatureType.weakness]
    assert weakness[0] == (2.0, 0.0)
    assert weakness[-1] == (5.0, 0.0)
    assert math.hypot(weakness[1][0] - 2.0, weakness[1][1]) == pytest.approx(1.0)


def test_fuse_plates_straddling_the_antimeridian():
    a = _plate("a", [(170.0, -5.0), (178.0, -5.0), (178.0, 5.0), (170.0, 5.0)])
    b = _plate("b", [(176.0, -5.0), (-174.0, -5.0), (-174.0, 5.0), (176.0, 5.0)])

    result = fuse_plates([a, b], "a", "b", 0.0, ids=CounterIds("f"), weakness_interval=0.5)

    assert result.success
    fused = next(plate for plate in result.plates if plate.id == result.fused_id)
    assert len(fused.polygons) == 1
    points = fused.polygons[0].points
    assert all(-180.0 < lon <= 180.0 for lon, _ in points)
    unwrapped = unwrap_ring([*points, points[0]])
    assert ring_area_deg2(unwrapped) == pytest.approx(160.0, abs=1e-3)

    weakness = [feature.position for feature in fused.features if feature.type == FeatureType.weakness]
    assert weakness
    assert all(176.0 - 1e-6 <= lon <= 178.0 + 1e-6 for lon, _ in weakness)


def test_fuse_rejects_missing_or_identical_plates():
    a = _plate("a", [(0.0, 0.0), (2.0, 0.0), (2.0, 2.0), (0.0, 2.0)])

    missing = fuse_plates([a], "a", "zzz", 0.0, ids=CounterIds())
    assert not missing.success
    assert missing.error == "One or both plates not found"
    assert missing.plates == [a]

    same = fuse_plates([a], "a", "a", 0.0, ids=CounterIds())
    assert not same.success
    assert same.error == "Cannot fuse a plate with itself"
