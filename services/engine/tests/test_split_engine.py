from __future__ import annotations

import pytest

from tectolite_engine.models import (
    EulerPole,
    Feature,
    FeatureType,
    MotionKeyframe,
    PlateMotion,
    PlateNotFoundError,
    PlateType,
    Polygon,
    TectonicPlate,
)
from tectolite_engine.modules.motion import calculate_plate_at_time
from tectolite_engine.modules.split_engine import (
    boundary_crossings,
    is_degenerate_ring,
    segment_intersection,
    split_plate,
    split_polygon_with_polyline,
)
from tectolite_engine.utils import CounterIds

SQUARE = [(-10.0, -10.0), (10.0, -10.0), (10.0, 10.0), (-10.0, 10.0)]
MERIDIAN_CUT = [(0.0, -20.0), (0.0, 20.0)]


def _plate(plate_id: str, points=SQUARE, *, pole: EulerPole | None = None, **extra) -> TectonicPlate:
    pole = pole or EulerPole()
    polygon = Polygon(id=f"{plate_id}-poly", points=list(points), riftEdgeIndices=extra.pop("rift_edges", []))
    features = extra.pop("features", [])
    return TectonicPlate(
        id=plate_id,
        name=plate_id.upper(),
        polygons=[polygon],
        features=features,
        initialPolygons=[polygon],
        initialFeatures=features,
        motion=PlateMotion(eulerPole=pole),
        motionKeyframes=[MotionKeyframe(time=0.0, eulerPole=pole, snapshotPolygons=[polygon], snapshotFeatures=features)],
        **extra,
    )


def _rift(plate_id: str, line) -> TectonicPlate:
    polygon = Polygon(id=f"{plate_id}-line", points=list(line), closed=False, riftEdgeIndices=[0])
    return TectonicPlate(
        id=plate_id,
        name=plate_id.upper(),
        type=PlateType.rift,
        polygons=[polygon],
        initialPolygons=[polygon],
        motionKeyframes=[MotionKeyframe(time=0.0, eulerPole=EulerPole(), snapshotPolygons=[polygon])],
    )


def _by_id(plates):
    return {plate.id: plate for plate in plates}


def test_segment_intersection_of_crossing_arcs():
    point = segment_intersection((-10.0, 0.0), (10.0, 0.0), (0.0, -10.0), (0.0, 10.0))
    assert point is not None
    assert point[0] == pytest.approx(0.0, abs=1e-9)
    assert point[1] == pytest.approx(0.0, abs=1e-9)

    assert segment_intersection((-10.0, 0.0), (10.0, 0.0), (20.0, -10.0), (20.0, 10.0)) is None


def test_boundary_crossings_are_ordered_along_polyline():
    crossings = boundary_crossings(SQUARE, MERIDIAN_CUT)
    assert [crossing.edge for crossing in crossings] == [0, 2]
    assert crossings[0].along < crossings[1].along


def test_split_polygon_assigns_left_to_positive_side_and_keeps_rift_edges():
    polygon = Polygon(id="poly", points=SQUARE, riftEdgeIndices=[1])

    rings = split_polygon_with_polyline(polygon, MERIDIAN_CUT)

    assert rings.right is not None
    assert all(lon <= 1e-9 for lon, _ in rings.left.points)
    assert all(lon >= -1e-9 for lon, _ in rings.right.points)
    assert len(rings.left.points) == 4
    assert len(rings.right.points) == 4
    # Edge 1 of the original square survives on the east half, cut edge is always a rift.
    assert rings.right.riftEdgeIndices == [1, 3]
    assert rings.left.riftEdgeIndices == [3]
    assert rings.right.points[1] == (10.0, -10.0)
    assert rings.right.points[2] == (10.0, 10.0)


def test_split_polygon_without_two_crossings_is_a_noop():
    polygon = Polygon(id="poly", points=SQUARE)

    outside = split_polygon_with_polyline(polygon, [(30.0, -20.0), (30.0, 20.0)])
    assert outside.left is polygon
    assert outside.right is None

    short = split_polygon_with_polyline(polygon, [(0.0, -20.0)])
    assert short.right is None


def test_degenerate_ring_detection():
    assert is_degenerate_ring([(0.0, 0.0), (0.0, 0.0), (1.0, 1.0)])
    assert not is_degenerate_ring(SQUARE)


def test_split_plate_kills_parent_and_conserves_features():
    features = [
        Feature(id="west", type=FeatureType.mountain, position=(-5.0, 0.0)),
        Feature(id="east", type=FeatureType.volcano, position=(5.0, 0.0)),
    ]
    plate = _plate("p", pole=EulerPole(position=(0.0, 90.0), rate=1.0), features=features)

    result = split_plate([plate], "p", MERIDIAN_CUT, 0.0, ids=CounterIds("s"))

    assert result.applied
    plates = _by_id(result.plates)
    assert plates["p"].deathTime == 0.0
    left = plates[result.left_id]
    right = plates[result.right_id]
    assert left.birthTime == right.birthTime == 0.0
    assert left.parentPlateIds == right.parentPlateIds == ["p"]
    assert left.name == "P (A)"
    assert right.name == "P (B)"
    assert right.color == "#D4AF37"
    assert [feature.id for feature in left.features] == ["west"]
    assert [feature.id for feature in right.features] == ["east"]
    assert left.motionKeyframes[0].eulerPole.rate == 0.0
    assert set(result.created_ids) == {result.left_id, result.right_id}


def test_split_plate_can_inherit_momentum():
    plate = _plate("p", pole=EulerPole(position=(0.0, 90.0), rate=2.5))

    result = split_plate([plate], "p", MERIDIAN_CUT, 0.0, ids=CounterIds("s"), inherit_momentum=True)

    plates = _by_id(result.plates)
    assert plates[result.left_id].motion.eulerPole.rate == 2.5
    assert plates[result.right_id].motionKeyframes[0].eulerPole.rate == 2.5


def test_split_plate_rejections_leave_plates_untouched():
    plate = _plate("p")
    rift = _rift("r", [(-20.0, 0.0), (20.0, 0.0)])
    unborn = _plate("u", birthTime=50.0)
    plates = [plate, rift, unborn]

    missed = split_plate(plates, "p", [(30.0, -20.0), (30.0, 20.0)], 0.0, ids=CounterIds())
    on_rift = split_plate(plates, "r", MERIDIAN_CUT, 0.0, ids=CounterIds())
    too_early = split_plate(plates, "u", MERIDIAN_CUT, 0.0, ids=CounterIds())
    too_short = split_plate(plates, "p", [(0.0, 0.0)], 0.0, ids=CounterIds())

    for result in (missed, on_rift, too_early, too_short):
        assert not result.applied
        assert result.plates == plates
        assert result.reason

    with pytest.raises(PlateNotFoundError):
        split_plate(plates, "missing", MERIDIAN_CUT, 0.0, ids=CounterIds())


def test_split_cascades_to_linked_children():
    parent = _plate("p", points=[(-20.0, -20.0), (20.0, -20.0), (20.0, 20.0), (-20.0, 20.0)])
    crossing_child = _plate("c", linkedToPlateId="p", linkTime=0.0)
    west_child = _plate(
        "w",
        points=[(-18.0, -5.0), (-12.0, -5.0), (-12.0, 5.0), (-18.0, 5.0)],
        linkedToPlateId="p",
        linkTime=0.0,
    )
    cut = [(0.0, -30.0), (0.0, 30.0)]

    result = split_plate([parent, crossing_child, west_child], "p", cut, 5.0, ids=CounterIds("s"))

    assert result.applied
    plates = _by_id(result.plates)
    assert plates["c"].deathTime == 5.0
    assert plates["w"].deathTime == 5.0

    child_halves = [plate for plate in result.plates if plate.parentPlateIds == ["c"]]
    assert len(child_halves) == 2
    assert {plate.linkedToPlateId for plate in child_halves} == {result.left_id, result.right_id}
    for half in child_halves:
        assert half.linkTime == 5.0
        parent_half = plates[half.linkedToPlateId]
        assert (half.center[0] < 0) == (parent_half.center[0] < 0)

    reborn = [plate for plate in result.plates if plate.parentPlateIds == ["w"]]
    assert len(reborn) == 1
    assert reborn[0].linkedToPlateId == result.left_id
    assert reborn[0].birthTime == 5.0
    assert reborn[0].name == "W"


def test_split_rebirths_grandchildren_from_their_split_time_position():
    parent = _plate("p", pole=EulerPole(position=(0.0, 90.0), rate=1.0))
    west = _plate("w", points=[(-40.0, -5.0), (-30.0, -5.0), (-30.0, 5.0), (-40.0, 5.0)], linkedToPlateId="p", linkTime=0.0)
    grand = _plate("g", points=[(-60.0, -5.0), (-50.0, -5.0), (-50.0, 5.0), (-60.0, 5.0)], linkedToPlateId="w", linkTime=0.0)
    plates = [parent, west, grand]
    before = calculate_plate_at_time(grand, 5.0, plates).polygons[0].points
    assert before[0][0] == pytest.approx(-55.0, abs=1e-6)

    result = split_plate(plates, "p", [(5.0, -30.0), (5.0, 30.0)], 5.0, ids=CounterIds("s"))

    assert result.applied
    plates_after = _by_id(result.plates)
    reborn_west = next(plate for plate in result.plates if plate.parentPlateIds == ["w"])
    reborn_grand = next(plate for plate in result.plates if plate.parentPlateIds == ["g"])
    assert reborn_west.linkedToPlateId == result.left_id
    assert reborn_grand.linkedToPlateId == reborn_west.id
    assert reborn_grand.linkTime == 5.0
    assert reborn_grand.birthTime == 5.0

    after = calculate_plate_at_time(reborn_grand, 5.0, result.plates).polygons[0].points
    for (lon_a, lat_a), (lon_b, lat_b) in zip(after, before):
        assert lon_a == pytest.approx(lon_b, abs=1e-6)
        assert lat_a == pytest.approx(lat_b, abs=1e-6)

    old_grand = plates_after["g"]
    assert old_grand.deathTime == 5.0
    assert old_grand.linkedToPlateId == "w"
    assert old_grand.linkTime == 0.0
    history = calculate_plate_at_time(old_grand, 3.0, result.plates).polygons[0].points
    assert history[0][0] == pytest.approx(-57.0, abs=1e-6)


def test_collapsed_child_ring_rolls_back_the_whole_split():
    rift = _rift("r", [(-20.0, 0.0), (20.0, 0.0)])
    plate = _plate("p", connectedRiftIds=["r"])
    # The child's west edge lies on the cut, so one of its halves has no area.
    edge_child = _plate("c", points=[(0.0, -5.0), (8.0, -5.0), (8.0, 5.0), (0.0, 5.0)], linkedToPlateId="p", linkTime=0.0)
    plates = [plate, rift, edge_child]

    result = split_plate(plates, "p", MERIDIAN_CUT, 0.0, ids=CounterIds("s"))

    assert not result.applied
    assert "zero-area" in result.reason
    assert result.plates == plates
    assert result.created_ids == []
    assert result.left_id is None


def _edges_on_meridian(polygon: Polygon) -> list[int]:
    points = polygon.points
    return [
        idx
        for idx in range(len(points))
        if abs(points[idx][0]) < 1e-9 and abs(points[(idx + 1) % len(points)][0]) < 1e-9
    ]


def test_rift_edges_survive_a_second_split():
    first = split_plate([_plate("p")], "p", MERIDIAN_CUT, 0.0, ids=CounterIds("s"))
    west = _by_id(first.plates)[first.left_id]
    assert west.polygons[0].riftEdgeIndices == [3]

    second = split_plate(first.plates, west.id, [(-20.0, 0.0), (5.0, 0.0)], 0.0, ids=CounterIds("t"))

    assert second.applied
    quarters = _by_id(second.plates)
    north = quarters[second.left_id].polygons[0]
    south = quarters[second.right_id].polygons[0]
    assert all(lat >= -1e-9 for _, lat in north.points)
    assert all(lat <= 1e-9 for _, lat in south.points)
    assert north.riftEdgeIndices == [0, 3]
    assert south.riftEdgeIndices == [2, 3]
    for quarter in (north, south):
        assert _edges_on_meridian(quarter)
        assert set(_edges_on_meridian(quarter)) <= set(quarter.riftEdgeIndices)


def test_split_through_connected_rift_creates_l_rifts():
    rift = _rift("r", [(-20.0, 0.0), (20.0, 0.0)])
    plate = _plate("p", connectedRiftIds=["r"])

    result = split_plate([plate, rift], "p", MERIDIAN_CUT, 0.0, ids=CounterIds("s"))

    assert result.applied
    plates = _by_id(result.plates)
    l_rifts = [candidate for candidate in result.plates if candidate.parentPlateIds == ["r"]]
    assert sorted(candidate.name for candidate in l_rifts) == ["R (LA)", "R (LB)"]
    assert all(candidate.type == PlateType.rift for candidate in l_rifts)

    by_name = {candidate.name: candidate for candidate in l_rifts}
    assert plates[result.left_id].connectedRiftIds == [by_name["R (LA)"].id]
    assert plates[result.right_id].connectedRiftIds == [by_name["R (LB)"].id]
    assert set(plates["p"].connectedRiftIds) == {by_name["R (LA)"].id, by_name["R (LB)"].id}

    west_line = by_name["R (LA)"].polygons[0].points
    assert west_line[0] == (-20.0, 0.0)
    assert west_line[1][0] == pytest.approx(0.0, abs=1e-9)
