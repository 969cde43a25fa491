from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

from ..models import Coordinate

Vector = np.ndarray

ZERO = np.zeros(3)


def to_vector(coord: Coordinate) -> Vector:
    lon = math.radians(coord[0])
    lat = math.radians(coord[1])
    cos_lat = math.cos(lat)
    return np.array([cos_lat * math.cos(lon), cos_lat * math.sin(lon), math.sin(lat)], dtype=np.float64)


def to_coord(vector: Vector) -> Coordinate:
    z = float(np.clip(vector[2], -1.0, 1.0))
    lat = math.degrees(math.asin(z))
    lon = math.degrees(math.atan2(float(vector[1]), float(vector[0])))
    return (lon, lat)


def cross(a: Vector, b: Vector) -> Vector:
    return np.cross(a, b)


def dot(a: Vector, b: Vector) -> float:
    return float(np.dot(a, b))


def normalize(vector: Vector) -> Vector:
    length = float(np.linalg.norm(vector))
    if length == 0.0:
        return np.zeros(3)
    return vector / length


def rotate(vector: Vector, axis: Vector, angle: float) -> Vector:
    # Rodrigues: v cos + (k x v) sin + k (k . v)(1 - cos), k unit length.
    k = normalize(axis)
    cos_a = math.cos(angle)
    sin_a = math.sin(angle)
    return vector * cos_a + np.cross(k, vector) * sin_a + k * float(np.dot(k, vector)) * (1.0 - cos_a)


def rotate_point(coord: Coordinate, axis: Vector, angle: float) -> Coordinate:
    return to_coord(rotate(to_vector(coord), axis, angle))


def angular_distance(a: Vector, b: Vector) -> float:
    return math.acos(max(-1.0, min(1.0, dot(normalize(a), normalize(b)))))


def spherical_centroid(points: Sequence[Coordinate]) -> Coordinate:
    if not points:
        return (0.0, 0.0)
    if len(points) == 1:
        return (float(points[0][0]), float(points[0][1]))
    total = np.zeros(3)
    for point in points:
        total = total + to_vector(point)
    if float(np.linalg.norm(total)) < 1e-12:
        # Antipodal cancellation has no meaningful mean.
        return (float(points[0][0]), float(points[0][1]))
    return to_coord(normalize(total))


def vector_area(points: Iterable[Coordinate]) -> Vector:
    vectors = [to_vector(point) for point in points]
    total = np.zeros(3)
    for idx, vector in enumerate(vectors):
        total = total + np.cross(vector, vectors[(idx + 1) % len(vectors)])
    return total


def wrap_lon(lon: float) -> float:
    wrapped = ((lon + 180.0) % 360.0) - 180.0
    if wrapped == -180.0 and lon > 0:
        return 180.0
    return wrapped


@dataclass(frozen=True)
class Quaternion:
    w: float
    x: float
    y: float
    z: float

    @classmethod
    def identity(cls) -> "Quaternion":
        return cls(1.0, 0.0, 0.0, 0.0)


def quat_multiply(a: Quaternion, b: Quaternion) -> Quaternion:
    return Quaternion(
        w=a.w * b.w - a.x * b.x - a.y * b.y - a.z * b.z,
        x=a.w * b.x + a.x * b.w + a.y * b.z - a.z * b.y,
        y=a.w * b.y - a.x * b.z + a.y * b.w + a.z * b.x,
        z=a.w * b.z + a.x * b.y - a.y * b.x + a.z * b.w,
    )


def quat_from_axis_angle(axis: Vector, angle: float) -> Quaternion:
    k = normalize(axis)
    half = angle / 2.0
    s = math.sin(half)
    return Quaternion(w=math.cos(half), x=float(k[0]) * s, y=float(k[1]) * s, z=float(k[2]) * s)


def axis_angle_from_quat(q: Quaternion) -> tuple[Vector, float]:
    w = max(-1.0, min(1.0, q.w))
    angle = 2.0 * math.acos(w)
    s = math.sqrt(max(0.0, 1.0 - w * w))
    if s < 0.001:
        return np.array([1.0, 0.0, 0.0]), 0.0
    return np.array([q.x / s, q.y / s, q.z / s]), angle
