"""Planar geometry helpers shared by the validation pipeline.

Angles are radians throughout. Poses use the convention that a mirrored
shape is the canonical shape reflected across its local x axis and then
rotated, i.e. ``R(theta) @ F @ v`` with ``F = diag(1, -1)``.
"""

from __future__ import annotations

import math
from typing import Tuple, Union

import numpy as np

from .pieces import PieceType

ArrayLike = Union[float, np.ndarray]

TWO_PI = 2.0 * math.pi
REFLECT_X = np.array([[1.0, 0.0], [0.0, -1.0]], dtype=np.float64)


def normalize_angle(angle: ArrayLike) -> ArrayLike:
    """Wrap angles into (-pi, pi]."""
    wrapped = np.mod(-np.asarray(angle, dtype=np.float64) + math.pi, TWO_PI)
    result = math.pi - wrapped
    if np.ndim(result) == 0:
        return float(result)
    return result


def angle_difference(a: ArrayLike, b: ArrayLike, period: float = TWO_PI) -> ArrayLike:
    """Signed smallest difference a - b modulo ``period``, in (-period/2, period/2]."""
    half = period / 2.0
    diff = np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)
    wrapped = half - np.mod(half - diff, period)
    if np.ndim(wrapped) == 0:
        return float(wrapped)
    return wrapped


def angular_distance(a: ArrayLike, b: ArrayLike, period: float = TWO_PI) -> ArrayLike:
    """Absolute symmetric angular distance."""
    return np.abs(angle_difference(a, b, period))


def feature_angle(rotation: ArrayLike, piece_type: PieceType, mirrored: bool) -> ArrayLike:
    """Rotation of the piece's canonical feature; the offset flips for mirrored poses."""
    offset = piece_type.feature_offset
    return rotation + (-offset if mirrored else offset)


def rotation_matrix(theta: float) -> np.ndarray:
    c, s = math.cos(theta), math.sin(theta)
    return np.array([[c, -s], [s, c]], dtype=np.float64)


def rotation_stack(thetas: np.ndarray) -> np.ndarray:
    """Return ``(K, 2, 2)`` rotation matrices for a vector of angles."""
    c = np.cos(thetas)
    s = np.sin(thetas)
    return np.stack([np.stack([c, -s], axis=-1), np.stack([s, c], axis=-1)], axis=-2)


def decompose_affine(a: float, b: float, c: float, d: float) -> Tuple[float, bool]:
    """Split a 2x2 linear part ``[[a, c], [b, d]]`` into rotation and mirror flag.

    A negative determinant means the transform contains a reflection. The
    rotation is read from the first column, which is unaffected by the
    x-axis reflection convention.
    """
    det = a * d - b * c
    return normalize_angle(math.atan2(b, a)), det < 0.0


def canonical_vertices(piece_type: PieceType, unit: float = 50.0) -> np.ndarray:
    """Centroid-centred vertices of the unrotated, unmirrored piece."""
    root2 = math.sqrt(2.0)
    if piece_type is PieceType.SQUARE:
        verts = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])
    elif piece_type is PieceType.PARALLELOGRAM:
        verts = np.array(
            [[0.0, 0.0], [root2, 0.0], [root2 / 2.0, root2 / 2.0], [-root2 / 2.0, root2 / 2.0]]
        )
    else:
        leg = {
            PieceType.SMALL_TRIANGLE: 1.0,
            PieceType.MEDIUM_TRIANGLE: root2,
            PieceType.LARGE_TRIANGLE: 2.0,
        }[piece_type]
        verts = np.array([[0.0, 0.0], [leg, 0.0], [0.0, leg]])
    verts = verts * unit
    return verts - verts.mean(axis=0)


def piece_polygon(
    piece_type: PieceType,
    position: Tuple[float, float],
    rotation: float,
    mirrored: bool = False,
    unit: float = 50.0,
) -> np.ndarray:
    """World-space vertices of a posed piece."""
    verts = canonical_vertices(piece_type, unit)
    if mirrored:
        verts = verts @ REFLECT_X.T
    return verts @ rotation_matrix(rotation).T + np.asarray(position, dtype=np.float64)


def polygon_area(vertices: np.ndarray) -> float:
    """Unsigned shoelace area."""
    x = vertices[:, 0]
    y = vertices[:, 1]
    return 0.5 * abs(float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))))
