"""Utility helpers for reproducible tangram validation experiments."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .geometry import REFLECT_X, normalize_angle, rotation_matrix
from .pieces import PieceType, Puzzle, TargetPiece

# Small-triangle leg of the standard layout; the assembled square is 200 x 200.
STANDARD_UNIT = 50.0 * math.sqrt(2.0)


def set_random_seed(seed: int = 42) -> np.random.Generator:
    """Create a deterministic numpy random generator."""
    return np.random.default_rng(seed)


def standard_tangram(puzzle_id: str = "square") -> Puzzle:
    """The classic seven-piece square, centroids and rotations in a 200 x 200 frame."""
    deg = math.radians
    third = 100.0 / 3.0
    return Puzzle(
        id=puzzle_id,
        targets=(
            TargetPiece("large-1", PieceType.LARGE_TRIANGLE, (100.0, third), deg(-135.0)),
            TargetPiece("large-2", PieceType.LARGE_TRIANGLE, (third, 100.0), deg(135.0)),
            TargetPiece("medium", PieceType.MEDIUM_TRIANGLE, (500.0 / 3.0, 500.0 / 3.0), deg(180.0)),
            TargetPiece("small-1", PieceType.SMALL_TRIANGLE, (400.0 / 3.0, 100.0), deg(-45.0)),
            TargetPiece("small-2", PieceType.SMALL_TRIANGLE, (50.0, 550.0 / 3.0), deg(45.0)),
            TargetPiece("square", PieceType.SQUARE, (100.0, 150.0), deg(45.0)),
            TargetPiece("parallelogram", PieceType.PARALLELOGRAM, (175.0, 75.0), deg(-90.0), mirrored=True),
        ),
    )


def random_rigid_transform(
    rng: np.random.Generator, extent: float = 600.0
) -> Tuple[float, Tuple[float, float]]:
    """Random rotation in [-pi, pi) and translation in a square of side ``2 * extent``."""
    theta = float(rng.uniform(-math.pi, math.pi))
    tx, ty = rng.uniform(-extent, extent, size=2)
    return theta, (float(tx), float(ty))


def place_targets(
    puzzle: Puzzle,
    rotation: float = 0.0,
    translation: Sequence[float] = (0.0, 0.0),
    mirror: bool = False,
    timestamp: Optional[float] = None,
    prefix: str = "piece-",
) -> List[Dict[str, Any]]:
    """Raw pose records of pieces sitting exactly on their targets, moved by a rigid transform.

    With ``mirror`` the whole assembly is reflected across the x axis before
    rotating, as if built face down.
    """
    linear = rotation_matrix(rotation)
    if mirror:
        linear = linear @ REFLECT_X
    offset = np.asarray(translation, dtype=np.float64)
    records: List[Dict[str, Any]] = []
    for target in puzzle.targets:
        position = linear @ np.asarray(target.position) + offset
        if mirror:
            piece_rotation = rotation - target.rotation
        else:
            piece_rotation = target.rotation + rotation
        record: Dict[str, Any] = {
            "id": f"{prefix}{target.id}",
            "type": target.piece_type.value,
            "position": [float(position[0]), float(position[1])],
            "rotation": normalize_angle(piece_rotation),
            "mirrored": target.mirrored != mirror,
        }
        if timestamp is not None:
            record["timestamp"] = timestamp
        records.append(record)
    return records


def jitter_records(
    records: Sequence[Dict[str, Any]],
    rng: np.random.Generator,
    position_sigma: float = 1.0,
    rotation_sigma_deg: float = 0.5,
) -> List[Dict[str, Any]]:
    """Copy of ``records`` with Gaussian pose noise, as a detector would report."""
    noisy: List[Dict[str, Any]] = []
    for record in records:
        copy = dict(record)
        x, y = record["position"]
        dx, dy = rng.normal(0.0, position_sigma, size=2)
        copy["position"] = [float(x + dx), float(y + dy)]
        copy["rotation"] = float(record["rotation"] + math.radians(rng.normal(0.0, rotation_sigma_deg)))
        noisy.append(copy)
    return noisy


def shuffle_records(
    records: Sequence[Dict[str, Any]], seed: int = 42
) -> Tuple[List[Dict[str, Any]], np.ndarray]:
    """Return a shuffled copy of records and the applied permutation."""
    rng = set_random_seed(seed)
    order = rng.permutation(len(records))
    return [records[i] for i in order], order


def move_record(record: Dict[str, Any], dx: float = 0.0, dy: float = 0.0, **changes: Any) -> Dict[str, Any]:
    """Copy of one record shifted by ``(dx, dy)`` with other fields overridden."""
    copy = dict(record)
    x, y = record["position"]
    copy["position"] = [x + dx, y + dy]
    copy.update(changes)
    return copy
