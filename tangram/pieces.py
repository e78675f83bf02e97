"""Tangram piece catalogue and target puzzle definitions."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


class PieceType(str, Enum):
    """Shape kinds of the seven-piece set."""

    SMALL_TRIANGLE = "smallTriangle"
    MEDIUM_TRIANGLE = "mediumTriangle"
    LARGE_TRIANGLE = "largeTriangle"
    SQUARE = "square"
    PARALLELOGRAM = "parallelogram"

    @property
    def is_triangle(self) -> bool:
        return self in (
            PieceType.SMALL_TRIANGLE,
            PieceType.MEDIUM_TRIANGLE,
            PieceType.LARGE_TRIANGLE,
        )

    @property
    def is_mirrorable(self) -> bool:
        """Only the parallelogram is chiral."""
        return self is PieceType.PARALLELOGRAM

    @property
    def symmetry_period(self) -> float:
        """Rotation after which the piece looks identical."""
        if self is PieceType.SQUARE:
            return math.pi / 2.0
        if self is PieceType.PARALLELOGRAM:
            return math.pi
        return 2.0 * math.pi

    @property
    def symmetry_order(self) -> int:
        return int(round(2.0 * math.pi / self.symmetry_period))

    @property
    def feature_offset(self) -> float:
        """Angle between the canonical zero orientation and the compared feature."""
        return math.pi / 4.0 if self.is_triangle else 0.0

    @classmethod
    def parse(cls, value: Union[str, "PieceType"]) -> "PieceType":
        """Parse canonical, instance-suffixed or snake_case type names."""
        if isinstance(value, PieceType):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Piece type must be a string, got {type(value).__name__}")
        text = value.strip().rstrip("0123456789")
        key = re.sub(r"[_\-\s]", "", text).lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ValueError(f"Unknown piece type: {value!r}")


# Standard set composition used when authoring a full tangram.
STANDARD_PIECE_COUNTS: Dict[PieceType, int] = {
    PieceType.SMALL_TRIANGLE: 2,
    PieceType.MEDIUM_TRIANGLE: 1,
    PieceType.LARGE_TRIANGLE: 2,
    PieceType.SQUARE: 1,
    PieceType.PARALLELOGRAM: 1,
}


@dataclass(frozen=True)
class TargetPiece:
    """One slot of the target silhouette in puzzle-local coordinates."""

    id: str
    piece_type: PieceType
    position: Tuple[float, float]
    rotation: float
    mirrored: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TargetPiece":
        """Build a target from a puzzle-file entry."""
        from .geometry import decompose_affine, normalize_angle

        if "id" not in data or "type" not in data:
            raise ValueError(f"Target piece needs 'id' and 'type': {dict(data)}")
        piece_type = PieceType.parse(data["type"])
        mirrored = bool(data.get("mirrored", False))
        if "transform" in data:
            a, b, c, d, tx, ty = (float(v) for v in data["transform"])
            rotation, mirrored = decompose_affine(a, b, c, d)
            position = (tx, ty)
        else:
            if "position" not in data:
                raise ValueError(f"Target piece {data['id']!r} has no position")
            x, y = data["position"]
            position = (float(x), float(y))
            if "rotation_deg" in data:
                rotation = math.radians(float(data["rotation_deg"]))
            else:
                rotation = float(data.get("rotation", 0.0))
        if not piece_type.is_mirrorable and mirrored:
            rotation -= 2.0 * piece_type.feature_offset
            mirrored = False
        return cls(
            id=str(data["id"]),
            piece_type=piece_type,
            position=position,
            rotation=normalize_angle(rotation),
            mirrored=mirrored,
        )


@dataclass(frozen=True)
class Puzzle:
    """Ordered target set making up one silhouette."""

    id: str
    targets: Tuple[TargetPiece, ...]
    _by_id: Dict[str, TargetPiece] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.targets:
            raise ValueError(f"Puzzle {self.id!r} has no target pieces")
        by_id: Dict[str, TargetPiece] = {}
        for target in self.targets:
            if target.id in by_id:
                raise ValueError(f"Duplicate target id in puzzle {self.id!r}: {target.id}")
            by_id[target.id] = target
        object.__setattr__(self, "targets", tuple(self.targets))
        object.__setattr__(self, "_by_id", by_id)

    def __len__(self) -> int:
        return len(self.targets)

    def target(self, target_id: str) -> TargetPiece:
        """Return the target with the given id."""
        try:
            return self._by_id[target_id]
        except KeyError as exc:
            raise ValueError(f"Unknown target id: {target_id}") from exc

    def get(self, target_id: Optional[str]) -> Optional[TargetPiece]:
        """Target with ``target_id``, or ``None`` when absent."""
        if target_id is None:
            return None
        return self._by_id.get(target_id)

    def targets_of_type(self, piece_type: PieceType) -> List[TargetPiece]:
        """Targets of one shape kind, in puzzle order."""
        return [t for t in self.targets if t.piece_type is piece_type]

    def has_type(self, piece_type: PieceType) -> bool:
        return any(t.piece_type is piece_type for t in self.targets)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Puzzle":
        """Build a puzzle from the decoded JSON document."""
        pieces = data.get("pieces")
        if not isinstance(pieces, list):
            raise ValueError("Puzzle document needs a 'pieces' list")
        targets = tuple(TargetPiece.from_dict(entry) for entry in pieces)
        return cls(id=str(data.get("id", "puzzle")), targets=targets)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Puzzle":
        """Load a puzzle JSON file."""
        with open(path, "r", encoding="utf-8") as handle:
            return cls.from_dict(json.load(handle))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pieces": [
                {
                    "id": t.id,
                    "type": t.piece_type.value,
                    "position": [t.position[0], t.position[1]],
                    "rotation": t.rotation,
                    "mirrored": t.mirrored,
                }
                for t in self.targets
            ],
        }
