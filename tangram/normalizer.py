"""Conversion of raw touch/vision pose records into canonical observations."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .geometry import decompose_affine, normalize_angle
from .pieces import PieceType

logger = logging.getLogger(__name__)

_MIRROR_KEYS = ("mirrored", "isMirrored", "is_mirrored")


class MalformedRecord(ValueError):
    """Raised internally for a record that cannot be normalized."""


@dataclass(frozen=True)
class PieceObservation:
    """Canonical pose of one physical piece in observed space."""

    id: str
    piece_type: PieceType
    position: Tuple[float, float]
    rotation: float
    mirrored: bool = False
    timestamp: float = 0.0
    velocity: Optional[Tuple[float, float]] = None
    confidence: float = 1.0

    @property
    def speed(self) -> Optional[float]:
        if self.velocity is None:
            return None
        return math.hypot(self.velocity[0], self.velocity[1])

    def moved(self, position: Tuple[float, float], rotation: float, mirrored: bool) -> "PieceObservation":
        """Copy with a different pose."""
        return replace(self, position=position, rotation=normalize_angle(rotation), mirrored=mirrored)


def _finite(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedRecord(f"{name} is not a number: {value!r}") from exc
    if not math.isfinite(number):
        raise MalformedRecord(f"{name} is not finite: {value!r}")
    return number


def _pair(value: Any, name: str) -> Tuple[float, float]:
    if isinstance(value, Mapping):
        if "x" not in value or "y" not in value:
            raise MalformedRecord(f"{name} needs x and y")
        return _finite(value["x"], name), _finite(value["y"], name)
    try:
        items = list(value)
    except TypeError as exc:
        raise MalformedRecord(f"{name} must be a 2-vector: {value!r}") from exc
    if len(items) != 2:
        raise MalformedRecord(f"{name} must be a 2-vector: {value!r}")
    return _finite(items[0], name), _finite(items[1], name)


class PoseNormalizer:
    """Turn heterogeneous pose records into ``PieceObservation`` objects."""

    def __init__(self, min_confidence: float = 0.0) -> None:
        self.min_confidence = float(min_confidence)

    def parse(self, record: Mapping[str, Any], default_timestamp: float = 0.0) -> PieceObservation:
        """Strict parse; raises ``MalformedRecord`` for missing or invalid fields."""
        if not isinstance(record, Mapping):
            raise MalformedRecord(f"record must be a mapping, got {type(record).__name__}")
        if record.get("id") in (None, ""):
            raise MalformedRecord("missing id")
        if "type" not in record:
            raise MalformedRecord("missing type")
        try:
            piece_type = PieceType.parse(record["type"])
        except ValueError as exc:
            raise MalformedRecord(str(exc)) from exc

        mirrored: Optional[bool] = None
        if "transform" in record:
            values = record["transform"]
            if not isinstance(values, (list, tuple)) or len(values) != 6:
                raise MalformedRecord("transform must be [a, b, c, d, tx, ty]")
            a, b, c, d, tx, ty = (_finite(v, "transform") for v in values)
            if abs(a * d - b * c) < 1e-12:
                raise MalformedRecord("transform is singular")
            rotation, mirrored = decompose_affine(a, b, c, d)
            position = (tx, ty)
            if "position" in record:
                position = _pair(record["position"], "position")
        else:
            if "position" in record:
                position = _pair(record["position"], "position")
            elif "x" in record and "y" in record:
                position = (_finite(record["x"], "x"), _finite(record["y"], "y"))
            else:
                raise MalformedRecord("missing position")
            if "rotation" in record:
                rotation = _finite(record["rotation"], "rotation")
            elif "rotation_deg" in record:
                rotation = math.radians(_finite(record["rotation_deg"], "rotation_deg"))
            else:
                raise MalformedRecord("missing rotation")

        for key in _MIRROR_KEYS:
            if key in record:
                mirrored = bool(record[key])
                break
        mirrored = bool(mirrored)
        if mirrored and not piece_type.is_mirrorable:
            # A flipped achiral piece is the same shape turned by twice its feature offset.
            rotation -= 2.0 * piece_type.feature_offset
            mirrored = False

        velocity = None
        if record.get("velocity") is not None:
            velocity = _pair(record["velocity"], "velocity")
        confidence = 1.0
        if record.get("confidence") is not None:
            confidence = min(1.0, max(0.0, _finite(record["confidence"], "confidence")))
        timestamp = default_timestamp
        if record.get("timestamp") is not None:
            timestamp = _finite(record["timestamp"], "timestamp")

        return PieceObservation(
            id=str(record["id"]),
            piece_type=piece_type,
            position=position,
            rotation=normalize_angle(rotation),
            mirrored=mirrored,
            timestamp=timestamp,
            velocity=velocity,
            confidence=confidence,
        )

    def normalize(
        self, record: Union[Mapping[str, Any], PieceObservation], default_timestamp: float = 0.0
    ) -> Optional[PieceObservation]:
        """Return an observation, or ``None`` after logging why the record was dropped."""
        if isinstance(record, PieceObservation):
            observation = replace(record, rotation=normalize_angle(record.rotation))
        else:
            try:
                observation = self.parse(record, default_timestamp)
            except MalformedRecord as exc:
                logger.warning("Dropping malformed pose record %r: %s", record, exc)
                return None
        if observation.confidence < self.min_confidence:
            logger.debug(
                "Ignoring %s: confidence %.2f below %.2f",
                observation.id,
                observation.confidence,
                self.min_confidence,
            )
            return None
        return observation

    def normalize_frame(
        self,
        records: Iterable[Union[Mapping[str, Any], PieceObservation]],
        timestamp: Optional[float] = None,
    ) -> List[PieceObservation]:
        """Normalize a whole frame, keeping one observation per piece id."""
        default_ts = 0.0 if timestamp is None else float(timestamp)
        by_id: Dict[str, PieceObservation] = {}
        for record in records:
            observation = self.normalize(record, default_ts)
            if observation is None:
                continue
            previous = by_id.get(observation.id)
            if previous is not None:
                logger.warning("Duplicate observation for piece %s in one frame", observation.id)
                if previous.confidence > observation.confidence:
                    continue
            by_id[observation.id] = observation
        return list(by_id.values())
