"""Symmetry-aware comparison of one mapped observation against one target."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .geometry import angular_distance, feature_angle
from .normalizer import PieceObservation
from .pieces import TargetPiece
from .solver import RigidMapping
from .tracker import FailureReason


@dataclass(frozen=True)
class ToleranceSet:
    """Position tolerance in scene units and rotation tolerance in degrees."""

    position: float
    rotation_deg: float

    def __post_init__(self) -> None:
        if self.position <= 0 or self.rotation_deg <= 0:
            raise ValueError(f"Tolerances must be positive, got {self.position}, {self.rotation_deg}")

    @property
    def rotation(self) -> float:
        return math.radians(self.rotation_deg)


@dataclass(frozen=True)
class PieceCheck:
    """Result of validating one observation against one target."""

    piece_id: str
    target_id: str
    position_error: float
    rotation_error: float
    position_ok: bool
    rotation_ok: bool
    mirror_ok: bool
    score: float

    @property
    def passed(self) -> bool:
        return self.position_ok and self.rotation_ok and self.mirror_ok

    @property
    def failure(self) -> FailureReason:
        """Highest-priority reason this check failed."""
        if not self.mirror_ok:
            return FailureReason.NEEDS_FLIP
        if not self.rotation_ok:
            return FailureReason.WRONG_ROTATION
        if not self.position_ok:
            return FailureReason.WRONG_POSITION
        return FailureReason.NONE


@dataclass(frozen=True)
class OrientationCheck:
    """Rotation-only comparison of an unmapped piece with its best-aligned target.

    Used while a piece's group has no established mapping: nothing about its
    position can be judged yet, but its orientation on the table can.
    """

    piece_id: str
    target_id: str
    rotation_error: float
    mirror_ok: bool
    oriented: bool
    failure: FailureReason


class PieceValidator:
    """Compare mapped poses with targets under a tolerance set."""

    def __init__(self, tolerances: ToleranceSet) -> None:
        self.tolerances = tolerances

    def check(self, observation: PieceObservation, target: TargetPiece, mapping: RigidMapping) -> PieceCheck:
        """Validate ``observation`` against ``target`` through ``mapping``."""
        if observation.piece_type is not target.piece_type:
            raise ValueError(
                f"Cannot compare {observation.piece_type.value} piece {observation.id} "
                f"with {target.piece_type.value} target {target.id}"
            )
        position, rotation, mirrored = mapping.apply(observation)
        position_error = math.hypot(position[0] - target.position[0], position[1] - target.position[1])
        piece_type = target.piece_type
        rotation_error = float(
            angular_distance(
                feature_angle(rotation, piece_type, mirrored),
                feature_angle(target.rotation, piece_type, target.mirrored),
                piece_type.symmetry_period,
            )
        )
        mirror_ok = not piece_type.is_mirrorable or mirrored == target.mirrored
        tol = self.tolerances
        score = position_error / tol.position + rotation_error / tol.rotation
        if not mirror_ok:
            score += 1.0
        return PieceCheck(
            piece_id=observation.id,
            target_id=target.id,
            position_error=position_error,
            rotation_error=rotation_error,
            position_ok=position_error <= tol.position,
            rotation_ok=rotation_error <= tol.rotation,
            mirror_ok=mirror_ok,
            score=score,
        )

    def rank(
        self, observation: PieceObservation, targets: Sequence[TargetPiece], mapping: RigidMapping
    ) -> List[PieceCheck]:
        """Checks against every same-type target, best score first."""
        checks = [
            self.check(observation, target, mapping)
            for target in targets
            if target.piece_type is observation.piece_type
        ]
        return sorted(checks, key=lambda c: (c.score, c.target_id))

    def closest(
        self, observation: PieceObservation, targets: Sequence[TargetPiece], mapping: RigidMapping
    ) -> Optional[PieceCheck]:
        """Best-scoring check, or ``None`` when no target has the piece's type."""
        ranked = self.rank(observation, targets, mapping)
        return ranked[0] if ranked else None

    def orientation(
        self,
        observation: PieceObservation,
        targets: Sequence[TargetPiece],
        tolerance_deg: float = 5.0,
        nudge_upper_deg: float = 45.0,
    ) -> Optional[OrientationCheck]:
        """Compare feature angles directly, without a mapping.

        The same-type target with the smallest symmetric rotation error is
        picked. A wrong chirality reports ``NEEDS_FLIP``. A rotation error
        between ``tolerance_deg`` and ``nudge_upper_deg`` reports
        ``WRONG_ROTATION``. Anything further off is too far to nudge and
        reports ``NONE``.
        """
        piece_type = observation.piece_type
        feature = feature_angle(observation.rotation, piece_type, observation.mirrored)
        best: Optional[Tuple[float, TargetPiece]] = None
        for target in targets:
            if target.piece_type is not piece_type:
                continue
            error = float(
                angular_distance(
                    feature,
                    feature_angle(target.rotation, piece_type, target.mirrored),
                    piece_type.symmetry_period,
                )
            )
            if best is None or error < best[0]:
                best = (error, target)
        if best is None:
            return None

        error, target = best
        mirror_ok = not piece_type.is_mirrorable or observation.mirrored == target.mirrored
        rotation_ok = error <= math.radians(tolerance_deg)
        if not mirror_ok:
            failure = FailureReason.NEEDS_FLIP
        elif not rotation_ok and error < math.radians(nudge_upper_deg):
            failure = FailureReason.WRONG_ROTATION
        else:
            failure = FailureReason.NONE
        return OrientationCheck(
            piece_id=observation.id,
            target_id=target.id,
            rotation_error=error,
            mirror_ok=mirror_ok,
            oriented=mirror_ok and rotation_ok,
            failure=failure,
        )
