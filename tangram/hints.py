"""Selection of the next target to hint and what is wrong with the nearest piece."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Collection, Dict, Optional, Sequence, Tuple

from .normalizer import PieceObservation
from .pieces import PieceType, Puzzle, TargetPiece
from .solver import Pose, RigidMapping
from .tracker import FailureReason
from .validator import OrientationCheck, PieceCheck, PieceValidator

# Lower is easier to place.
HINT_PRIORITY: Dict[PieceType, int] = {
    PieceType.SMALL_TRIANGLE: 0,
    PieceType.MEDIUM_TRIANGLE: 1,
    PieceType.SQUARE: 1,
    PieceType.LARGE_TRIANGLE: 2,
    PieceType.PARALLELOGRAM: 3,
}

FAILURE_ORDER = list(FailureReason)


@dataclass(frozen=True)
class HintCandidate:
    """A not-yet-validated piece with the mapping of the group it sits in.

    Pieces outside any established mapping carry an orientation-only check
    instead.
    """

    observation: PieceObservation
    group_id: Optional[str]
    mapping: Optional[RigidMapping]
    orientation: Optional[OrientationCheck] = None


@dataclass(frozen=True)
class HintSuggestion:
    target_id: str
    piece_type: PieceType
    piece_id: Optional[str]
    failure_reason: FailureReason
    group_id: Optional[str]
    target_pose: Optional[Pose]
    position_error: Optional[float] = None
    rotation_error: Optional[float] = None


class HintAdvisor:
    """Rank open targets by how close some piece already is to them."""

    def suggest(
        self,
        puzzle: Puzzle,
        validated_target_ids: Collection[str],
        candidates: Sequence[HintCandidate],
        validator: PieceValidator,
        reference_mapping: Optional[RigidMapping] = None,
        focus_piece_id: Optional[str] = None,
    ) -> Optional[HintSuggestion]:
        """Best unvalidated target, or ``None`` when the puzzle is complete."""
        order = {t.id: i for i, t in enumerate(puzzle.targets)}
        open_targets = [t for t in puzzle.targets if t.id not in validated_target_ids]
        if not open_targets:
            return None

        best: Optional[Tuple[Tuple[int, float, int, int, str], TargetPiece, HintCandidate, PieceCheck]] = None
        for target in open_targets:
            for candidate in candidates:
                obs = candidate.observation
                if obs.piece_type is not target.piece_type or candidate.mapping is None:
                    continue
                check = validator.check(obs, target, candidate.mapping)
                key = (
                    0 if obs.id == focus_piece_id else 1,
                    check.score,
                    HINT_PRIORITY[target.piece_type],
                    order[target.id],
                    obs.id,
                )
                if best is None or key < best[0]:
                    best = (key, target, candidate, check)

        if best is not None:
            _, target, candidate, check = best
            mapping = candidate.mapping
            return HintSuggestion(
                target_id=target.id,
                piece_type=target.piece_type,
                piece_id=candidate.observation.id,
                failure_reason=check.failure,
                group_id=candidate.group_id,
                target_pose=mapping.inverse_pose(target.position, target.rotation, target.mirrored),
                position_error=check.position_error,
                rotation_error=check.rotation_error,
            )

        oriented = self._oriented(open_targets, candidates, order, focus_piece_id)
        if oriented is not None:
            target, candidate = oriented
            check = candidate.orientation
            pose = None
            if reference_mapping is not None:
                pose = reference_mapping.inverse_pose(target.position, target.rotation, target.mirrored)
            return HintSuggestion(
                target_id=target.id,
                piece_type=target.piece_type,
                piece_id=candidate.observation.id,
                failure_reason=check.failure,
                group_id=candidate.group_id,
                target_pose=pose,
                rotation_error=check.rotation_error,
            )

        target = min(open_targets, key=lambda t: (HINT_PRIORITY[t.piece_type], order[t.id]))
        pose = None
        if reference_mapping is not None:
            pose = reference_mapping.inverse_pose(target.position, target.rotation, target.mirrored)
        return HintSuggestion(
            target_id=target.id,
            piece_type=target.piece_type,
            piece_id=None,
            failure_reason=FailureReason.NONE,
            group_id=None,
            target_pose=pose,
        )

    @staticmethod
    def _oriented(
        open_targets: Sequence[TargetPiece],
        candidates: Sequence[HintCandidate],
        order: Dict[str, int],
        focus_piece_id: Optional[str],
    ) -> Optional[Tuple[TargetPiece, HintCandidate]]:
        """Closest orientation-only candidate whose target is still open."""
        by_id = {t.id: t for t in open_targets}
        best: Optional[Tuple[Tuple[int, int, int, float, int, int, str], TargetPiece, HintCandidate]] = None
        for candidate in candidates:
            check = candidate.orientation
            if check is None or check.target_id not in by_id:
                continue
            target = by_id[check.target_id]
            key = (
                0 if candidate.observation.id == focus_piece_id else 1,
                0 if check.failure is not FailureReason.NONE else 1,
                FAILURE_ORDER.index(check.failure),
                check.rotation_error,
                HINT_PRIORITY[target.piece_type],
                order[target.id],
                candidate.observation.id,
            )
            if best is None or key < best[0]:
                best = (key, target, candidate)
        if best is None:
            return None
        return best[1], best[2]
