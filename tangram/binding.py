"""Exclusive assignment of observed piece instances to target slots."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

from .normalizer import PieceObservation
from .pieces import Puzzle, TargetPiece
from .solver import RigidMapping
from .tracker import Evidence, FailureReason
from .validator import PieceCheck, PieceValidator

logger = logging.getLogger(__name__)


@dataclass
class BindingConfig:
    """Score margin a new target must win by before a piece switches to it."""

    rebind_margin: float = 0.25

    def __post_init__(self) -> None:
        if self.rebind_margin < 0:
            raise ValueError(f"rebind_margin must be >= 0, got {self.rebind_margin}")


@dataclass(frozen=True)
class BindingDecision:
    """Planned outcome for one piece in one frame."""

    piece_id: str
    evidence: Evidence
    target_id: Optional[str] = None
    check: Optional[PieceCheck] = None
    failure: FailureReason = FailureReason.NONE
    ambiguous: bool = False


class InstanceBinder:
    """Owns the target -> piece consumption map for one puzzle."""

    def __init__(self, config: Optional[BindingConfig] = None) -> None:
        self.config = config or BindingConfig()
        self._owner: Dict[str, str] = {}
        self._bound: Dict[str, str] = {}

    @property
    def consumed(self) -> FrozenSet[str]:
        """Target ids currently bound to some piece."""
        return frozenset(self._owner)

    def owner_of(self, target_id: str) -> Optional[str]:
        """Piece bound to ``target_id``, if any."""
        return self._owner.get(target_id)

    def bound_target(self, piece_id: str) -> Optional[str]:
        """Target ``piece_id`` is bound to, if any."""
        return self._bound.get(piece_id)

    def bindings(self) -> Dict[str, str]:
        """Copy of the piece -> target map."""
        return dict(self._bound)

    def is_available(self, target_id: str, piece_id: Optional[str] = None) -> bool:
        """True when ``target_id`` is free or already held by ``piece_id``."""
        owner = self._owner.get(target_id)
        return owner is None or owner == piece_id

    def bind(self, piece_id: str, target_id: str) -> None:
        """Bind ``piece_id`` to ``target_id``, releasing its previous target."""
        owner = self._owner.get(target_id)
        if owner is not None and owner != piece_id:
            raise ValueError(f"Target {target_id} is already bound to piece {owner}")
        self.release(piece_id)
        self._owner[target_id] = piece_id
        self._bound[piece_id] = target_id

    def release(self, piece_id: str) -> Optional[str]:
        """Unbind ``piece_id`` and return the target it held."""
        target_id = self._bound.pop(piece_id, None)
        if target_id is not None:
            self._owner.pop(target_id, None)
        return target_id

    def clear(self) -> None:
        """Drop every binding."""
        self._owner = {}
        self._bound = {}

    def plan(
        self,
        members: Sequence[PieceObservation],
        mapping: RigidMapping,
        validator: PieceValidator,
        puzzle: Puzzle,
    ) -> Dict[str, BindingDecision]:
        """Decide each member's evidence and target under ``mapping`` without mutating bindings.

        Bound pieces are re-checked against their own target. An anchor that
        has not bound yet is checked against the target its mapping was
        seeded on; it only binds once the engine commits a pass.
        """
        margin = self.config.rebind_margin
        decisions: Dict[str, BindingDecision] = {}
        claimed: Set[str] = set()

        held = {m.id: self._bound[m.id] for m in members if m.id in self._bound}
        anchor_id, anchor_target = mapping.anchor_id, mapping.anchor_target_id
        if (
            anchor_id not in held
            and any(m.id == anchor_id for m in members)
            and self.is_available(anchor_target, anchor_id)
        ):
            held[anchor_id] = anchor_target
            claimed.add(anchor_target)

        for obs in sorted((m for m in members if m.id in held), key=lambda m: m.id):
            current_id = held[obs.id]
            current = puzzle.target(current_id)
            check = validator.check(obs, current, mapping)
            if check.passed:
                decisions[obs.id] = BindingDecision(obs.id, Evidence.PASS, current_id, check)
                claimed.add(current_id)
                continue
            alternatives = [
                c
                for c in validator.rank(obs, self._free_targets(puzzle, obs, claimed), mapping)
                if c.passed and c.target_id != current_id and c.score + margin <= check.score
            ]
            if alternatives:
                best = alternatives[0]
                logger.debug("Piece %s rebinding %s -> %s", obs.id, current_id, best.target_id)
                decisions[obs.id] = BindingDecision(obs.id, Evidence.PASS, best.target_id, best)
                claimed.add(best.target_id)
            else:
                decisions[obs.id] = BindingDecision(obs.id, Evidence.FAIL, current_id, check, check.failure)
                claimed.add(current_id)

        unbound = [m for m in members if m.id not in held]
        ranked: Dict[str, List[PieceCheck]] = {
            obs.id: validator.rank(obs, self._free_targets(puzzle, obs, claimed), mapping) for obs in unbound
        }

        def order(obs: PieceObservation) -> Tuple[float, str]:
            passing = [c.score for c in ranked[obs.id] if c.passed]
            return (min(passing) if passing else math.inf, obs.id)

        for obs in sorted(unbound, key=order):
            options = [c for c in ranked[obs.id] if c.target_id not in claimed]
            passing = [c for c in options if c.passed]
            if not options:
                decisions[obs.id] = BindingDecision(
                    obs.id, Evidence.FAIL, None, None, FailureReason.WRONG_PIECE_TYPE
                )
            elif not passing:
                decisions[obs.id] = BindingDecision(obs.id, Evidence.FAIL, None, options[0], options[0].failure)
            elif len(passing) > 1 and passing[1].score - passing[0].score < margin:
                decisions[obs.id] = BindingDecision(obs.id, Evidence.HOLD, None, passing[0], ambiguous=True)
            else:
                decisions[obs.id] = BindingDecision(obs.id, Evidence.PASS, passing[0].target_id, passing[0])
                claimed.add(passing[0].target_id)
        return decisions

    def commit(self, decisions: Dict[str, BindingDecision]) -> List[Tuple[str, Optional[str], str]]:
        """Apply planned bindings; returns ``(piece, old_target, new_target)`` for each change."""
        changes: List[Tuple[str, Optional[str], str]] = []
        for piece_id in sorted(decisions):
            decision = decisions[piece_id]
            if decision.evidence is not Evidence.PASS or decision.target_id is None:
                continue
            previous = self._bound.get(piece_id)
            if previous == decision.target_id:
                continue
            self.bind(piece_id, decision.target_id)
            changes.append((piece_id, previous, decision.target_id))
        return changes

    def _free_targets(self, puzzle: Puzzle, obs: PieceObservation, claimed: Set[str]) -> List[TargetPiece]:
        return [
            t
            for t in puzzle.targets_of_type(obs.piece_type)
            if t.id not in claimed and self.is_available(t.id, obs.id)
        ]
