"""Per-piece hysteresis state machine."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterator, Optional


class ValidationStatus(str, Enum):
    """Hysteresis state of one piece."""

    UNVALIDATED = "unvalidated"
    PROVISIONAL = "provisional"
    VALIDATED = "validated"
    INVALID = "invalid"


class FailureReason(str, Enum):
    """Why a piece is currently out of tolerance, in display priority order."""

    NONE = "none"
    NEEDS_FLIP = "needsFlip"
    WRONG_ROTATION = "wrongRotation"
    WRONG_POSITION = "wrongPosition"
    WRONG_PIECE_TYPE = "wrongPieceType"


class Evidence(str, Enum):
    """Outcome of one frame's check for one piece.

    ``HOLD`` means the pose is in tolerance but cannot confirm anything yet:
    a lone anchor with nothing to relate to, or an ambiguous binding.
    """

    PASS = "pass"
    HOLD = "hold"
    FAIL = "fail"


@dataclass
class HysteresisConfig:
    """Frame counts for the asymmetric confirm/release rule."""

    confirm_frames: int = 2
    release_frames: int = 4
    counter_cap: int = 5

    def __post_init__(self) -> None:
        if self.confirm_frames < 1:
            raise ValueError(f"confirm_frames must be >= 1, got {self.confirm_frames}")
        if self.release_frames <= self.confirm_frames:
            raise ValueError(
                f"release_frames ({self.release_frames}) must exceed confirm_frames ({self.confirm_frames})"
            )
        if self.counter_cap < self.release_frames:
            raise ValueError(
                f"counter_cap ({self.counter_cap}) must be >= release_frames ({self.release_frames})"
            )


@dataclass(frozen=True)
class PieceState:
    """Validation state of one tracked piece."""

    status: ValidationStatus = ValidationStatus.UNVALIDATED
    consecutive_pass: int = 0
    consecutive_fail: int = 0
    bound_target_id: Optional[str] = None
    last_failure_reason: FailureReason = FailureReason.NONE


def transition(
    state: PieceState,
    evidence: Evidence,
    config: HysteresisConfig,
    reason: FailureReason = FailureReason.NONE,
) -> PieceState:
    """Pure ``(state, evidence) -> state`` step. Binding is carried through unchanged."""
    cap = config.counter_cap
    status = state.status

    if evidence is Evidence.PASS:
        passes = min(state.consecutive_pass + 1, cap)
        if status is ValidationStatus.VALIDATED or passes >= config.confirm_frames:
            status = ValidationStatus.VALIDATED
        else:
            status = ValidationStatus.PROVISIONAL
        return replace(
            state,
            status=status,
            consecutive_pass=passes,
            consecutive_fail=0,
            last_failure_reason=FailureReason.NONE,
        )

    if evidence is Evidence.HOLD:
        if status is ValidationStatus.VALIDATED:
            # Nothing left to confirm against: decay like a failure.
            return _fail(state, config, FailureReason.WRONG_POSITION)
        return replace(
            state,
            status=ValidationStatus.PROVISIONAL,
            consecutive_pass=0,
            consecutive_fail=0,
            last_failure_reason=FailureReason.NONE,
        )

    return _fail(state, config, reason if reason is not FailureReason.NONE else FailureReason.WRONG_POSITION)


def _fail(state: PieceState, config: HysteresisConfig, reason: FailureReason) -> PieceState:
    fails = min(state.consecutive_fail + 1, config.counter_cap)
    status = state.status
    if status is ValidationStatus.VALIDATED:
        if fails >= config.release_frames:
            status = ValidationStatus.INVALID
    else:
        status = ValidationStatus.INVALID
    return replace(
        state,
        status=status,
        consecutive_pass=0,
        consecutive_fail=fails,
        last_failure_reason=reason,
    )


class StateTracker:
    """Owns the ``PieceState`` of every tracked piece."""

    def __init__(self, config: Optional[HysteresisConfig] = None) -> None:
        self.config = config or HysteresisConfig()
        self._states: Dict[str, PieceState] = {}

    def __contains__(self, piece_id: str) -> bool:
        return piece_id in self._states

    def __iter__(self) -> Iterator[str]:
        return iter(self._states)

    def get(self, piece_id: str) -> PieceState:
        """Current state, or a fresh unvalidated one for unknown pieces."""
        return self._states.get(piece_id, PieceState())

    def preview(self, piece_id: str, evidence: Evidence, reason: FailureReason = FailureReason.NONE) -> PieceState:
        """State the piece would reach, without committing it."""
        return transition(self.get(piece_id), evidence, self.config, reason)

    def apply(self, piece_id: str, evidence: Evidence, reason: FailureReason = FailureReason.NONE) -> PieceState:
        """Commit one frame of evidence and return the new state."""
        new_state = self.preview(piece_id, evidence, reason)
        self._states[piece_id] = new_state
        return new_state

    def set_binding(self, piece_id: str, target_id: Optional[str]) -> None:
        """Mirror the binder's target for ``piece_id`` into its state."""
        self._states[piece_id] = replace(self.get(piece_id), bound_target_id=target_id)

    def forget(self, piece_id: str) -> None:
        """Drop the state of a piece that left the table."""
        self._states.pop(piece_id, None)

    def clear(self) -> None:
        """Drop every state."""
        self._states = {}

    def snapshot(self) -> Dict[str, PieceState]:
        """Copy of all states keyed by piece id."""
        return dict(self._states)
