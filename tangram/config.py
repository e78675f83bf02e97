"""Difficulty tiers, per-call options and the aggregated engine configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from .binding import BindingConfig
from .groups import GroupingConfig
from .solver import SolverConfig
from .tracker import HysteresisConfig
from .validator import ToleranceSet


class Difficulty(str, Enum):
    EASY = "easy"
    NORMAL = "normal"
    HARD = "hard"


TOLERANCE_TIERS: Dict[Difficulty, ToleranceSet] = {
    Difficulty.EASY: ToleranceSet(position=55.0, rotation_deg=24.0),
    Difficulty.NORMAL: ToleranceSet(position=40.0, rotation_deg=18.0),
    Difficulty.HARD: ToleranceSet(position=28.0, rotation_deg=12.0),
}


@dataclass
class ValidationOptions:
    """Per-frame options supplied by the host.

    ``orientation_tolerance_deg`` and ``rotation_nudge_upper_deg`` bound the
    orientation-only feedback given to pieces whose group has no established
    mapping yet.
    """

    difficulty: Difficulty = Difficulty.NORMAL
    focus_piece_id: Optional[str] = None
    recency_window: Optional[float] = None
    orientation_tolerance_deg: float = 5.0
    rotation_nudge_upper_deg: float = 45.0

    def __post_init__(self) -> None:
        self.difficulty = Difficulty(self.difficulty)
        if self.recency_window is not None and self.recency_window <= 0:
            raise ValueError(f"recency_window must be positive, got {self.recency_window}")
        if not 0 < self.orientation_tolerance_deg < self.rotation_nudge_upper_deg:
            raise ValueError(
                f"Need 0 < orientation_tolerance_deg ({self.orientation_tolerance_deg}) "
                f"< rotation_nudge_upper_deg ({self.rotation_nudge_upper_deg})"
            )


@dataclass
class EngineConfig:
    """Configuration for the validation engine."""

    tolerance_tiers: Dict[Difficulty, ToleranceSet] = field(default_factory=lambda: dict(TOLERANCE_TIERS))
    grouping: GroupingConfig = field(default_factory=GroupingConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    binding: BindingConfig = field(default_factory=BindingConfig)
    hysteresis: HysteresisConfig = field(default_factory=HysteresisConfig)
    settle_speed: float = 12.0
    min_confidence: float = 0.0
    retain_missing_frames: int = 2

    def __post_init__(self) -> None:
        missing = [tier.value for tier in Difficulty if tier not in self.tolerance_tiers]
        if missing:
            raise ValueError(f"Missing tolerance tiers: {', '.join(missing)}")
        if self.retain_missing_frames < 0:
            raise ValueError(f"retain_missing_frames must be >= 0, got {self.retain_missing_frames}")

    def tolerances(self, difficulty: Difficulty) -> ToleranceSet:
        return self.tolerance_tiers[Difficulty(difficulty)]
