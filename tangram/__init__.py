"""Relative-geometry tangram pose validation package."""

from .anchor import AnchorSelector
from .binding import BindingConfig, BindingDecision, InstanceBinder
from .config import TOLERANCE_TIERS, Difficulty, EngineConfig, ValidationOptions
from .engine import FrameInbox, GroupReport, PieceReport, ValidationEngine, ValidationResult
from .evaluator import EvaluationResult, PuzzleEvaluator
from .groups import ConstructionGroup, ConstructionGroupManager, GroupingConfig, GroupState
from .hints import HintAdvisor, HintSuggestion
from .normalizer import PieceObservation, PoseNormalizer
from .pieces import PieceType, Puzzle, TargetPiece
from .solver import Correspondence, RigidMapping, RigidMappingSolver, SolverConfig
from .tracker import (
    Evidence,
    FailureReason,
    HysteresisConfig,
    PieceState,
    StateTracker,
    ValidationStatus,
    transition,
)
from .validator import OrientationCheck, PieceCheck, PieceValidator, ToleranceSet

__all__ = [
    "PieceType",
    "TargetPiece",
    "Puzzle",
    "PieceObservation",
    "PoseNormalizer",
    "GroupingConfig",
    "GroupState",
    "ConstructionGroup",
    "ConstructionGroupManager",
    "AnchorSelector",
    "SolverConfig",
    "Correspondence",
    "RigidMapping",
    "RigidMappingSolver",
    "ToleranceSet",
    "PieceCheck",
    "OrientationCheck",
    "PieceValidator",
    "BindingConfig",
    "BindingDecision",
    "InstanceBinder",
    "HysteresisConfig",
    "Evidence",
    "FailureReason",
    "PieceState",
    "StateTracker",
    "ValidationStatus",
    "transition",
    "Difficulty",
    "TOLERANCE_TIERS",
    "EngineConfig",
    "ValidationOptions",
    "FrameInbox",
    "PieceReport",
    "GroupReport",
    "ValidationResult",
    "ValidationEngine",
    "HintAdvisor",
    "HintSuggestion",
    "EvaluationResult",
    "PuzzleEvaluator",
]
