"""Progress metrics for validation results."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

import numpy as np

from .engine import ValidationResult
from .pieces import Puzzle
from .tracker import ValidationStatus


@dataclass
class EvaluationResult:
    """Container for assembly progress metrics."""

    completion_ratio: float
    binding_accuracy: Optional[float]
    status_counts: Dict[ValidationStatus, int]
    mean_position_error: float
    mean_rotation_error_deg: float


class PuzzleEvaluator:
    """Compute quality metrics for one ``ValidationResult``."""

    def compute_completion(self, result: ValidationResult, puzzle: Puzzle) -> float:
        """Fraction of targets satisfied by a validated piece."""
        return len(result.validated_target_ids) / len(puzzle) if len(puzzle) else 0.0

    def compute_binding_accuracy(self, result: ValidationResult, expected: Mapping[str, str]) -> float:
        """Fraction of pieces validated on the target they were placed on."""
        if not expected:
            return 0.0
        correct = 0
        for piece_id, target_id in expected.items():
            report = result.pieces.get(piece_id)
            if (
                report is not None
                and report.status is ValidationStatus.VALIDATED
                and report.bound_target_id == target_id
            ):
                correct += 1
        return correct / len(expected)

    def compute_status_counts(self, result: ValidationResult) -> Dict[ValidationStatus, int]:
        counts = {status: 0 for status in ValidationStatus}
        for report in result.pieces.values():
            counts[report.status] += 1
        return counts

    def compute_alignment_error(self, result: ValidationResult) -> Tuple[float, float]:
        """Mean position and rotation error (degrees) over validated pieces."""
        positions = []
        rotations = []
        for report in result.pieces.values():
            if report.status is ValidationStatus.VALIDATED and report.position_error is not None:
                positions.append(report.position_error)
                rotations.append(report.rotation_error)
        if not positions:
            return 0.0, 0.0
        return float(np.mean(positions)), math.degrees(float(np.mean(rotations)))

    def evaluate(
        self, result: ValidationResult, puzzle: Puzzle, expected: Optional[Mapping[str, str]] = None
    ) -> EvaluationResult:
        """Calculate all progress metrics for a result."""
        position_error, rotation_error = self.compute_alignment_error(result)
        return EvaluationResult(
            completion_ratio=self.compute_completion(result, puzzle),
            binding_accuracy=self.compute_binding_accuracy(result, expected) if expected is not None else None,
            status_counts=self.compute_status_counts(result),
            mean_position_error=position_error,
            mean_rotation_error_deg=rotation_error,
        )
