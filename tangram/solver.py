"""Rigid mapping estimation from observed space into puzzle target space."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .geometry import (
    REFLECT_X,
    angle_difference,
    feature_angle,
    normalize_angle,
    rotation_matrix,
    rotation_stack,
)
from .normalizer import PieceObservation
from .pieces import TargetPiece

logger = logging.getLogger(__name__)

Pose = Tuple[Tuple[float, float], float, bool]


@dataclass
class SolverConfig:
    """Configuration for the rigid mapping solver."""

    coarse_step_deg: float = 2.0
    fine_step_deg: float = 0.25
    rotation_weight: float = 1.0
    # Scene units per radian when mixing angular residuals with distances.
    rotation_length_scale: float = 50.0
    min_spread: float = 1e-3

    def __post_init__(self) -> None:
        if self.coarse_step_deg <= 0 or self.fine_step_deg <= 0:
            raise ValueError("Search steps must be positive")
        if self.fine_step_deg > self.coarse_step_deg:
            raise ValueError(
                f"fine_step_deg ({self.fine_step_deg}) must not exceed coarse_step_deg ({self.coarse_step_deg})"
            )


@dataclass(frozen=True)
class Correspondence:
    """One observed piece paired with the target it is bound to."""

    observation: PieceObservation
    target: TargetPiece

    @property
    def key(self) -> Tuple[str, str]:
        return self.observation.id, self.target.id

    @property
    def weight(self) -> float:
        return max(self.observation.confidence, 1e-3)


@dataclass(frozen=True)
class RigidMapping:
    """Rotation, translation and optional reflection owned by one group.

    The first entry of ``pairs`` is always the anchor correspondence.
    """

    rotation: float
    translation: Tuple[float, float]
    mirror_parity: bool
    version: int
    pairs: Tuple[Tuple[str, str], ...]
    residual: float = 0.0
    branch: int = 0

    @property
    def pair_count(self) -> int:
        return len(self.pairs)

    @property
    def anchor_id(self) -> str:
        return self.pairs[0][0]

    @property
    def anchor_target_id(self) -> str:
        return self.pairs[0][1]

    @property
    def hypothesis(self) -> Tuple[str, int, bool]:
        return self.anchor_target_id, self.branch, self.mirror_parity

    def linear(self) -> np.ndarray:
        rot = rotation_matrix(self.rotation)
        return rot @ REFLECT_X if self.mirror_parity else rot

    def apply_point(self, point: Sequence[float]) -> np.ndarray:
        return self.linear() @ np.asarray(point, dtype=np.float64) + np.asarray(self.translation)

    def apply(self, observation: PieceObservation) -> Pose:
        """Observed pose expressed in target space."""
        mapped = self.apply_point(observation.position)
        if self.mirror_parity:
            rotation = self.rotation - observation.rotation
        else:
            rotation = observation.rotation + self.rotation
        return (
            (float(mapped[0]), float(mapped[1])),
            normalize_angle(rotation),
            observation.mirrored != self.mirror_parity,
        )

    def inverse_pose(self, position: Sequence[float], rotation: float, mirrored: bool) -> Pose:
        """Target-space pose expressed in observed space."""
        delta = np.asarray(position, dtype=np.float64) - np.asarray(self.translation)
        source = np.linalg.solve(self.linear(), delta)
        if self.mirror_parity:
            source_rotation = self.rotation - rotation
        else:
            source_rotation = rotation - self.rotation
        return (
            (float(source[0]), float(source[1])),
            normalize_angle(source_rotation),
            mirrored != self.mirror_parity,
        )

    def with_pairs(self, pairs: Sequence[Tuple[str, str]]) -> "RigidMapping":
        """Same transform with an updated correspondence list; version unchanged."""
        return replace(self, pairs=tuple(pairs))

    def summary(self) -> Dict[str, Any]:
        return {
            "rotation": self.rotation,
            "rotation_deg": math.degrees(self.rotation),
            "translation": self.translation,
            "mirror_parity": self.mirror_parity,
            "version": self.version,
            "anchor_id": self.anchor_id,
            "anchor_target_id": self.anchor_target_id,
            "pair_count": self.pair_count,
            "residual": self.residual,
        }


class RigidMappingSolver:
    """Seed mappings from one correspondence and refine them by least squares."""

    def __init__(self, config: Optional[SolverConfig] = None) -> None:
        self.config = config or SolverConfig()

    def seed(
        self,
        anchor: PieceObservation,
        target: TargetPiece,
        branch: int = 0,
        parity: Optional[bool] = None,
        version: int = 1,
    ) -> RigidMapping:
        """Mapping that carries the anchor exactly onto ``target``."""
        if parity is None:
            parity = anchor.mirrored != target.mirrored if anchor.piece_type.is_mirrorable else False
        observed_feature = feature_angle(anchor.rotation, anchor.piece_type, anchor.mirrored)
        target_feature = feature_angle(target.rotation, target.piece_type, target.mirrored)
        if parity:
            theta = target_feature + observed_feature
        else:
            theta = target_feature - observed_feature
        theta = normalize_angle(theta + branch * target.piece_type.symmetry_period)
        linear = rotation_matrix(theta)
        if parity:
            linear = linear @ REFLECT_X
        translation = np.asarray(target.position) - linear @ np.asarray(anchor.position)
        return RigidMapping(
            rotation=theta,
            translation=(float(translation[0]), float(translation[1])),
            mirror_parity=bool(parity),
            version=version,
            pairs=((anchor.id, target.id),),
            branch=branch,
        )

    def hypotheses(
        self, anchor: PieceObservation, targets: Sequence[TargetPiece], version: int = 1
    ) -> List[RigidMapping]:
        """All single-pair mappings for the anchor over candidate targets and symmetry branches."""
        result: List[RigidMapping] = []
        for target in targets:
            if target.piece_type is not anchor.piece_type:
                continue
            default = anchor.mirrored != target.mirrored if anchor.piece_type.is_mirrorable else False
            parities = (default,) if anchor.piece_type.is_mirrorable else (default, not default)
            for parity in parities:
                for branch in range(target.piece_type.symmetry_order):
                    result.append(self.seed(anchor, target, branch=branch, parity=parity, version=version))
        return result

    def refine(self, mapping: RigidMapping, correspondences: Sequence[Correspondence]) -> RigidMapping:
        """Least-squares refit over all correspondences.

        Returns ``mapping`` itself when nothing new was added or the input is
        degenerate, so repeated calls are idempotent.
        """
        if len(correspondences) < 2:
            return mapping
        keys = [c.key for c in correspondences]
        if not set(keys) - set(mapping.pairs):
            return mapping

        fixed = [c for c in correspondences if c.observation.piece_type.is_mirrorable]
        if fixed:
            parities = [fixed[0].observation.mirrored != fixed[0].target.mirrored]
        else:
            parities = [mapping.mirror_parity, not mapping.mirror_parity]

        best: Optional[Tuple[float, float, np.ndarray, bool]] = None
        for parity in parities:
            fit = self._fit(correspondences, parity)
            if fit is None:
                continue
            cost, theta, translation = fit
            if best is None or cost < best[0] - 1e-9:
                best = (cost, theta, translation, parity)

        if best is None:
            logger.warning(
                "Degenerate refinement over %d pairs; keeping mapping v%d", len(correspondences), mapping.version
            )
            return mapping

        cost, theta, translation, parity = best
        total_weight = sum(c.weight for c in correspondences)
        refined = RigidMapping(
            rotation=normalize_angle(theta),
            translation=(float(translation[0]), float(translation[1])),
            mirror_parity=parity,
            version=mapping.version + 1,
            pairs=tuple(keys),
            residual=math.sqrt(max(cost, 0.0) / total_weight),
            branch=mapping.branch,
        )
        logger.info(
            "Refined mapping v%d -> v%d over %d pairs: theta=%.2f deg residual=%.2f",
            mapping.version,
            refined.version,
            refined.pair_count,
            math.degrees(refined.rotation),
            refined.residual,
        )
        return refined

    def _fit(
        self, correspondences: Sequence[Correspondence], parity: bool
    ) -> Optional[Tuple[float, float, np.ndarray]]:
        """Best (cost, theta, translation) for a fixed parity, or None when rotation is unobservable."""
        cfg = self.config
        obs = np.array([c.observation.position for c in correspondences], dtype=np.float64)
        tgt = np.array([c.target.position for c in correspondences], dtype=np.float64)
        weights = np.array([c.weight for c in correspondences], dtype=np.float64)
        if parity:
            obs = obs @ REFLECT_X.T

        total = float(weights.sum())
        obs_center = weights @ obs / total
        tgt_center = weights @ tgt / total
        obs_c = obs - obs_center
        tgt_c = tgt - tgt_center
        obs_spread = math.sqrt(float(weights @ np.sum(obs_c**2, axis=1)) / total)
        tgt_spread = math.sqrt(float(weights @ np.sum(tgt_c**2, axis=1)) / total)
        if obs_spread < cfg.min_spread or tgt_spread < cfg.min_spread:
            return None

        sign = -1.0 if parity else 1.0
        obs_features = np.array(
            [
                feature_angle(c.observation.rotation, c.observation.piece_type, c.observation.mirrored)
                for c in correspondences
            ]
        )
        tgt_features = np.array(
            [feature_angle(c.target.rotation, c.target.piece_type, c.target.mirrored) for c in correspondences]
        )
        periods = np.array([c.target.piece_type.symmetry_period for c in correspondences])
        angular_scale = cfg.rotation_weight * cfg.rotation_length_scale**2

        def cost(thetas: np.ndarray) -> np.ndarray:
            rotated = np.einsum("kij,nj->kni", rotation_stack(thetas), obs_c)
            position_term = np.sum((rotated - tgt_c[None, :, :]) ** 2, axis=2) @ weights
            residual = angle_difference(
                thetas[:, None] + sign * obs_features[None, :], tgt_features[None, :], periods[None, :]
            )
            return position_term + angular_scale * (residual**2 @ weights)

        coarse_step = math.radians(cfg.coarse_step_deg)
        coarse = np.arange(-math.pi, math.pi, coarse_step)
        center = float(coarse[int(np.argmin(cost(coarse)))])

        fine_step = math.radians(cfg.fine_step_deg)
        count = int(round(cfg.coarse_step_deg / cfg.fine_step_deg))
        fine = center + fine_step * np.arange(-count, count + 1)
        values = cost(fine)
        idx = int(np.argmin(values))
        theta = float(fine[idx])
        best_cost = float(values[idx])
        if 0 < idx < len(fine) - 1:
            denom = values[idx - 1] - 2.0 * values[idx] + values[idx + 1]
            if denom > 0:
                delta = 0.5 * (values[idx - 1] - values[idx + 1]) / denom
                candidate = theta + float(np.clip(delta, -0.5, 0.5)) * fine_step
                candidate_cost = float(cost(np.array([candidate]))[0])
                if candidate_cost < best_cost:
                    theta, best_cost = candidate, candidate_cost

        translation = tgt_center - rotation_matrix(theta) @ obs_center
        if not (math.isfinite(theta) and math.isfinite(best_cost) and np.all(np.isfinite(translation))):
            return None
        return best_cost, theta, translation
