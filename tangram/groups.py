"""Clustering of tracked pieces into construction groups."""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

import numpy as np

from .geometry import angular_distance
from .normalizer import PieceObservation

logger = logging.getLogger(__name__)


@dataclass
class GroupingConfig:
    """Configuration for construction group clustering and scoring."""

    proximity_threshold: float = 120.0
    recency_window: float = 3.0
    move_epsilon: float = 2.0
    rotation_epsilon_deg: float = 3.0
    alignment_full_deg: float = 7.5
    proximity_weight: float = 0.3
    alignment_weight: float = 0.5
    count_weight: float = 0.2
    completing_ratio: float = 0.6

    def __post_init__(self) -> None:
        if self.proximity_threshold <= 0:
            raise ValueError(f"proximity_threshold must be positive, got {self.proximity_threshold}")
        if self.recency_window <= 0:
            raise ValueError(f"recency_window must be positive, got {self.recency_window}")
        weights = (self.proximity_weight, self.alignment_weight, self.count_weight)
        if min(weights) < 0 or sum(weights) <= 0:
            raise ValueError(f"Confidence weights must be non-negative with a positive sum, got {weights}")


class GroupState(str, Enum):
    SCATTERED = "scattered"
    EXPLORING = "exploring"
    CONSTRUCTING = "constructing"
    BUILDING = "building"
    COMPLETING = "completing"


@dataclass
class PieceTrack:
    """Latest observation of a piece plus its motion history."""

    observation: PieceObservation
    first_seen: float
    last_moved: float
    speed: float = 0.0
    missed_frames: int = 0

    def dwell(self, now: float) -> float:
        """Seconds since the piece last moved."""
        return max(0.0, now - self.last_moved)


@dataclass
class ConstructionGroup:
    """Pieces believed to belong to one assembly attempt."""

    id: str
    members: Set[str] = field(default_factory=set)
    anchor_id: Optional[str] = None
    confidence: float = 0.0
    state: GroupState = GroupState.SCATTERED
    last_activity: float = 0.0
    serial: int = 0


class DisjointSet:
    """Union-find over string keys with path compression."""

    def __init__(self, items: Iterable[str]) -> None:
        self.parent: Dict[str, str] = {item: item for item in items}

    def find(self, item: str) -> str:
        """Root of ``item``, compressing the path on the way."""
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        """Join the sets of ``a`` and ``b`` under the smaller root key."""
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if rb < ra:
            ra, rb = rb, ra
        self.parent[rb] = ra

    def components(self) -> List[Set[str]]:
        """All sets, ordered by their smallest member."""
        buckets: Dict[str, Set[str]] = {}
        for item in self.parent:
            buckets.setdefault(self.find(item), set()).add(item)
        return sorted(buckets.values(), key=lambda members: min(members))


def classify_group(size: int, validated: int, total_targets: int, completing_ratio: float = 0.6) -> GroupState:
    """Advisory lifecycle state from group size and validated share of the puzzle."""
    if total_targets > 0 and validated / total_targets > completing_ratio:
        return GroupState.COMPLETING
    if size >= 4:
        return GroupState.BUILDING
    if size == 3:
        return GroupState.CONSTRUCTING
    if size == 2:
        return GroupState.EXPLORING
    return GroupState.SCATTERED


class ConstructionGroupManager:
    """Track pieces over frames and keep a stable partition of them into groups."""

    def __init__(self, config: Optional[GroupingConfig] = None) -> None:
        self.config = config or GroupingConfig()
        self._tracks: Dict[str, PieceTrack] = {}
        self._groups: Dict[str, ConstructionGroup] = {}
        self._piece_group: Dict[str, str] = {}
        self._counter = itertools.count(1)

    @property
    def tracks(self) -> Dict[str, PieceTrack]:
        """Live motion tracks keyed by piece id."""
        return self._tracks

    @property
    def groups(self) -> Dict[str, ConstructionGroup]:
        """Current groups keyed by group id."""
        return self._groups

    def group_of(self, piece_id: str) -> Optional[str]:
        """Id of the group holding ``piece_id``, if it is tracked."""
        return self._piece_group.get(piece_id)

    def reset(self) -> None:
        """Forget all tracks and groups."""
        self._tracks = {}
        self._groups = {}
        self._piece_group = {}
        self._counter = itertools.count(1)

    def ingest(self, observations: Iterable[PieceObservation], now: float, retain_missing_frames: int = 0) -> List[str]:
        """Update motion tracks; returns ids dropped after being missing too long."""
        cfg = self.config
        seen: Set[str] = set()
        for obs in observations:
            seen.add(obs.id)
            track = self._tracks.get(obs.id)
            if track is None:
                self._tracks[obs.id] = PieceTrack(
                    observation=obs,
                    first_seen=now,
                    last_moved=now,
                    speed=obs.speed or 0.0,
                )
                continue
            prev = track.observation
            distance = math.hypot(obs.position[0] - prev.position[0], obs.position[1] - prev.position[1])
            turned = float(angular_distance(obs.rotation, prev.rotation))
            moved = (
                distance > cfg.move_epsilon
                or turned > math.radians(cfg.rotation_epsilon_deg)
                or obs.mirrored != prev.mirrored
                or obs.piece_type is not prev.piece_type
            )
            dt = obs.timestamp - prev.timestamp
            if obs.speed is not None:
                track.speed = obs.speed
            elif dt > 0:
                track.speed = distance / dt
            elif not moved:
                track.speed = 0.0
            if moved:
                track.last_moved = now
            track.observation = obs
            track.missed_frames = 0

        dropped: List[str] = []
        for piece_id in sorted(set(self._tracks) - seen):
            track = self._tracks[piece_id]
            track.missed_frames += 1
            if track.missed_frames > retain_missing_frames:
                del self._tracks[piece_id]
                dropped.append(piece_id)
        if dropped:
            logger.debug("Dropped pieces no longer observed: %s", ", ".join(dropped))
        return dropped

    def is_active(self, piece_id: str, now: float, window: float, focus_piece_id: Optional[str] = None) -> bool:
        """True when the piece moved within ``window`` or is the host's focus."""
        if piece_id == focus_piece_id:
            return True
        return self._tracks[piece_id].dwell(now) <= window

    def cluster(
        self, now: float, recency_window: Optional[float] = None, focus_piece_id: Optional[str] = None
    ) -> List[Set[str]]:
        """Connected components of the proximity-and-recency graph."""
        window = recency_window if recency_window is not None else self.config.recency_window
        ids = sorted(self._tracks)
        forest = DisjointSet(ids)
        active = {pid: self.is_active(pid, now, window, focus_piece_id) for pid in ids}
        for a, b in itertools.combinations(ids, 2):
            if self._distance(a, b) >= self.config.proximity_threshold:
                continue
            together = self._piece_group.get(a) is not None and self._piece_group.get(a) == self._piece_group.get(b)
            if active[a] or active[b] or together:
                forest.union(a, b)
        return forest.components()

    def update(
        self, now: float, recency_window: Optional[float] = None, focus_piece_id: Optional[str] = None
    ) -> List[ConstructionGroup]:
        """Re-cluster and carry group identity, anchors and ordering across frames."""
        clusters = self.cluster(now, recency_window, focus_piece_id)
        assigned: Dict[int, ConstructionGroup] = {}
        previous = sorted(self._groups.values(), key=lambda g: (-g.confidence, g.serial))
        for group in previous:
            overlaps = [
                (i, len(cluster & group.members))
                for i, cluster in enumerate(clusters)
                if i not in assigned and cluster & group.members
            ]
            if not overlaps:
                logger.debug("Group %s dissolved", group.id)
                continue
            with_anchor = [i for i, _ in overlaps if group.anchor_id in clusters[i]]
            if with_anchor:
                index = with_anchor[0]
            else:
                index = max(overlaps, key=lambda item: (item[1], -item[0]))[0]
                if group.anchor_id is not None:
                    logger.debug("Group %s lost anchor %s", group.id, group.anchor_id)
                group.anchor_id = None
            assigned[index] = group

        groups: Dict[str, ConstructionGroup] = {}
        for index, cluster in enumerate(clusters):
            group = assigned.get(index)
            if group is None:
                serial = next(self._counter)
                group = ConstructionGroup(id=f"g{serial}", serial=serial)
            group.members = set(cluster)
            group.confidence = self.confidence(cluster)
            group.last_activity = max(self._tracks[pid].last_moved for pid in cluster)
            groups[group.id] = group

        self._groups = groups
        self._piece_group = {pid: group.id for group in groups.values() for pid in group.members}
        return self.ordered_groups()

    def ordered_groups(self) -> List[ConstructionGroup]:
        """Groups by descending confidence, ties by creation order."""
        return sorted(self._groups.values(), key=lambda g: (-g.confidence, g.serial))

    def confidence(self, members: Iterable[str]) -> float:
        """Blend of proximity, edge alignment and piece count in [0, 1]."""
        cfg = self.config
        ids = sorted(members)
        n = len(ids)
        if n < 2:
            return 0.0
        threshold = cfg.proximity_threshold
        positions = np.array([self._tracks[pid].observation.position for pid in ids], dtype=np.float64)
        dists = np.linalg.norm(positions[:, None, :] - positions[None, :, :], axis=2)
        np.fill_diagonal(dists, np.inf)
        nearest = dists.min(axis=1)
        proximity = float(np.mean(np.clip(1.0 - nearest / threshold, 0.0, 1.0)))

        full = math.radians(cfg.alignment_full_deg)
        worst = math.pi / 8.0
        scores: List[float] = []
        for i, j in itertools.combinations(range(n), 2):
            if dists[i, j] >= threshold:
                continue
            off = float(
                angular_distance(
                    self._tracks[ids[i]].observation.rotation,
                    self._tracks[ids[j]].observation.rotation,
                    math.pi / 4.0,
                )
            )
            if off <= full:
                scores.append(1.0)
            else:
                scores.append(max(0.0, 1.0 - (off - full) / (worst - full)))
        alignment = float(np.mean(scores)) if scores else 0.0
        count = min(1.0, (n - 1) / 6.0)

        total = cfg.proximity_weight + cfg.alignment_weight + cfg.count_weight
        blended = (
            cfg.proximity_weight * proximity + cfg.alignment_weight * alignment + cfg.count_weight * count
        ) / total
        return float(min(1.0, max(0.0, blended)))

    def _distance(self, a: str, b: str) -> float:
        pa = self._tracks[a].observation.position
        pb = self._tracks[b].observation.position
        return math.hypot(pa[0] - pb[0], pa[1] - pb[1])

    def centroid(self, members: Iterable[str]) -> Tuple[float, float]:
        """Mean observed position of ``members``."""
        points = np.array([self._tracks[pid].observation.position for pid in members], dtype=np.float64)
        center = points.mean(axis=0)
        return float(center[0]), float(center[1])
