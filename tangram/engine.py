"""Real-time tangram pose validation engine.

One ``ValidationEngine`` owns every piece of mutable state for a puzzle
session: motion tracks and construction groups, one rigid mapping per
group, instance bindings and hysteresis states. ``process_frame`` runs the
whole pipeline for one frame of observations:

normalize -> group -> elect anchors -> seed/refine mappings ->
validate and bind -> hysteresis -> ``ValidationResult``.

The engine is single-threaded. Observations produced on another thread go
through ``submit`` and are consumed by ``process_pending``.
"""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass, replace
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .anchor import AnchorSelector
from .binding import BindingDecision, InstanceBinder
from .config import EngineConfig, ValidationOptions
from .groups import ConstructionGroup, ConstructionGroupManager, GroupState, classify_group
from .hints import HintAdvisor, HintCandidate, HintSuggestion
from .normalizer import PieceObservation, PoseNormalizer
from .pieces import PieceType, Puzzle, TargetPiece
from .solver import Correspondence, RigidMapping, RigidMappingSolver
from .tracker import Evidence, FailureReason, PieceState, StateTracker, ValidationStatus
from .validator import OrientationCheck, PieceCheck, PieceValidator

logger = logging.getLogger(__name__)

FRAME_INTERVAL = 1.0 / 30.0

RawFrame = Iterable[Union[Mapping[str, Any], PieceObservation]]


@dataclass(frozen=True)
class PieceReport:
    """Per-piece output for renderers and hint collaborators.

    ``orientation`` is set for pieces whose group has no established mapping
    yet; it judges rotation and chirality alone against the nearest open
    target of the same type.
    """

    piece_id: str
    piece_type: PieceType
    status: ValidationStatus
    bound_target_id: Optional[str]
    last_failure_reason: FailureReason
    group_id: Optional[str]
    position_error: Optional[float] = None
    rotation_error: Optional[float] = None
    orientation: Optional[OrientationCheck] = None


@dataclass(frozen=True)
class GroupReport:
    group_id: str
    members: Tuple[str, ...]
    anchor_id: Optional[str]
    confidence: float
    state: GroupState
    mapping: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class ValidationResult:
    """Snapshot emitted after every frame."""

    frame_index: int
    timestamp: float
    pieces: Dict[str, PieceReport]
    groups: Dict[str, GroupReport]
    validated_target_ids: FrozenSet[str]
    oriented_target_ids: FrozenSet[str] = frozenset()

    def status_of(self, piece_id: str) -> ValidationStatus:
        """Status of ``piece_id``; untracked pieces are unvalidated."""
        report = self.pieces.get(piece_id)
        return report.status if report is not None else ValidationStatus.UNVALIDATED

    def group_of(self, piece_id: str) -> Optional[GroupReport]:
        """Report of the group holding ``piece_id``."""
        report = self.pieces.get(piece_id)
        if report is None or report.group_id is None:
            return None
        return self.groups.get(report.group_id)


class FrameInbox:
    """Single-producer/single-consumer hand-off of whole frames."""

    def __init__(self) -> None:
        self._queue: "queue.SimpleQueue[Tuple[List[Any], Optional[float]]]" = queue.SimpleQueue()

    def put(self, records: RawFrame, timestamp: Optional[float] = None) -> None:
        self._queue.put((list(records), timestamp))

    def drain(self) -> List[Tuple[List[Any], Optional[float]]]:
        frames = []
        while True:
            try:
                frames.append(self._queue.get_nowait())
            except queue.Empty:
                return frames

    def clear(self) -> None:
        self.drain()


class ValidationEngine:
    """Validate piece poses against a target puzzle, frame by frame."""

    def __init__(
        self,
        puzzle: Puzzle,
        config: Optional[EngineConfig] = None,
        options: Optional[ValidationOptions] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.options = options or ValidationOptions()
        self.normalizer = PoseNormalizer(min_confidence=self.config.min_confidence)
        self.solver = RigidMappingSolver(self.config.solver)
        self.anchors = AnchorSelector(settle_speed=self.config.settle_speed)
        self.advisor = HintAdvisor()
        self.inbox = FrameInbox()
        self._install(puzzle)

    def load_puzzle(self, puzzle: Puzzle) -> None:
        """Swap to a new puzzle, discarding all state of the previous one."""
        self._install(puzzle)

    def reset(self) -> None:
        """Clear all groups, mappings, bindings and states for the current puzzle."""
        self._install(self.puzzle)

    def _install(self, puzzle: Puzzle) -> None:
        groups = ConstructionGroupManager(self.config.grouping)
        binder = InstanceBinder(self.config.binding)
        tracker = StateTracker(self.config.hysteresis)
        self.inbox.clear()
        self.puzzle = puzzle
        self.groups = groups
        self.binder = binder
        self.tracker = tracker
        self._mappings: Dict[str, RigidMapping] = {}
        self._versions: Dict[str, int] = {}
        self._checks: Dict[str, PieceCheck] = {}
        self._orientations: Dict[str, OrientationCheck] = {}
        self._established: Set[str] = set()
        self._rejected: Dict[str, FrozenSet[Tuple[str, str]]] = {}
        self._frame_index = 0
        self._now = 0.0
        self._last_result: Optional[ValidationResult] = None
        logger.info("Loaded puzzle %s with %d targets", puzzle.id, len(puzzle))

    @property
    def mappings(self) -> Dict[str, RigidMapping]:
        return dict(self._mappings)

    @property
    def last_result(self) -> Optional[ValidationResult]:
        return self._last_result

    @property
    def validated_target_ids(self) -> FrozenSet[str]:
        """Targets currently satisfied by a validated piece."""
        ids = set()
        for piece_id in self.tracker:
            state = self.tracker.get(piece_id)
            target_id = self.binder.bound_target(piece_id)
            if state.status is ValidationStatus.VALIDATED and target_id is not None:
                ids.add(target_id)
        return frozenset(ids)

    def piece_state(self, piece_id: str) -> PieceState:
        return replace(self.tracker.get(piece_id), bound_target_id=self.binder.bound_target(piece_id))

    def submit(self, records: RawFrame, timestamp: Optional[float] = None) -> None:
        """Producer side: queue a complete frame from a capture thread."""
        self.inbox.put(records, timestamp)

    def process_pending(self, options: Optional[ValidationOptions] = None) -> Optional[ValidationResult]:
        """Drain the inbox and process the most recent complete frame."""
        frames = self.inbox.drain()
        if not frames:
            return None
        if len(frames) > 1:
            logger.debug("Skipping %d stale frames", len(frames) - 1)
        records, timestamp = frames[-1]
        return self.process_frame(records, timestamp=timestamp, options=options)

    def process_frame(
        self,
        records: RawFrame,
        timestamp: Optional[float] = None,
        options: Optional[ValidationOptions] = None,
    ) -> ValidationResult:
        """Run one full validation pass over a frame of observations."""
        options = options or self.options
        frame_ts = timestamp if timestamp is not None else self._now + FRAME_INTERVAL
        observations = self.normalizer.normalize_frame(records, frame_ts)
        now = frame_ts
        if timestamp is None and observations:
            now = max([frame_ts] + [obs.timestamp for obs in observations])
        self._now = now
        self._frame_index += 1

        for piece_id in self.groups.ingest(observations, now, self.config.retain_missing_frames):
            self._forget(piece_id)
        ordered = self.groups.update(now, options.recency_window, options.focus_piece_id)
        live = self.groups.groups
        self._mappings = {gid: m for gid, m in self._mappings.items() if gid in live}
        self._rejected = {gid: pairs for gid, pairs in self._rejected.items() if gid in live}

        validator = PieceValidator(self.config.tolerances(options.difficulty))
        self._checks = {}
        self._orientations = {}
        self._established = set()
        for group in ordered:
            self._process_group(group, validator, options, now)

        validated = self.validated_target_ids
        for group in ordered:
            count = sum(
                1 for pid in group.members if self.tracker.get(pid).status is ValidationStatus.VALIDATED
            )
            group.state = classify_group(
                len(group.members), count, len(self.puzzle), self.config.grouping.completing_ratio
            )

        result = self._build_result(now, validated)
        self._last_result = result
        logger.debug(
            "Frame %d: %d pieces, %d groups, %d/%d targets validated",
            self._frame_index,
            len(result.pieces),
            len(result.groups),
            len(validated),
            len(self.puzzle),
        )
        return result

    def _forget(self, piece_id: str) -> None:
        self.binder.release(piece_id)
        self.tracker.forget(piece_id)

    def _available_targets(self, obs: PieceObservation) -> List[TargetPiece]:
        return [t for t in self.puzzle.targets_of_type(obs.piece_type) if self.binder.is_available(t.id, obs.id)]

    def _next_version(self, group_id: str) -> int:
        return self._versions.get(group_id, 0) + 1

    def _process_group(
        self, group: ConstructionGroup, validator: PieceValidator, options: ValidationOptions, now: float
    ) -> None:
        tracks = self.groups.tracks
        members = [tracks[pid].observation for pid in sorted(group.members)]
        mapping = self._mappings.get(group.id)

        anchor_state = self.tracker.get(group.anchor_id) if group.anchor_id is not None else None
        if (
            group.anchor_id is None
            or group.anchor_id not in group.members
            or (anchor_state is not None and anchor_state.status is ValidationStatus.INVALID)
        ):
            eligible = {obs.id for obs in members if self._available_targets(obs)}
            previous = group.anchor_id
            group.anchor_id = self.anchors.select(group, tracks, self.tracker.snapshot(), eligible, now)
            mapping = None
            if group.anchor_id != previous:
                logger.debug("Group %s anchor %s -> %s", group.id, previous, group.anchor_id)
        if mapping is not None and mapping.anchor_id != group.anchor_id:
            mapping = None

        if group.anchor_id is None:
            self._mappings.pop(group.id, None)
            for obs in members:
                self._apply(obs.id, Evidence.FAIL, FailureReason.WRONG_PIECE_TYPE)
            return

        anchor = tracks[group.anchor_id].observation
        if mapping is None or mapping.pair_count == 1:
            mapping = self._select_hypothesis(group, anchor, members, mapping, validator)
            if mapping is None:
                self._mappings.pop(group.id, None)
                for obs in members:
                    self._apply(obs.id, Evidence.FAIL, FailureReason.WRONG_PIECE_TYPE)
                self._orient(members, validator, options)
                return

        decisions = self.binder.plan(members, mapping, validator, self.puzzle)
        mapping, decisions = self._refine(group, anchor, members, mapping, decisions, validator)
        if self._commit(group, anchor, mapping, decisions):
            self._established.add(group.id)
        else:
            self._orient(members, validator, options)

    def _select_hypothesis(
        self,
        group: ConstructionGroup,
        anchor: PieceObservation,
        members: Sequence[PieceObservation],
        current: Optional[RigidMapping],
        validator: PieceValidator,
    ) -> Optional[RigidMapping]:
        """Single-pair mapping for the anchor, chosen by how many other members it explains."""
        bound = self.puzzle.get(self.binder.bound_target(anchor.id))
        if bound is not None and self.tracker.get(anchor.id).status is ValidationStatus.VALIDATED:
            targets = [bound]
        else:
            targets = self._available_targets(anchor)
        candidates = self.solver.hypotheses(anchor, targets, version=self._next_version(group.id))
        if not candidates:
            return None

        others = [obs for obs in members if obs.id != anchor.id]
        best = candidates[0]
        best_support = -1
        for hypothesis in candidates:
            support = self._support(group, hypothesis, others, validator)
            if support > best_support:
                best, best_support = hypothesis, support
        if current is not None and current.hypothesis in {h.hypothesis for h in candidates}:
            if self._support(group, current, others, validator) >= best_support:
                return current
        if current is None or best.hypothesis != current.hypothesis:
            logger.debug(
                "Group %s seeded on %s -> %s (support %d)", group.id, anchor.id, best.anchor_target_id, best_support
            )
        return best

    def _support(
        self,
        group: ConstructionGroup,
        mapping: RigidMapping,
        others: Sequence[PieceObservation],
        validator: PieceValidator,
    ) -> int:
        count = 0
        for obs in others:
            for target in self.puzzle.targets_of_type(obs.piece_type):
                if target.id == mapping.anchor_target_id:
                    continue
                owner = self.binder.owner_of(target.id)
                if owner is not None and owner not in group.members:
                    continue
                if validator.check(obs, target, mapping).passed:
                    count += 1
                    break
        return count

    def _anchor_evidence(
        self, anchor: PieceObservation, mapping: RigidMapping, decisions: Dict[str, BindingDecision]
    ) -> Dict[str, BindingDecision]:
        """Downgrade an anchor that only agrees with itself to ``HOLD``.

        A validated anchor keeps its standing while it has company; alone in
        its group it decays like any unconfirmed piece.
        """
        decision = decisions.get(anchor.id)
        if decision is None or decision.evidence is not Evidence.PASS:
            return decisions
        supported = mapping.pair_count >= 2 or len(self.puzzle) == 1 or any(
            d.evidence is Evidence.PASS for pid, d in decisions.items() if pid != anchor.id
        )
        if not supported and len(decisions) > 1:
            supported = self.tracker.get(anchor.id).status is ValidationStatus.VALIDATED
        if supported:
            return decisions
        adjusted = dict(decisions)
        adjusted[anchor.id] = replace(decision, evidence=Evidence.HOLD)
        return adjusted

    def _refine(
        self,
        group: ConstructionGroup,
        anchor: PieceObservation,
        members: Sequence[PieceObservation],
        mapping: RigidMapping,
        decisions: Dict[str, BindingDecision],
        validator: PieceValidator,
    ) -> Tuple[RigidMapping, Dict[str, BindingDecision]]:
        """Refit when a new piece is about to validate; keep the old mapping if the refit disagrees."""
        decisions = self._anchor_evidence(anchor, mapping, decisions)
        anchor_decision = decisions.get(anchor.id)
        if anchor_decision is None or anchor_decision.evidence is not Evidence.PASS:
            return mapping, decisions

        by_id = {obs.id: obs for obs in members}
        pairs = [(anchor.id, anchor_decision.target_id)]
        for pid in sorted(decisions):
            decision = decisions[pid]
            if pid == anchor.id or decision.evidence is not Evidence.PASS:
                continue
            if self.tracker.preview(pid, Evidence.PASS).status is ValidationStatus.VALIDATED:
                pairs.append((pid, decision.target_id))
        if not set(pairs[1:]) - set(mapping.pairs):
            return mapping, decisions

        correspondences = [Correspondence(by_id[pid], self.puzzle.target(tid)) for pid, tid in pairs]
        refined = self.solver.refine(mapping, correspondences)
        mismatch: Optional[Tuple[str, str]] = None
        if refined is not mapping:
            replanned = self._anchor_evidence(
                anchor, refined, self.binder.plan(members, refined, validator, self.puzzle)
            )
            for pid, tid in refined.pairs:
                decision = replanned.get(pid)
                if decision is None or decision.evidence is not Evidence.PASS or decision.target_id != tid:
                    mismatch = (pid, tid)
                    break
            else:
                self._rejected.pop(group.id, None)
                return refined, replanned
        return mapping, self._hold_rejected(group, refined, pairs, mismatch, decisions)

    def _hold_rejected(
        self,
        group: ConstructionGroup,
        refined: RigidMapping,
        pairs: Sequence[Tuple[str, str]],
        mismatch: Optional[Tuple[str, str]],
        decisions: Dict[str, BindingDecision],
    ) -> Dict[str, BindingDecision]:
        """Keep the pieces a rejected refit would have confirmed provisional.

        The warning is emitted once per rejected pair set; repeats of the
        same rejection are logged at debug level.
        """
        key = frozenset(pairs)
        log = logger.debug if self._rejected.get(group.id) == key else logger.warning
        self._rejected[group.id] = key
        if mismatch is None:
            log("Group %s: refit over %d pairs rejected as degenerate", group.id, len(pairs))
        else:
            log("Group %s: refit v%d rejected, %s no longer matches %s", group.id, refined.version, *mismatch)
        held = dict(decisions)
        for pid, _ in pairs[1:]:
            if self.tracker.get(pid).status is not ValidationStatus.VALIDATED:
                held[pid] = replace(held[pid], evidence=Evidence.HOLD)
        return held

    def _commit(
        self,
        group: ConstructionGroup,
        anchor: PieceObservation,
        mapping: RigidMapping,
        decisions: Dict[str, BindingDecision],
    ) -> bool:
        """Apply bindings and evidence; True when the group's mapping is established."""
        decisions = self._anchor_evidence(anchor, mapping, decisions)
        anchor_decision = decisions.get(anchor.id)
        anchor_passed = anchor_decision is not None and anchor_decision.evidence is Evidence.PASS
        if (
            anchor_decision is not None
            and anchor_decision.evidence is Evidence.HOLD
            and self.tracker.get(anchor.id).status is not ValidationStatus.VALIDATED
            and self.binder.bound_target(anchor.id) is not None
        ):
            released = self.binder.release(anchor.id)
            logger.debug("Anchor %s unconfirmed, released %s", anchor.id, released)
        for piece_id, previous, target_id in self.binder.commit(decisions):
            if previous is not None:
                logger.info("Piece %s rebound %s -> %s", piece_id, previous, target_id)

        for piece_id in sorted(decisions):
            decision = decisions[piece_id]
            self._apply(piece_id, decision.evidence, decision.failure)
            if decision.check is not None:
                self._checks[piece_id] = decision.check

        kept = [
            (pid, tid)
            for pid, tid in mapping.pairs[1:]
            if pid in group.members
            and self.tracker.get(pid).status is ValidationStatus.VALIDATED
            and self.binder.bound_target(pid) == tid
        ]
        anchor_target = self.binder.bound_target(anchor.id) or mapping.anchor_target_id
        pairs = [(anchor.id, anchor_target)] + kept
        if tuple(pairs) != mapping.pairs:
            mapping = mapping.with_pairs(pairs)
        self._mappings[group.id] = mapping
        self._versions[group.id] = max(self._versions.get(group.id, 0), mapping.version)
        return mapping.pair_count >= 2 or anchor_passed

    def _orient(self, members: Sequence[PieceObservation], validator: PieceValidator, options: ValidationOptions) -> None:
        for obs in members:
            if self.tracker.get(obs.id).status is ValidationStatus.VALIDATED:
                continue
            check = validator.orientation(
                obs,
                self._available_targets(obs),
                options.orientation_tolerance_deg,
                options.rotation_nudge_upper_deg,
            )
            if check is not None:
                self._orientations[obs.id] = check

    def _apply(self, piece_id: str, evidence: Evidence, reason: FailureReason = FailureReason.NONE) -> None:
        before = self.tracker.get(piece_id).status
        state = self.tracker.apply(piece_id, evidence, reason)
        if state.status is ValidationStatus.INVALID and self.binder.bound_target(piece_id) is not None:
            released = self.binder.release(piece_id)
            logger.debug("Piece %s invalid, released %s", piece_id, released)
        self.tracker.set_binding(piece_id, self.binder.bound_target(piece_id))
        if state.status is not before:
            logger.debug("Piece %s %s -> %s (%s)", piece_id, before.value, state.status.value, state.last_failure_reason.value)

    def _build_result(self, now: float, validated: FrozenSet[str]) -> ValidationResult:
        pieces: Dict[str, PieceReport] = {}
        for piece_id in sorted(self.groups.tracks):
            track = self.groups.tracks[piece_id]
            state = self.tracker.get(piece_id)
            check = self._checks.get(piece_id)
            pieces[piece_id] = PieceReport(
                piece_id=piece_id,
                piece_type=track.observation.piece_type,
                status=state.status,
                bound_target_id=self.binder.bound_target(piece_id),
                last_failure_reason=state.last_failure_reason,
                group_id=self.groups.group_of(piece_id),
                position_error=check.position_error if check is not None else None,
                rotation_error=check.rotation_error if check is not None else None,
                orientation=self._orientations.get(piece_id),
            )
        groups: Dict[str, GroupReport] = {}
        for group in self.groups.ordered_groups():
            mapping = self._mappings.get(group.id)
            groups[group.id] = GroupReport(
                group_id=group.id,
                members=tuple(sorted(group.members)),
                anchor_id=group.anchor_id,
                confidence=group.confidence,
                state=group.state,
                mapping=mapping.summary() if mapping is not None else None,
            )
        return ValidationResult(
            frame_index=self._frame_index,
            timestamp=now,
            pieces=pieces,
            groups=groups,
            validated_target_ids=validated,
            oriented_target_ids=frozenset(c.target_id for c in self._orientations.values() if c.oriented),
        )

    def suggest_hint(self, options: Optional[ValidationOptions] = None) -> Optional[HintSuggestion]:
        """Best unvalidated target and what is wrong with the closest piece for it."""
        options = options or self.options
        validator = PieceValidator(self.config.tolerances(options.difficulty))
        candidates: List[HintCandidate] = []
        for piece_id in sorted(self.groups.tracks):
            if self.tracker.get(piece_id).status is ValidationStatus.VALIDATED:
                continue
            group_id = self.groups.group_of(piece_id)
            candidates.append(
                HintCandidate(
                    observation=self.groups.tracks[piece_id].observation,
                    group_id=group_id,
                    mapping=self._mappings.get(group_id) if group_id in self._established else None,
                    orientation=self._orientations.get(piece_id),
                )
            )
        reference = None
        for group in self.groups.ordered_groups():
            if group.id in self._established and group.id in self._mappings:
                reference = self._mappings[group.id]
                break
        return self.advisor.suggest(
            self.puzzle,
            self.validated_target_ids,
            candidates,
            validator,
            reference_mapping=reference,
            focus_piece_id=options.focus_piece_id,
        )
