"""Frame-level tests for the validation engine."""

from __future__ import annotations

import logging
import math
from dataclasses import replace

import pytest

from tangram.config import EngineConfig, ValidationOptions
from tangram.engine import ValidationEngine, ValidationResult
from tangram.pieces import PieceType, Puzzle, TargetPiece
from tangram.tracker import FailureReason, HysteresisConfig, ValidationStatus
from tangram.utils import move_record, place_targets, standard_tangram

SCENARIO = Puzzle(
    "scenario",
    (
        TargetPiece("A", PieceType.SQUARE, (100.0, 100.0), 0.0),
        TargetPiece("B", PieceType.SMALL_TRIANGLE, (150.0, 100.0), math.radians(45.0)),
    ),
)
SQUARE_RECORD = {"id": "square", "type": "square", "position": [500.0, 500.0], "rotation_deg": 30.0}
TRIANGLE_RECORD = {"id": "triangle", "type": "smallTriangle", "position": [551.0, 500.0], "rotation_deg": 75.0}


def _frames(engine: ValidationEngine, records, count: int) -> ValidationResult:
    result = None
    for _ in range(count):
        result = engine.process_frame(records)
    return result


def _statuses(result: ValidationResult) -> set[ValidationStatus]:
    return {report.status for report in result.pieces.values()}


def _assert_exclusive(result: ValidationResult) -> None:
    bound = [r.bound_target_id for r in result.pieces.values() if r.bound_target_id is not None]
    assert len(bound) == len(set(bound))


def _assert_pairs_consistent(engine: ValidationEngine) -> None:
    for mapping in engine.mappings.values():
        for piece_id, target_id in mapping.pairs[1:]:
            state = engine.piece_state(piece_id)
            assert state.status is ValidationStatus.VALIDATED
            assert state.bound_target_id == target_id


def _placed(rotation: float = 0.7, translation=(300.0, -150.0), mirror: bool = False):
    puzzle = standard_tangram()
    return puzzle, place_targets(puzzle, rotation=rotation, translation=translation, mirror=mirror)


def test_literal_scenario_single_confirm_frame() -> None:
    """Square anchors, triangle validates on frame 2 and the mapping is refined."""
    config = EngineConfig(hysteresis=HysteresisConfig(confirm_frames=1, release_frames=4))
    engine = ValidationEngine(SCENARIO, config=config)

    first = engine.process_frame([SQUARE_RECORD])
    assert first.pieces["square"].status is ValidationStatus.PROVISIONAL
    assert first.pieces["square"].bound_target_id is None
    group = first.group_of("square")
    assert group.anchor_id == "square"
    assert group.mapping["anchor_target_id"] == "A"
    assert group.mapping["rotation_deg"] == pytest.approx(-30.0)
    assert group.mapping["translation"] == pytest.approx((-583.013, -83.013), abs=1e-3)
    assert group.mapping["pair_count"] == 1

    second = engine.process_frame([SQUARE_RECORD, TRIANGLE_RECORD])
    assert second.pieces["square"].status is ValidationStatus.VALIDATED
    assert second.pieces["triangle"].status is ValidationStatus.VALIDATED
    assert second.pieces["triangle"].bound_target_id == "B"
    mapping = second.group_of("triangle").mapping
    assert mapping["pair_count"] == 2
    assert mapping["version"] == 2
    assert -27.0 < mapping["rotation_deg"] < -21.0
    assert second.validated_target_ids == frozenset({"A", "B"})


def test_literal_scenario_default_hysteresis() -> None:
    """With two confirm frames both pieces validate one frame later."""
    engine = ValidationEngine(SCENARIO)
    engine.process_frame([SQUARE_RECORD])
    second = engine.process_frame([SQUARE_RECORD, TRIANGLE_RECORD])
    assert _statuses(second) == {ValidationStatus.PROVISIONAL}
    assert second.pieces["triangle"].bound_target_id == "B"
    third = engine.process_frame([SQUARE_RECORD, TRIANGLE_RECORD])
    assert _statuses(third) == {ValidationStatus.VALIDATED}
    assert third.group_of("square").mapping["pair_count"] == 2


def test_lone_piece_never_validates() -> None:
    """A single piece has nothing to relate to and stays provisional."""
    engine = ValidationEngine(SCENARIO)
    result = _frames(engine, [SQUARE_RECORD], 6)
    assert result.pieces["square"].status is ValidationStatus.PROVISIONAL
    assert result.validated_target_ids == frozenset()


@pytest.mark.parametrize(
    "rotation, translation, mirror",
    [
        (0.0, (0.0, 0.0), False),
        (1.2, (400.0, -250.0), False),
        (-2.5, (-300.0, 120.0), False),
        (0.4, (50.0, 50.0), True),
        (2.9, (-520.0, 310.0), True),
    ],
)
def test_rigid_invariance(rotation: float, translation, mirror: bool) -> None:
    """Validation does not depend on where or how the assembly sits on the table."""
    puzzle, records = _placed(rotation, translation, mirror)
    engine = ValidationEngine(puzzle)
    first = engine.process_frame(records)
    assert _statuses(first) == {ValidationStatus.PROVISIONAL}
    result = engine.process_frame(records)
    assert _statuses(result) == {ValidationStatus.VALIDATED}
    assert result.validated_target_ids == frozenset(t.id for t in puzzle.targets)
    for target in puzzle.targets:
        assert result.pieces[f"piece-{target.id}"].bound_target_id == target.id
    assert len(result.groups) == 1
    mapping = next(iter(result.groups.values())).mapping
    assert mapping["mirror_parity"] is mirror
    assert mapping["pair_count"] == 7
    _assert_pairs_consistent(engine)


def test_rigid_shift_revalidates_after_release() -> None:
    """Moving a finished assembly keeps it validated through hysteresis, then re-seeds."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle)
    _frames(engine, records, 2)
    shifted = [move_record(r, dx=300.0) for r in records]

    for _ in range(3):
        result = engine.process_frame(shifted)
        assert _statuses(result) == {ValidationStatus.VALIDATED}
    result = engine.process_frame(shifted)
    assert _statuses(result) == {ValidationStatus.INVALID}
    assert all(r.bound_target_id is None for r in result.pieces.values())

    result = engine.process_frame(shifted)
    assert _statuses(result) == {ValidationStatus.PROVISIONAL}
    result = engine.process_frame(shifted)
    assert _statuses(result) == {ValidationStatus.VALIDATED}
    for target in puzzle.targets:
        assert result.pieces[f"piece-{target.id}"].bound_target_id == target.id
    _assert_pairs_consistent(engine)


def test_flipped_parallelogram_needs_flip() -> None:
    """A parallelogram with the wrong chirality reports needsFlip until corrected."""
    puzzle, records = _placed()
    wrong = [
        move_record(r, mirrored=not r["mirrored"]) if r["type"] == "parallelogram" else r for r in records
    ]
    engine = ValidationEngine(puzzle)
    result = _frames(engine, wrong, 2)
    para = result.pieces["piece-parallelogram"]
    assert para.status is ValidationStatus.INVALID
    assert para.last_failure_reason is FailureReason.NEEDS_FLIP
    assert para.bound_target_id is None
    assert result.pieces["piece-square"].status is ValidationStatus.VALIDATED

    result = engine.process_frame(records)
    para = result.pieces["piece-parallelogram"]
    assert para.status is ValidationStatus.PROVISIONAL
    assert para.last_failure_reason is FailureReason.NONE
    result = engine.process_frame(records)
    assert result.pieces["piece-parallelogram"].status is ValidationStatus.VALIDATED
    assert result.pieces["piece-parallelogram"].bound_target_id == "parallelogram"


def test_swapped_duplicates_rebind_once_each() -> None:
    """Swapping the two large triangles moves each binding exactly once."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle)
    _frames(engine, records, 2)
    by_id = {r["id"]: r for r in records}
    swapped = []
    for record in records:
        if record["id"] == "piece-large-1":
            other = by_id["piece-large-2"]
        elif record["id"] == "piece-large-2":
            other = by_id["piece-large-1"]
        else:
            swapped.append(record)
            continue
        swapped.append(move_record(record, position=list(other["position"]), rotation=other["rotation"]))

    history = {"piece-large-1": ["large-1"], "piece-large-2": ["large-2"]}
    for _ in range(6):
        result = engine.process_frame(swapped)
        _assert_exclusive(result)
        for piece_id, seen in history.items():
            bound = result.pieces[piece_id].bound_target_id
            if bound is not None and bound != seen[-1]:
                seen.append(bound)

    assert history == {"piece-large-1": ["large-1", "large-2"], "piece-large-2": ["large-2", "large-1"]}
    assert result.pieces["piece-large-1"].status is ValidationStatus.VALIDATED
    assert result.pieces["piece-large-2"].status is ValidationStatus.VALIDATED
    assert len(result.validated_target_ids) == 7


def test_single_noisy_frame_does_not_invalidate() -> None:
    """One bad frame keeps the piece validated and in its group; M bad frames release it."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle)
    _frames(engine, records, 2)
    noisy = [move_record(r, dx=50.0) if r["id"] == "piece-square" else r for r in records]

    result = engine.process_frame(noisy)
    square = result.pieces["piece-square"]
    assert square.status is ValidationStatus.VALIDATED
    assert square.last_failure_reason is FailureReason.WRONG_POSITION
    assert square.group_id == result.pieces["piece-medium"].group_id
    assert engine.piece_state("piece-square").consecutive_fail == 1

    result = engine.process_frame(records)
    assert result.pieces["piece-square"].status is ValidationStatus.VALIDATED
    assert engine.piece_state("piece-square").consecutive_fail == 0

    statuses = [engine.process_frame(noisy).pieces["piece-square"].status for _ in range(4)]
    assert statuses == [ValidationStatus.VALIDATED] * 3 + [ValidationStatus.INVALID]
    assert engine.piece_state("piece-square").bound_target_id is None


def test_anchor_removal_reelects_and_keeps_validation() -> None:
    """Removing the anchor hands the group to the next best piece without losing progress."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle, config=EngineConfig(retain_missing_frames=0))
    result = _frames(engine, records, 2)
    group = next(iter(result.groups.values()))
    assert group.anchor_id == "piece-small-1"

    remaining = [r for r in records if r["id"] != "piece-small-1"]
    result = engine.process_frame(remaining)
    assert "piece-small-1" not in result.pieces
    assert len(result.groups) == 1
    group = next(iter(result.groups.values()))
    assert group.anchor_id == "piece-square"
    assert group.mapping["pair_count"] == 6
    assert _statuses(result) == {ValidationStatus.VALIDATED}
    assert "small-1" not in result.validated_target_ids
    _assert_pairs_consistent(engine)


def test_missing_piece_retained_for_a_few_frames() -> None:
    """Briefly occluded pieces keep their state."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle, config=EngineConfig(retain_missing_frames=2))
    _frames(engine, records, 2)
    without = [r for r in records if r["id"] != "piece-medium"]
    result = _frames(engine, without, 2)
    assert result.pieces["piece-medium"].status is ValidationStatus.VALIDATED
    result = engine.process_frame(without)
    assert "piece-medium" not in result.pieces


def test_ambiguous_binding_holds_until_resolved() -> None:
    """A triangle halfway between two identical targets waits instead of guessing."""
    puzzle = Puzzle(
        "ambiguous",
        (
            TargetPiece("S", PieceType.SQUARE, (0.0, 0.0), 0.0),
            TargetPiece("T1", PieceType.SMALL_TRIANGLE, (60.0, 0.0), 0.0),
            TargetPiece("T2", PieceType.SMALL_TRIANGLE, (60.0, 20.0), 0.0),
        ),
    )
    square = {"id": "p1-square", "type": "square", "position": [0.0, 0.0], "rotation": 0.0}
    triangle = {"id": "p2-triangle", "type": "smallTriangle", "position": [60.0, 10.0], "rotation": 0.0}
    engine = ValidationEngine(puzzle)
    result = _frames(engine, [square, triangle], 3)
    assert result.pieces["p2-triangle"].status is ValidationStatus.PROVISIONAL
    assert result.pieces["p2-triangle"].bound_target_id is None
    assert result.pieces["p1-square"].status is ValidationStatus.PROVISIONAL

    resolved = move_record(triangle, dy=-8.0)
    result = _frames(engine, [square, resolved], 2)
    assert result.pieces["p2-triangle"].bound_target_id == "T1"
    assert _statuses(result) == {ValidationStatus.VALIDATED}


def test_incremental_build() -> None:
    """Adding pieces one at a time converges on the full assembly."""
    puzzle, records = _placed(rotation=-0.9, translation=(120.0, 80.0))
    by_target = {r["id"][len("piece-"):]: r for r in records}
    order = ["square", "small-2", "medium", "large-2", "small-1", "large-1", "parallelogram"]
    engine = ValidationEngine(puzzle)
    visible = []
    for target_id in order:
        visible.append(by_target[target_id])
        result = _frames(engine, visible, 3)
        _assert_exclusive(result)
    assert _statuses(result) == {ValidationStatus.VALIDATED}
    for target_id in order:
        assert result.pieces[f"piece-{target_id}"].bound_target_id == target_id
    _assert_pairs_consistent(engine)


def test_far_apart_pieces_form_separate_groups() -> None:
    """Two assemblies far apart get their own groups and mappings."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle)
    stray = {"id": "stray", "type": "square", "position": [5000.0, 5000.0], "rotation": 0.0}
    result = _frames(engine, records + [stray], 2)
    assert len(result.groups) == 2
    assert result.pieces["stray"].group_id != result.pieces["piece-square"].group_id
    assert result.pieces["stray"].status is ValidationStatus.INVALID
    assert result.pieces["stray"].last_failure_reason is FailureReason.WRONG_PIECE_TYPE
    assert result.groups[result.pieces["stray"].group_id].mapping is None


def test_malformed_records_are_skipped(caplog) -> None:
    """Bad records are logged and the rest of the frame is processed."""
    engine = ValidationEngine(SCENARIO)
    with caplog.at_level(logging.WARNING, logger="tangram.normalizer"):
        result = engine.process_frame([SQUARE_RECORD, {"id": "broken"}])
    assert list(result.pieces) == ["square"]
    assert "Dropping malformed pose record" in caplog.text


def test_reset_and_puzzle_swap() -> None:
    """Reset and load_puzzle discard all session state."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle)
    _frames(engine, records, 2)
    assert engine.validated_target_ids

    engine.reset()
    assert engine.last_result is None
    assert engine.mappings == {}
    assert engine.validated_target_ids == frozenset()
    assert engine.piece_state("piece-square").status is ValidationStatus.UNVALIDATED
    result = engine.process_frame(records)
    assert result.frame_index == 1
    assert _statuses(result) == {ValidationStatus.PROVISIONAL}

    engine.load_puzzle(SCENARIO)
    assert engine.puzzle is SCENARIO
    assert engine.mappings == {}
    result = engine.process_frame([SQUARE_RECORD])
    assert list(result.pieces) == ["square"]


def test_inbox_processes_latest_frame() -> None:
    """Only the most recent submitted frame is processed."""
    engine = ValidationEngine(SCENARIO)
    engine.submit([SQUARE_RECORD], timestamp=1.0)
    engine.submit([SQUARE_RECORD, TRIANGLE_RECORD], timestamp=2.0)
    result = engine.process_pending()
    assert result.frame_index == 1
    assert result.timestamp == 2.0
    assert set(result.pieces) == {"square", "triangle"}
    assert engine.process_pending() is None


def test_difficulty_option_per_frame() -> None:
    """A harder tier can reject a pose the normal tier accepts."""
    puzzle, records = _placed(rotation=0.0, translation=(0.0, 0.0))
    nudged = [move_record(r, dx=33.0) if r["id"] == "piece-medium" else r for r in records]
    engine = ValidationEngine(puzzle)
    result = _frames(engine, nudged, 2)
    assert result.pieces["piece-medium"].status is ValidationStatus.VALIDATED
    hard = ValidationEngine(puzzle, options=ValidationOptions(difficulty="hard"))
    result = _frames(hard, nudged, 2)
    assert result.pieces["piece-medium"].status is ValidationStatus.INVALID


def test_hint_for_missing_piece() -> None:
    """With one target left and no candidate piece, the hint shows where it goes."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle)
    _frames(engine, [r for r in records if r["id"] != "piece-medium"], 3)
    hint = engine.suggest_hint()
    assert hint.target_id == "medium"
    assert hint.piece_id is None
    medium = next(r for r in records if r["id"] == "piece-medium")
    (x, y), rotation, mirrored = hint.target_pose
    assert math.dist((x, y), medium["position"]) < 1.0
    assert abs(math.remainder(rotation - medium["rotation"], 2.0 * math.pi)) < math.radians(1.0)
    assert mirrored is False


def test_hint_reports_failure_reason() -> None:
    """A misplaced piece is named along with what is wrong with it."""
    puzzle, records = _placed()
    turned = [
        move_record(r, rotation=r["rotation"] + math.pi / 2.0) if r["id"] == "piece-medium" else r for r in records
    ]
    engine = ValidationEngine(puzzle)
    _frames(engine, turned, 3)
    hint = engine.suggest_hint()
    assert hint.target_id == "medium"
    assert hint.piece_id == "piece-medium"
    assert hint.failure_reason is FailureReason.WRONG_ROTATION


def test_hint_none_when_complete() -> None:
    """No hint once every target is validated."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle)
    _frames(engine, records, 2)
    assert engine.suggest_hint() is None


def test_lone_spare_does_not_consume_a_slot() -> None:
    """A spare duplicate that never validates leaves its target open for the real piece."""
    puzzle, records = _placed()
    spare = {"id": "spare", "type": "largeTriangle", "position": [5000.0, 5000.0], "rotation": 0.0}
    engine = ValidationEngine(puzzle)
    first = engine.process_frame([spare])
    assert first.pieces["spare"].bound_target_id is None

    assembly = [r for r in records if r["id"] != "piece-large-2"]
    result = _frames(engine, assembly + [spare], 6)
    assert result.pieces["piece-large-1"].status is ValidationStatus.VALIDATED
    assert result.pieces["piece-large-1"].bound_target_id == "large-1"
    assert result.pieces["spare"].bound_target_id is None
    assert result.pieces["spare"].status is not ValidationStatus.VALIDATED
    _assert_exclusive(result)


def test_validated_parallelogram_keeps_anchor_next_to_misplaced_piece() -> None:
    """A validated parallelogram anchors over an unvalidated triangle and stays validated."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle, config=EngineConfig(retain_missing_frames=0))
    by_id = {r["id"]: r for r in records}
    pair = [by_id["piece-square"], by_id["piece-parallelogram"]]
    result = _frames(engine, pair, 3)
    assert result.pieces["piece-parallelogram"].status is ValidationStatus.VALIDATED

    small = by_id["piece-small-1"]
    misplaced = move_record(small, dx=25.0, rotation=small["rotation"] + 1.0)
    for _ in range(5):
        result = engine.process_frame([by_id["piece-parallelogram"], misplaced])
        group = result.group_of("piece-parallelogram")
        assert group.anchor_id == "piece-parallelogram"
        assert result.pieces["piece-parallelogram"].status is ValidationStatus.VALIDATED
    assert result.pieces["piece-small-1"].status is ValidationStatus.INVALID
    assert result.pieces["piece-small-1"].last_failure_reason is FailureReason.WRONG_ROTATION


def test_orientation_feedback_for_lone_pieces() -> None:
    """Pieces with no established mapping still get rotation and flip feedback."""
    puzzle = standard_tangram()
    medium = {"id": "medium", "type": "mediumTriangle", "position": [0.0, 0.0], "rotation_deg": 200.0}
    para = {
        "id": "para",
        "type": "parallelogram",
        "position": [1000.0, 0.0],
        "rotation_deg": -90.0,
        "mirrored": False,
    }
    square = {"id": "square", "type": "square", "position": [2000.0, 0.0], "rotation_deg": 135.0}
    engine = ValidationEngine(puzzle)
    result = _frames(engine, [medium, para, square], 2)

    assert len(result.groups) == 3
    assert result.validated_target_ids == frozenset()
    assert result.pieces["medium"].orientation.failure is FailureReason.WRONG_ROTATION
    assert result.pieces["medium"].orientation.rotation_error == pytest.approx(math.radians(20.0))
    assert result.pieces["para"].orientation.failure is FailureReason.NEEDS_FLIP
    assert result.pieces["square"].orientation.oriented
    assert result.oriented_target_ids == frozenset({"square"})

    hint = engine.suggest_hint()
    assert hint.piece_id == "para"
    assert hint.target_id == "parallelogram"
    assert hint.failure_reason is FailureReason.NEEDS_FLIP
    assert hint.position_error is None

    hint = engine.suggest_hint(ValidationOptions(focus_piece_id="medium"))
    assert hint.piece_id == "medium"
    assert hint.failure_reason is FailureReason.WRONG_ROTATION
    assert hint.rotation_error == pytest.approx(math.radians(20.0))


def test_orientation_cleared_once_assembly_is_mapped() -> None:
    """Members of an established group report mapped errors, not orientation."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle)
    result = _frames(engine, records, 2)
    assert all(r.orientation is None for r in result.pieces.values())
    assert result.oriented_target_ids == frozenset()


def test_split_and_merge_keep_mappings_consistent() -> None:
    """Splitting an assembly gives each side its own mapping; merging refits one."""
    puzzle, records = _placed()
    engine = ValidationEngine(puzzle)
    result = _frames(engine, records, 2)
    group = next(iter(result.groups.values()))
    assert group.anchor_id == "piece-small-1"
    assert group.mapping["version"] == 2
    assert group.mapping["pair_count"] == 7

    moved = {"piece-large-2", "piece-small-2", "piece-square"}
    split = [move_record(r, dx=2000.0) if r["id"] in moved else r for r in records]
    result = engine.process_frame(split)
    assert len(result.groups) == 2
    kept = result.group_of("piece-small-1")
    assert kept.group_id == group.group_id
    assert kept.anchor_id == "piece-small-1"
    assert kept.mapping["version"] == 2
    assert kept.mapping["pair_count"] == 4
    other = result.group_of("piece-square")
    assert other.group_id != kept.group_id
    assert set(other.members) == moved
    assert other.anchor_id in moved
    assert other.mapping["anchor_id"] == other.anchor_id
    assert other.mapping["version"] == 2
    assert other.mapping["pair_count"] == 3
    assert _statuses(result) == {ValidationStatus.VALIDATED}
    _assert_pairs_consistent(engine)

    result = engine.process_frame(records)
    assert len(result.groups) == 1
    merged = next(iter(result.groups.values()))
    assert merged.group_id == group.group_id
    assert merged.anchor_id == "piece-small-1"
    assert merged.mapping["version"] == 3
    assert merged.mapping["pair_count"] == 7
    assert _statuses(result) == {ValidationStatus.VALIDATED}
    _assert_pairs_consistent(engine)


def test_rejected_refit_holds_pieces_and_warns_once(monkeypatch, caplog) -> None:
    """A refit that disagrees keeps the pieces provisional and is reported once."""
    engine = ValidationEngine(SCENARIO)

    def drifting_refit(mapping, correspondences):
        tx, ty = mapping.translation
        return replace(
            mapping,
            translation=(tx + 500.0, ty),
            version=mapping.version + 1,
            pairs=tuple(c.key for c in correspondences),
        )

    monkeypatch.setattr(engine.solver, "refine", drifting_refit)
    engine.process_frame([SQUARE_RECORD])
    with caplog.at_level(logging.DEBUG, logger="tangram.engine"):
        result = _frames(engine, [SQUARE_RECORD, TRIANGLE_RECORD], 6)

    assert ValidationStatus.VALIDATED not in _statuses(result)
    assert result.validated_target_ids == frozenset()
    assert result.group_of("square").mapping["pair_count"] == 1
    warnings = [
        r for r in caplog.records if r.name == "tangram.engine" and r.levelno == logging.WARNING and "refit" in r.getMessage()
    ]
    assert len(warnings) == 1
