"""Tests for the piece catalogue and puzzle definitions."""

from __future__ import annotations

import json
import math
from collections import Counter

import pytest

from tangram.pieces import STANDARD_PIECE_COUNTS, PieceType, Puzzle, TargetPiece
from tangram.utils import standard_tangram


def test_piece_type_parse_aliases() -> None:
    """Instance suffixes, snake_case and case differences all resolve."""
    assert PieceType.parse("smallTriangle2") is PieceType.SMALL_TRIANGLE
    assert PieceType.parse("large_triangle") is PieceType.LARGE_TRIANGLE
    assert PieceType.parse("Medium-Triangle") is PieceType.MEDIUM_TRIANGLE
    assert PieceType.parse("SQUARE") is PieceType.SQUARE
    assert PieceType.parse(PieceType.PARALLELOGRAM) is PieceType.PARALLELOGRAM


def test_piece_type_parse_unknown_raises() -> None:
    """Unknown shape names are rejected."""
    with pytest.raises(ValueError, match="Unknown piece type"):
        PieceType.parse("hexagon")


def test_symmetry_properties() -> None:
    """Rotational symmetry order per shape."""
    assert PieceType.SQUARE.symmetry_order == 4
    assert PieceType.PARALLELOGRAM.symmetry_order == 2
    assert PieceType.LARGE_TRIANGLE.symmetry_order == 1
    assert [t for t in PieceType if t.is_mirrorable] == [PieceType.PARALLELOGRAM]


def test_standard_tangram_composition() -> None:
    """The standard square uses the classic seven-piece set."""
    puzzle = standard_tangram()
    counts = Counter(t.piece_type for t in puzzle.targets)
    assert dict(counts) == STANDARD_PIECE_COUNTS
    assert len(puzzle) == 7


def test_puzzle_rejects_duplicate_ids() -> None:
    """Target ids must be unique."""
    target = TargetPiece("a", PieceType.SQUARE, (0.0, 0.0), 0.0)
    with pytest.raises(ValueError, match="Duplicate target id"):
        Puzzle("dup", (target, target))


def test_puzzle_unknown_target_raises() -> None:
    """Looking up a missing target id fails loudly, ``get`` does not."""
    puzzle = standard_tangram()
    with pytest.raises(ValueError, match="Unknown target id"):
        puzzle.target("nope")
    assert puzzle.get("nope") is None
    assert puzzle.get(None) is None


def test_target_from_transform_folds_mirrored_triangle() -> None:
    """A mirrored triangle target is stored as an unmirrored rotation."""
    target = TargetPiece.from_dict({"id": "t", "type": "smallTriangle", "transform": [1, 0, 0, -1, 10, 20]})
    assert target.position == (10.0, 20.0)
    assert target.mirrored is False
    assert target.rotation == pytest.approx(-math.pi / 2.0)


def test_target_from_transform_keeps_mirrored_parallelogram() -> None:
    """The parallelogram keeps its mirror flag."""
    target = TargetPiece.from_dict({"id": "p", "type": "parallelogram", "transform": [1, 0, 0, -1, 0, 0]})
    assert target.mirrored is True
    assert target.rotation == pytest.approx(0.0)


def test_puzzle_load_round_trip(tmp_path) -> None:
    """A saved puzzle document loads back to the same targets."""
    puzzle = standard_tangram()
    path = tmp_path / "square.json"
    path.write_text(json.dumps(puzzle.to_dict()), encoding="utf-8")
    loaded = Puzzle.load(path)
    assert loaded.id == puzzle.id
    for original, restored in zip(puzzle.targets, loaded.targets):
        assert restored.id == original.id
        assert restored.piece_type is original.piece_type
        assert restored.position == pytest.approx(original.position)
        assert restored.rotation == pytest.approx(original.rotation)
        assert restored.mirrored == original.mirrored


def test_puzzle_from_dict_rotation_degrees() -> None:
    """Targets may give their rotation in degrees."""
    puzzle = Puzzle.from_dict(
        {"id": "one", "pieces": [{"id": "s", "type": "square", "position": [1, 2], "rotation_deg": 30}]}
    )
    assert puzzle.target("s").rotation == pytest.approx(math.radians(30.0))


def test_puzzle_from_dict_requires_pieces() -> None:
    """Documents without a pieces list are rejected."""
    with pytest.raises(ValueError, match="'pieces' list"):
        Puzzle.from_dict({"id": "empty"})
