"""Replay a recorded frame log through the tangram validation engine."""

from __future__ import annotations

import argparse
import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from tangram.config import Difficulty, EngineConfig, ValidationOptions
from tangram.engine import ValidationEngine, ValidationResult
from tangram.evaluator import PuzzleEvaluator
from tangram.geometry import piece_polygon
from tangram.pieces import Puzzle
from tangram.tracker import HysteresisConfig
from tangram.utils import STANDARD_UNIT


def parse_difficulty(value: str) -> Difficulty:
    """Parse a difficulty tier name."""
    try:
        return Difficulty(value.strip().lower())
    except ValueError as exc:
        choices = ", ".join(d.value for d in Difficulty)
        raise argparse.ArgumentTypeError(f"difficulty must be one of: {choices}") from exc


def parse_hysteresis(value: str) -> Tuple[int, int]:
    """Parse hysteresis in format CONFIRM:RELEASE, e.g. 2:4."""
    text = value.strip()
    if ":" not in text:
        raise argparse.ArgumentTypeError("hysteresis must be in format CONFIRM:RELEASE, e.g. 2:4")
    confirm_text, release_text = text.split(":", maxsplit=1)
    try:
        confirm = int(confirm_text)
        release = int(release_text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("hysteresis frame counts must be integers") from exc
    if confirm < 1 or release <= confirm:
        raise argparse.ArgumentTypeError("need 1 <= CONFIRM < RELEASE")
    return confirm, release


def read_frames(path: Path) -> Iterator[Tuple[Optional[float], List[Dict[str, Any]]]]:
    """Yield ``(timestamp, records)`` from a JSON-lines frame log."""
    with open(path, "r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                frame = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{line_no}: invalid JSON ({exc.msg})") from exc
            if isinstance(frame, list):
                yield None, frame
            elif isinstance(frame, dict) and isinstance(frame.get("pieces"), list):
                timestamp = frame.get("timestamp")
                yield (float(timestamp) if timestamp is not None else None), frame["pieces"]
            else:
                raise ValueError(f"{path}:{line_no}: expected a list or an object with 'pieces'")


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Validate recorded tangram piece poses against a puzzle.")
    parser.add_argument("--puzzle", required=True, help="Path to puzzle JSON definition")
    parser.add_argument("--frames", required=True, help="Path to JSON-lines frame log")
    parser.add_argument(
        "--difficulty",
        type=parse_difficulty,
        default=Difficulty.NORMAL,
        help="Tolerance tier: easy, normal or hard (default: normal)",
    )
    parser.add_argument(
        "--hysteresis",
        type=parse_hysteresis,
        default=(2, 4),
        help="Confirm and release frame counts as CONFIRM:RELEASE (default: 2:4)",
    )
    parser.add_argument("--verbose-frames", action="store_true", help="Print a status line for every frame")
    parser.add_argument("--hint", action="store_true", help="Print a hint for the final state")
    parser.add_argument("--show", action="store_true", help="Plot observed pieces and ghost targets at the end")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    return parser.parse_args()


def format_frame(result: ValidationResult) -> str:
    """One-line summary of a frame result."""
    statuses = " ".join(f"{pid}={report.status.value}" for pid, report in result.pieces.items())
    return f"[{result.frame_index:4d}] t={result.timestamp:8.3f} validated={len(result.validated_target_ids)} {statuses}"


def show_result(engine: ValidationEngine, result: ValidationResult) -> None:
    """Plot observed piece outlines with each group's targets mapped back into observed space."""
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(7, 7))
    colors = {"validated": "tab:green", "provisional": "tab:orange", "invalid": "tab:red", "unvalidated": "tab:gray"}
    for piece_id, report in result.pieces.items():
        obs = engine.groups.tracks[piece_id].observation
        poly = piece_polygon(obs.piece_type, obs.position, obs.rotation, obs.mirrored, STANDARD_UNIT)
        ax.fill(poly[:, 0], poly[:, 1], alpha=0.45, color=colors[report.status.value])
        ax.annotate(piece_id, obs.position, ha="center", fontsize=7)
    for mapping in engine.mappings.values():
        for target in engine.puzzle.targets:
            position, rotation, mirrored = mapping.inverse_pose(target.position, target.rotation, target.mirrored)
            poly = piece_polygon(target.piece_type, position, rotation, mirrored, STANDARD_UNIT)
            closed = list(poly) + [poly[0]]
            ax.plot([p[0] for p in closed], [p[1] for p in closed], "k--", linewidth=0.8)
    ax.set_aspect("equal")
    ax.set_title(f"Frame {result.frame_index}: {len(result.validated_target_ids)}/{len(engine.puzzle)} validated")
    plt.tight_layout()
    plt.show()


def main() -> None:
    """Replay the frame log and report the final validation state."""
    args = parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    puzzle = Puzzle.load(args.puzzle)
    confirm, release = args.hysteresis
    config = EngineConfig(
        hysteresis=HysteresisConfig(confirm_frames=confirm, release_frames=release, counter_cap=max(5, release))
    )
    engine = ValidationEngine(puzzle, config=config, options=ValidationOptions(difficulty=args.difficulty))

    result: Optional[ValidationResult] = None
    for timestamp, records in read_frames(Path(args.frames)):
        result = engine.process_frame(records, timestamp=timestamp)
        if args.verbose_frames:
            print(format_frame(result))

    print(f"Puzzle: {puzzle.id} ({len(puzzle)} targets)")
    print(f"Difficulty: {args.difficulty.value}")
    if result is None:
        print("No frames in log")
        return

    evaluation = PuzzleEvaluator().evaluate(result, puzzle)
    print(f"Frames processed: {result.frame_index}")
    print(f"Completion: {evaluation.completion_ratio:.0%}")
    print(f"Validated targets: {', '.join(sorted(result.validated_target_ids)) or '-'}")
    for piece_id, report in result.pieces.items():
        reason = "" if report.last_failure_reason.value == "none" else f" ({report.last_failure_reason.value})"
        print(f"  {piece_id}: {report.status.value} -> {report.bound_target_id or '-'}{reason}")
    for group_id, group in result.groups.items():
        summary = group.mapping
        mapping_text = "no mapping"
        if summary is not None:
            mapping_text = (
                f"theta={summary['rotation_deg']:.1f} deg T=({summary['translation'][0]:.1f}, "
                f"{summary['translation'][1]:.1f}) mirror={summary['mirror_parity']} "
                f"v{summary['version']} pairs={summary['pair_count']}"
            )
        print(f"  group {group_id} [{group.state.value}, {group.confidence:.2f}] anchor={group.anchor_id}: {mapping_text}")

    if args.hint:
        hint = engine.suggest_hint()
        if hint is None:
            print("Hint: puzzle complete")
        else:
            where = ""
            if hint.target_pose is not None:
                (x, y), rotation, _ = hint.target_pose
                where = f" at ({x:.0f}, {y:.0f}) {math.degrees(rotation):.0f} deg"
            piece = hint.piece_id or f"a {hint.piece_type.value}"
            print(f"Hint: place {piece} on {hint.target_id}{where} [{hint.failure_reason.value}]")

    if args.show:
        show_result(engine, result)


if __name__ == "__main__":
    main()
