"""Benchmark validation convergence and per-frame latency across table transforms."""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List

import sys
import numpy as np

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tangram.config import Difficulty, ValidationOptions
from tangram.engine import ValidationEngine
from tangram.evaluator import PuzzleEvaluator
from tangram.utils import (
    jitter_records,
    place_targets,
    random_rigid_transform,
    set_random_seed,
    standard_tangram,
)


@dataclass
class BenchmarkRow:
    case: str
    seeds: int
    completion_mean: float
    completion_min: float
    binding_acc_mean: float
    binding_acc_min: float
    frames_to_complete_mean: float
    frames_to_complete_max: int
    latency_mean_ms: float
    latency_max_ms: float


@dataclass
class CaseResult:
    completion: float
    binding_accuracy: float
    frames_to_complete: int
    latencies_ms: List[float]


def run_case(
    seed: int,
    difficulty: Difficulty,
    mirror: bool,
    frames: int,
    position_sigma: float,
    rotation_sigma_deg: float,
) -> CaseResult:
    rng = set_random_seed(seed)
    puzzle = standard_tangram()
    theta, translation = random_rigid_transform(rng)
    placed = place_targets(puzzle, rotation=theta, translation=translation, mirror=mirror)
    expected = {f"piece-{t.id}": t.id for t in puzzle.targets}

    engine = ValidationEngine(puzzle, options=ValidationOptions(difficulty=difficulty))
    evaluator = PuzzleEvaluator()
    latencies: List[float] = []
    frames_to_complete = -1
    result = None
    for frame in range(1, frames + 1):
        records = jitter_records(placed, rng, position_sigma=position_sigma, rotation_sigma_deg=rotation_sigma_deg)
        t0 = time.perf_counter()
        result = engine.process_frame(records, timestamp=frame / 30.0)
        latencies.append((time.perf_counter() - t0) * 1000.0)
        if frames_to_complete < 0 and evaluator.compute_completion(result, puzzle) == 1.0:
            frames_to_complete = frame

    evaluation = evaluator.evaluate(result, puzzle, expected)
    return CaseResult(
        completion=evaluation.completion_ratio,
        binding_accuracy=evaluation.binding_accuracy or 0.0,
        frames_to_complete=frames_to_complete if frames_to_complete > 0 else frames + 1,
        latencies_ms=latencies,
    )


def run_case_multi_seed(
    seeds: List[int],
    difficulty: Difficulty,
    mirror: bool,
    frames: int,
    position_sigma: float,
    rotation_sigma_deg: float,
) -> BenchmarkRow:
    cases = [
        run_case(seed, difficulty, mirror, frames, position_sigma, rotation_sigma_deg) for seed in seeds
    ]
    completion = np.array([c.completion for c in cases], dtype=np.float64)
    binding = np.array([c.binding_accuracy for c in cases], dtype=np.float64)
    converge = np.array([c.frames_to_complete for c in cases], dtype=np.float64)
    latency = np.concatenate([np.asarray(c.latencies_ms, dtype=np.float64) for c in cases])
    return BenchmarkRow(
        case=f"{difficulty.value}{'/mirror' if mirror else ''}",
        seeds=len(seeds),
        completion_mean=float(np.mean(completion)),
        completion_min=float(np.min(completion)),
        binding_acc_mean=float(np.mean(binding)),
        binding_acc_min=float(np.min(binding)),
        frames_to_complete_mean=float(np.mean(converge)),
        frames_to_complete_max=int(np.max(converge)),
        latency_mean_ms=float(np.mean(latency)),
        latency_max_ms=float(np.max(latency)),
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run tangram validation benchmark over random table transforms.")
    parser.add_argument(
        "--difficulties",
        nargs="+",
        choices=[d.value for d in Difficulty],
        default=[d.value for d in Difficulty],
        help="Tolerance tiers to benchmark (default: all)",
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument(
        "--num-seeds",
        type=int,
        default=10,
        help="Number of random transforms per case (default: 10)",
    )
    parser.add_argument("--frames", type=int, default=10, help="Frames replayed per case (default: 10)")
    parser.add_argument("--position-noise", type=float, default=1.5, help="Position jitter sigma in scene units")
    parser.add_argument("--rotation-noise", type=float, default=1.0, help="Rotation jitter sigma in degrees")
    parser.add_argument("--mirror", action="store_true", help="Also benchmark face-down assemblies")
    return parser.parse_args()


def print_table(rows: List[BenchmarkRow]) -> None:
    header = (
        f"{'Case':<14}{'Seeds':>7}{'DoneMean':>10}{'DoneMin':>10}"
        f"{'BindMean':>10}{'BindMin':>10}{'Frames':>8}{'FrMax':>7}{'Lat(ms)':>9}{'LatMax':>9}"
    )
    print(header)
    print("-" * len(header))
    for row in rows:
        print(
            f"{row.case:<14}"
            f"{row.seeds:>7d}"
            f"{row.completion_mean:>10.4f}"
            f"{row.completion_min:>10.4f}"
            f"{row.binding_acc_mean:>10.4f}"
            f"{row.binding_acc_min:>10.4f}"
            f"{row.frames_to_complete_mean:>8.2f}"
            f"{row.frames_to_complete_max:>7d}"
            f"{row.latency_mean_ms:>9.3f}"
            f"{row.latency_max_ms:>9.3f}"
        )


def main() -> None:
    args = parse_args()
    seeds = [args.seed + i for i in range(args.num_seeds)]
    mirrors = [False, True] if args.mirror else [False]
    rows = [
        run_case_multi_seed(
            seeds,
            difficulty=Difficulty(name),
            mirror=mirror,
            frames=args.frames,
            position_sigma=args.position_noise,
            rotation_sigma_deg=args.rotation_noise,
        )
        for name in args.difficulties
        for mirror in mirrors
    ]
    print_table(rows)


if __name__ == "__main__":
    main()
