#!/usr/bin/env python3

import argparse
import logging
import math
import os
import statistics
import time
from typing import Dict, List, Tuple

import cv2
import numpy as np

from piecetracker import imaging
from piecetracker.config import SearchConfig
from piecetracker.detector import SearchController
from piecetracker.imaging import RotationCache

Case = Tuple[str, np.ndarray]


def _percentile(sorted_vals: List[float], p: float) -> float:
    if not sorted_vals:
        return 0.0
    k = (len(sorted_vals) - 1) * (p / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_vals[int(k)]
    return sorted_vals[f] * (c - k) + sorted_vals[c] * (k - f)


def _format_ms(value_s: float) -> str:
    return f"{value_s * 1000.0:.2f} ms"


def _load_image(path: str) -> np.ndarray:
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is None:
        raise RuntimeError(f"Failed to load image: {path}")
    return img


def _resolve_cases(selected: List[str], probes_dir: str) -> List[Case]:
    if not os.path.isdir(probes_dir):
        raise FileNotFoundError(f"Missing probe directory: {probes_dir}")
    available = sorted(
        name for name in os.listdir(probes_dir) if name.lower().endswith((".png", ".jpg"))
    )
    names = selected or available
    resolved: List[Case] = []
    for name in names:
        if name not in available:
            raise ValueError(f"Unknown case '{name}'. Available: {', '.join(available)}")
        probe = imaging.preprocess(_load_image(os.path.join(probes_dir, name)))
        resolved.append((name, probe))
    return resolved


def _run_benchmark(
    reference: np.ndarray,
    cases: List[Case],
    config: SearchConfig,
    frames: int,
    repeats: int,
    warmup: int,
    use_cache: bool,
) -> Dict[str, List[float]]:
    timings: Dict[str, List[float]] = {name: [] for name, _ in cases}

    def _run_cases(record: bool) -> None:
        for name, probe in cases:
            # each case is a fresh session tracked over `frames` identical probes
            controller = SearchController(
                config, rotation_cache=RotationCache() if use_cache else None
            )
            controller.initialize_session(reference)
            for _ in range(frames):
                start = time.perf_counter()
                controller.detect(probe)
                if record:
                    timings[name].append(time.perf_counter() - start)

    for _ in range(warmup):
        _run_cases(record=False)

    for _ in range(repeats):
        _run_cases(record=True)

    return timings


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark per-frame detector latency.")
    parser.add_argument(
        "--frames",
        type=int,
        default=10,
        help="Consecutive frames per tracking session (per case).",
    )
    parser.add_argument(
        "--repeats",
        type=int,
        default=3,
        help="Repeat count for the session loop.",
    )
    parser.add_argument(
        "--warmup",
        type=int,
        default=1,
        help="Warmup passes before timing.",
    )
    parser.add_argument(
        "--case",
        action="append",
        default=[],
        help="Probe filename to benchmark (repeatable).",
    )
    parser.add_argument(
        "--media-dir",
        default=os.path.join(
            os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "media"
        ),
        help="Directory holding reference.png and probes/ (see create_sample_images.py).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Override SearchConfig.max_search_iterations.",
    )
    parser.add_argument(
        "--early-termination",
        type=float,
        default=None,
        help="Override SearchConfig.early_termination_threshold.",
    )
    parser.add_argument(
        "--medium-mode",
        type=float,
        default=None,
        help="Override the COARSE -> MEDIUM confidence threshold.",
    )
    parser.add_argument(
        "--fine-mode",
        type=float,
        default=None,
        help="Override the MEDIUM -> FINE confidence threshold.",
    )
    parser.add_argument(
        "--roi-off",
        action="store_true",
        help="Disable search-region narrowing.",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Disable the rotation cache.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    overrides = {}
    if args.roi_off:
        overrides["roi_enabled"] = False
    if args.max_iterations is not None:
        overrides["max_search_iterations"] = args.max_iterations
    if args.early_termination is not None:
        overrides["early_termination_threshold"] = args.early_termination
    if args.medium_mode is not None:
        overrides["medium_mode_threshold"] = args.medium_mode
    if args.fine_mode is not None:
        overrides["fine_mode_threshold"] = args.fine_mode
    config = SearchConfig.from_env(**overrides)

    reference_path = os.path.join(args.media_dir, "reference.png")
    if not os.path.exists(reference_path):
        raise FileNotFoundError(f"Missing reference image: {reference_path}")
    reference = _load_image(reference_path)
    cases = _resolve_cases(args.case, os.path.join(args.media_dir, "probes"))

    timings = _run_benchmark(
        reference=reference,
        cases=cases,
        config=config,
        frames=args.frames,
        repeats=args.repeats,
        warmup=args.warmup,
        use_cache=not args.no_cache,
    )

    total_runs = sum(len(v) for v in timings.values())
    print(
        f"Runs: {total_runs} | cases: {len(cases)} | "
        f"frames: {args.frames} | repeats: {args.repeats} | warmup: {args.warmup}"
    )
    print(
        "config:",
        f"roi={config.roi_enabled}",
        f"max_iterations={config.max_search_iterations}",
        f"early_termination={config.early_termination_threshold}",
        f"medium_mode={config.medium_mode_threshold}",
        f"fine_mode={config.fine_mode_threshold}",
        f"cache={not args.no_cache}",
    )

    def _summarize(label: str, values: List[float]) -> str:
        sorted_vals = sorted(values)
        return (
            f"{label}: median {_format_ms(statistics.median(sorted_vals))}, "
            f"mean {_format_ms(statistics.mean(sorted_vals))}, "
            f"p95 {_format_ms(_percentile(sorted_vals, 95))}, "
            f"min {_format_ms(sorted_vals[0])}, "
            f"max {_format_ms(sorted_vals[-1])}"
        )

    combined: List[float] = []
    for name, values in timings.items():
        combined.extend(values)
        print(_summarize(name, values))

    if combined:
        print(_summarize("overall", combined))


if __name__ == "__main__":
    main()
