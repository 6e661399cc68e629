#!/usr/bin/env python3
"""
Standalone script for evaluating the tracking state machine.

Runs a synthetic probe sequence (a patch of a synthetic reference drifting a
few pixels per frame, with an optional dropout window where the probe is
replaced by noise) and plots confidence, stable count and search mode per
frame.

Usage:
    python evaluate_tracking.py --frames 40
    python evaluate_tracking.py --dropout 15 20 --rotation 90 --save tracking.png
"""

import argparse
import logging
from typing import Dict, List, Optional, Tuple

import cv2
import matplotlib.pyplot as plt
import numpy as np

from create_sample_images import create_reference_image, crop_probe
from piecetracker import imaging
from piecetracker.config import SearchConfig, SearchMode
from piecetracker.detector import SearchController
from piecetracker.overlay import draw_match

PROBE_SIZE = 100
DRIFT_PX = 2


def run_sequence(
    frames: int = 40,
    rotation: int = 0,
    scale: float = 1.0,
    dropout: Optional[Tuple[int, int]] = None,
    seed: int = 0,
    config: Optional[SearchConfig] = None,
) -> Tuple[Dict[str, List], np.ndarray, SearchController]:
    """
    Track a drifting synthetic probe and record the detector state per frame.

    Args:
        frames: Number of frames in the sequence.
        rotation: Right-angle rotation applied to every probe (degrees).
        scale: Apparent scale of the probe relative to the reference.
        dropout: Inclusive `(start, end)` frame window where the probe is noise.
        seed: Seed for the reference texture and the dropout noise.
        config: Detector configuration (defaults to the environment).

    Returns:
        Tuple of (per-frame history, BGR reference, controller)
    """
    reference = create_reference_image(seed=seed)
    ref_h, ref_w = reference.shape[:2]
    rng = np.random.default_rng(seed + 1)

    controller = SearchController(
        config if config is not None else SearchConfig.from_env()
    )
    controller.initialize_session(reference)

    history: Dict[str, List] = {
        "confidence": [],
        "stable_count": [],
        "mode": [],
        "found": [],
        "region_area": [],
    }
    x0 = ref_w // 4
    y0 = ref_h // 4
    for i in range(frames):
        x = min(x0 + i * DRIFT_PX, ref_w - PROBE_SIZE)
        y = min(y0 + i * DRIFT_PX // 2, ref_h - PROBE_SIZE)
        if dropout is not None and dropout[0] <= i <= dropout[1]:
            size = int(round(PROBE_SIZE / scale))
            probe = rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)
        else:
            probe = crop_probe(
                reference, x, y, PROBE_SIZE, PROBE_SIZE, rotation=rotation, scale=scale
            )
        match = controller.detect(imaging.preprocess(probe))
        state = controller.get_state()
        history["confidence"].append(state.last_confidence)
        history["stable_count"].append(state.stable_count)
        history["mode"].append(int(state.mode))
        history["found"].append(match is not None)
        region = state.active_region
        history["region_area"].append(region.area if region is not None else 0)

    return history, reference, controller


def visualize_tracking(
    frames: int = 40,
    rotation: int = 0,
    scale: float = 1.0,
    dropout: Optional[Tuple[int, int]] = None,
    seed: int = 0,
    save_path: Optional[str] = None,
) -> None:
    print(f"\n{'=' * 60}")
    print(f"Tracking {frames} synthetic frames (rotation {rotation}°, scale {scale})")
    if dropout is not None:
        print(f"Dropout window: frames {dropout[0]}-{dropout[1]}")
    print(f"{'=' * 60}\n")

    history, reference, controller = run_sequence(
        frames=frames, rotation=rotation, scale=scale, dropout=dropout, seed=seed
    )
    found = sum(history["found"])
    print(f"  Frames matched: {found}/{frames}")
    print(f"  Peak stable count: {max(history['stable_count'])}")
    print(f"  Final mode: {SearchMode(history['mode'][-1]).name}")

    xs = np.arange(frames)
    fig, axes = plt.subplots(2, 2, figsize=(15, 10))
    fig.suptitle("Tracking Evaluation", fontsize=16)

    axes[0, 0].plot(xs, history["confidence"], marker="o", markersize=3)
    cfg = controller.config
    axes[0, 0].axhline(cfg.detection_threshold, color="orange", ls="--", label="detect")
    axes[0, 0].axhline(cfg.high_confidence_threshold, color="green", ls="--", label="high")
    axes[0, 0].set_ylim(0, 1.05)
    axes[0, 0].set_title("Last confidence")
    axes[0, 0].legend(loc="lower right")

    axes[0, 1].step(xs, history["stable_count"], where="post")
    axes[0, 1].set_ylim(0, cfg.max_stable_count + 1)
    axes[0, 1].set_title("Stable count")

    axes[1, 0].step(xs, history["mode"], where="post")
    axes[1, 0].set_yticks([int(m) for m in SearchMode])
    axes[1, 0].set_yticklabels([m.name for m in SearchMode])
    axes[1, 0].set_title("Search mode")
    if dropout is not None:
        for ax in (axes[0, 0], axes[0, 1], axes[1, 0]):
            ax.axvspan(dropout[0], dropout[1], color="grey", alpha=0.2)

    state = controller.get_state()
    annotated = draw_match(
        cv2.cvtColor(reference, cv2.COLOR_BGR2RGB),
        state.last_match,
        state.active_region,
        config=cfg,
    )
    axes[1, 1].imshow(annotated)
    axes[1, 1].set_title("Last match and search region")
    axes[1, 1].axis("off")

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches="tight")
        print(f"\nVisualization saved to: {save_path}")

    plt.show()
    print(f"\n{'=' * 60}\n")


def main():
    parser = argparse.ArgumentParser(
        description="Evaluate the tracking state machine on a synthetic sequence.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --frames 40
  %(prog)s --dropout 15 20 -r 90 --save tracking.png
        """,
    )
    parser.add_argument("-n", "--frames", type=int, default=40, help="Frame count")
    parser.add_argument(
        "-r",
        "--rotation",
        type=int,
        default=0,
        choices=[0, 90, 180, 270],
        help="Rotation applied to every probe (degrees, default: 0)",
    )
    parser.add_argument(
        "--scale",
        type=float,
        default=1.0,
        help="Apparent probe scale relative to the reference (default: 1.0)",
    )
    parser.add_argument(
        "--dropout",
        type=int,
        nargs=2,
        metavar=("START", "END"),
        default=None,
        help="Replace probes with noise for frames START..END (inclusive)",
    )
    parser.add_argument("--seed", type=int, default=0, help="Texture seed")
    parser.add_argument(
        "-s",
        "--save",
        type=str,
        default=None,
        help="Save visualization to this path (optional)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        visualize_tracking(
            frames=args.frames,
            rotation=args.rotation,
            scale=args.scale,
            dropout=tuple(args.dropout) if args.dropout else None,
            seed=args.seed,
            save_path=args.save,
        )
        return 0
    except Exception as e:
        print(f"Error: {e}")
        import traceback

        traceback.print_exc()
        return 1


if __name__ == "__main__":
    exit(main())
