"""Create a synthetic reference image and probe frames for testing and benchmarks"""
import argparse
import os
from typing import List, Tuple

import cv2
import numpy as np
from PIL import Image, ImageDraw

# name, x, y, width, height, rotation, scale
ProbeCase = Tuple[str, int, int, int, int, int, float]

PROBE_CASES: List[ProbeCase] = [
    ("probe_1.png", 200, 150, 100, 100, 0, 1.0),
    ("probe_2.png", 204, 153, 100, 100, 0, 1.0),
    ("probe_3.png", 208, 156, 100, 100, 90, 0.5),
    ("probe_4.png", 320, 240, 120, 90, 180, 0.7),
    ("probe_5.png", 60, 300, 110, 110, 270, 1.0),
]


def create_reference_image(width=640, height=480, seed=0):
    """Create a textured BGR reference with fine noise and a few solid shapes"""
    rng = np.random.default_rng(seed)
    coarse = rng.integers(0, 256, size=(height // 4, width // 4), dtype=np.uint8)
    texture = cv2.resize(coarse, (width, height), interpolation=cv2.INTER_CUBIC)

    img = Image.fromarray(cv2.cvtColor(texture, cv2.COLOR_GRAY2RGB))
    draw = ImageDraw.Draw(img)
    for _ in range(12):
        x0 = int(rng.integers(0, width - 40))
        y0 = int(rng.integers(0, height - 40))
        x1 = x0 + int(rng.integers(15, 80))
        y1 = y0 + int(rng.integers(15, 80))
        color = tuple(int(c) for c in rng.integers(0, 256, size=3))
        if rng.random() < 0.5:
            draw.rectangle([x0, y0, x1, y1], fill=color, outline=(0, 0, 0), width=2)
        else:
            draw.ellipse([x0, y0, x1, y1], fill=color, outline=(255, 255, 255), width=2)

    return cv2.cvtColor(np.array(img), cv2.COLOR_RGB2BGR)


def crop_probe(reference, x, y, width, height, rotation=0, scale=1.0):
    """
    Cut a probe out of the reference as the camera would see it.

    The crop is enlarged by 1/scale and rotated counter-clockwise by
    `rotation` degrees, so matching it back needs a clockwise rotation of
    `rotation` followed by a resize by `scale`.
    """
    piece = reference[y : y + height, x : x + width].copy()
    if scale != 1.0:
        size = (int(round(width / scale)), int(round(height / scale)))
        piece = cv2.resize(piece, size, interpolation=cv2.INTER_CUBIC)
    rotation = int(rotation) % 360
    if rotation == 90:
        piece = cv2.rotate(piece, cv2.ROTATE_90_COUNTERCLOCKWISE)
    elif rotation == 180:
        piece = cv2.rotate(piece, cv2.ROTATE_180)
    elif rotation == 270:
        piece = cv2.rotate(piece, cv2.ROTATE_90_CLOCKWISE)
    elif rotation != 0:
        raise ValueError("Synthetic probes only support right-angle rotations")
    return piece


def embed_in_frame(probe, frame_shape, piece_scale=0.5, fill=0):
    """Place `probe` in the centre of a frame so the driver's crop returns it"""
    fh, fw = frame_shape[:2]
    frame = np.full(frame_shape, fill, dtype=np.uint8)
    ph, pw = probe.shape[:2]
    crop_w = int(fw * piece_scale)
    crop_h = int(fh * piece_scale)
    if pw != crop_w or ph != crop_h:
        raise ValueError(
            f"Probe {pw}x{ph} does not fit the {crop_w}x{crop_h} crop window"
        )
    x0 = fw // 2 - crop_w // 2
    y0 = fh // 2 - crop_h // 2
    frame[y0 : y0 + ph, x0 : x0 + pw] = probe
    return frame


def main():
    parser = argparse.ArgumentParser(description="Write synthetic tracking media.")
    parser.add_argument(
        "--out",
        default=os.path.join(os.path.dirname(os.path.abspath(__file__)), "media"),
        help="Output directory (default: ./media).",
    )
    parser.add_argument("--seed", type=int, default=0, help="Texture seed.")
    args = parser.parse_args()

    probes_dir = os.path.join(args.out, "probes")
    os.makedirs(probes_dir, exist_ok=True)

    print("Creating synthetic reference...")
    reference = create_reference_image(seed=args.seed)
    reference_path = os.path.join(args.out, "reference.png")
    cv2.imwrite(reference_path, reference)
    print(f"Saved reference to {reference_path}")

    print("\nCreating probes...")
    for name, x, y, w, h, rot, scale in PROBE_CASES:
        probe = crop_probe(reference, x, y, w, h, rotation=rot, scale=scale)
        probe_path = os.path.join(probes_dir, name)
        cv2.imwrite(probe_path, probe)
        print(f"Saved {probe_path} (x={x}, y={y}, rot={rot}, scale={scale})")

    print("\nDone!")


if __name__ == "__main__":
    main()
