"""Local stand-in for the reconstruction tool used by pipeline integration tests."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

STAGES = (
    "feature_extractor",
    "exhaustive_matcher",
    "mapper",
    "image_undistorter",
    "patch_match_stereo",
    "stereo_fusion",
    "poisson_mesher",
)


def main(argv: list[str] | None = None) -> int:
    """Write the artifacts each stage would produce, or fail on demand."""

    parser = argparse.ArgumentParser()
    parser.add_argument("stage", choices=STAGES)
    parser.add_argument("--database_path")
    parser.add_argument("--image_path")
    parser.add_argument("--input_path")
    parser.add_argument("--output_path")
    parser.add_argument("--workspace_path")
    args = parser.parse_args(argv)

    if os.getenv("RECON_QUEUE_FAKE_FAIL_STAGE", "") == args.stage:
        message = os.getenv("RECON_QUEUE_FAKE_FAIL_MESSAGE", "command failed")
        print(f"E20260101 00:00:00.000000 1 {args.stage}.cc:1] {message}", file=sys.stderr)
        return int(os.getenv("RECON_QUEUE_FAKE_EXIT_CODE", "1"))

    if args.stage == "feature_extractor":
        images = sorted(Path(args.image_path).iterdir())
        for index, image in enumerate(images, start=1):
            print(f"I0101 fake.cc:1] Processing file [{index}/{len(images)}]: {image.name}", file=sys.stderr)
        _write(Path(args.database_path), f"features:{len(images)}\n")
    elif args.stage == "exhaustive_matcher":
        if not Path(args.database_path).is_file():
            print("Error: database not found", file=sys.stderr)
            return 1
        print("I0101 fake.cc:1] Elapsed time: 0.001 [minutes]", file=sys.stderr)
    elif args.stage == "mapper":
        model_dir = Path(args.output_path) / "0"
        for name in ("cameras.bin", "images.bin", "points3D.bin"):
            _write(model_dir / name, name)
    elif args.stage == "image_undistorter":
        if not Path(args.input_path).is_dir():
            print("Error: sparse model not found", file=sys.stderr)
            return 1
        (Path(args.output_path) / "images").mkdir(parents=True, exist_ok=True)
    elif args.stage == "patch_match_stereo":
        _write(Path(args.workspace_path) / "stereo" / "patch-match.cfg", "ok\n")
    elif args.stage == "stereo_fusion":
        print("I0101 fake.cc:1] Number of fused points: 42", file=sys.stderr)
        _write(Path(args.output_path), "ply\nelement vertex 42\n")
    elif args.stage == "poisson_mesher":
        if os.getenv("RECON_QUEUE_FAKE_SKIP_MESH", "0") != "1":
            _write(Path(args.output_path), "ply\nelement vertex 42\nelement face 80\n")
    return 0


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, "utf-8")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
