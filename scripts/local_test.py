"""
Quick local test helper: runs the background-removal pipeline on a local image
and writes an RGBA PNG to disk. Model settings come from RMBG_* env vars or .env.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

# Ensure project root is importable when running from scripts/
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rmbg_pipeline import BackgroundRemover, RemovalOptions
from rmbg_pipeline.config import get_settings


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remove the background from a local image")
    parser.add_argument("--input", required=True, help="Path to the input image")
    parser.add_argument("--output", required=True, help="Path to write the RGBA PNG")
    parser.add_argument("--feather", type=int, default=0, help="Edge feather radius in pixels")
    parser.add_argument("--background", default="transparent", help="'transparent' or '#RRGGBB'")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    input_path = Path(args.input)
    output_path = Path(args.output)
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    options = RemovalOptions(background=args.background, feather_radius=args.feather)
    with BackgroundRemover(settings) as remover:
        png_bytes = remover.remove_background_bytes(input_path.read_bytes(), options)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(png_bytes)
    print(f"Wrote RGBA output to {output_path}")


if __name__ == "__main__":
    main()
