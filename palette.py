#!/usr/bin/env python3
"""Compute the K-color palette of an image with weighted k-means in RGB space.

Usage: palette FILE K
Saves an image holding the palette colors as palette-K-FILE.
"""

import argparse
import logging
import sys
from pathlib import Path

from kmeans_palette import MAX_COLORS, MIN_COLORS, PaletteError, cluster_source, validate_cluster_count
from palette_io import PALETTE_COLUMNS, load_image, palette_output_path, rgb_hex, save_palette


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="palette",
        description="Determine the best K-color palette for an image using k-means.")
    parser.add_argument("file", type=Path, help="Path to the image file")
    parser.add_argument("count", type=int, help=f"Number of palette colors, in [{MIN_COLORS};{MAX_COLORS}]")
    parser.add_argument("--out", "-o", type=Path, default=None,
                        help="Output image path (default: palette-K-FILE next to the input)")
    parser.add_argument("--max-iterations", type=int, default=None,
                        help="Stop after this many iterations even without convergence")
    parser.add_argument("--columns", type=int, default=PALETTE_COLUMNS,
                        help="Width of the palette image in pixels")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log every iteration")
    return parser


def _progress(iteration, centers):
    print(".", end="", flush=True)


def make_palette(img_path: Path, k: int, out_path: Path = None,
                 max_iterations: int = None, columns: int = PALETTE_COLUMNS) -> Path:
    """Compute the palette of an image and save it as an image."""
    k = validate_cluster_count(k)
    source = load_image(img_path)
    print(f"Processing: {img_path.name} ({source.width}x{source.height}), {k} colors")

    result = cluster_source(source, k, max_iterations=max_iterations, on_iteration=_progress)
    print()
    if result.converged:
        print(f"algorithm converged after {result.iterations} iterations")
    else:
        print(f"stopped after {result.iterations} iterations without converging")
    print(f"  Palette: {[rgb_hex(c) for c in result.palette]}")

    out_path = out_path or palette_output_path(img_path, k)
    save_palette(result.palette, out_path, columns=columns)
    print(f"Palette image saved under {out_path}")
    return out_path


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.columns < 1:
        parser.error("--columns must be positive")
    if args.max_iterations is not None and args.max_iterations < 1:
        parser.error("--max-iterations must be at least 1")
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    try:
        validate_cluster_count(args.count)
        if not args.file.is_file():
            print(f"Image not found: {args.file}", file=sys.stderr)
            return 1
        make_palette(args.file, args.count, args.out, args.max_iterations, args.columns)
    except PaletteError as e:
        print(e, file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
