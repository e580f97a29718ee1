from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError
from tqdm import tqdm

from tiletagger.config import MAX_CROPS, MAX_PIXELS, TILE_HEIGHT, TILE_WIDTH
from tiletagger.contracts import TaggerConfig
from tiletagger.errors import ConfigError, TaggerError
from tiletagger.io import read_image_list, read_vocabulary
from tiletagger.pipeline import process_image_full
from tiletagger.tiling import TileGeometry

logger = logging.getLogger("tiletagger")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Tile images and tag them with a local vision model (Ollama).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--image", type=str, help="Path or http(s) URL of a single image.")
    src.add_argument("--images-path", type=str, help="File listing image paths or URLs, one per line.")
    parser.add_argument("--tags-path", type=str, default=None, help="Tag vocabulary (JSON array or comma-separated line).")
    parser.add_argument("--out", type=str, default="out", help="Output directory for <image>_tags.json files.")
    parser.add_argument("--workflow", choices=["structured", "two-stage"], default="structured",
                        help="'structured': JSON summary + scored tags. 'two-stage': describe, then reduce to tags + alt text.")
    parser.add_argument("--mode", type=str, default="fit",
                        help="'fit' resizes to width x height. 'tile' cuts overlapping tiles.")
    parser.add_argument("--width", type=int, default=TILE_WIDTH, help="Fit or tile width.")
    parser.add_argument("--height", type=int, default=TILE_HEIGHT, help="Fit or tile height.")
    parser.add_argument("--max-pixels", type=int, default=MAX_PIXELS, help="Tile mode: pixel budget for the source image.")
    parser.add_argument("--crop", type=int, default=None,
                        help="Tile mode: square crop size. Enables crop-count tiling with a whole-image overview first.")
    parser.add_argument("--max-crops", type=int, default=MAX_CROPS, help="Tile mode with --crop: number of crops to size for.")
    parser.add_argument("--vision-model", type=str, default=TaggerConfig().vision_model)
    parser.add_argument("--summary-model", type=str, default=TaggerConfig().summary_model)
    parser.add_argument("--threshold", type=int, default=TaggerConfig().confidence_threshold,
                        help="Minimum confidence (0-100) a tag needs to be kept.")
    parser.add_argument("--passes", type=int, default=TaggerConfig().passes, help="Tag requests per tile.")
    parser.add_argument("--workers", type=int, default=TaggerConfig().max_workers, help="Concurrent requests per image.")
    parser.add_argument("--save", action="store_true", help="Save rendered tiles under <out>/tiles for debugging.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def _resolve_images(args: argparse.Namespace) -> List[str]:
    if args.image:
        return [args.image]
    if not Path(args.images_path).exists():
        raise ConfigError(f"Image list not found: {args.images_path}")
    try:
        return read_image_list(args.images_path)
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Could not read image list {args.images_path}: {e}") from e


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        if args.workflow == "two-stage" and not args.tags_path:
            raise ConfigError("--tags-path is required for the two-stage workflow")
        if args.tags_path and not Path(args.tags_path).exists():
            raise ConfigError(f"Tags file not found: {args.tags_path}")
        geometry = TileGeometry(
            width=args.width,
            height=args.height,
            mode=args.mode,
            max_pixels=args.max_pixels,
            crop_size=args.crop,
            max_crops=args.max_crops,
        )
        config = TaggerConfig(
            vision_model=args.vision_model,
            summary_model=args.summary_model,
            confidence_threshold=args.threshold,
            passes=args.passes,
            max_workers=args.workers,
        )
        images = _resolve_images(args)
    except (ConfigError, ValidationError) as e:
        logger.error("Configuration error: %s", e)
        return 2

    vocabulary = read_vocabulary(args.tags_path)
    if not images:
        print(f"No images listed in {args.images_path}")
        return 0

    stats = {"total": 0, "tagged": 0, "failed": 0, "tags": 0}

    t0 = time.perf_counter()
    for location in tqdm(images, desc="Tagging", unit="img", disable=len(images) == 1):
        stats["total"] += 1
        try:
            result, out_path = process_image_full(
                location,
                geometry,
                config=config,
                vocabulary=vocabulary,
                workflow=args.workflow,
                output_root=args.out,
                save_tiles=args.save,
            )
        except TaggerError as e:
            stats["failed"] += 1
            logger.error("Skipping %s: %s", location, e)
            continue

        stats["tagged"] += 1
        stats["tags"] += len(result.tags)
        logger.info("Wrote %s (%d tags)", out_path, len(result.tags))

    t1 = time.perf_counter()
    print(
        "Done.\n"
        f"- total:     {stats['total']}\n"
        f"- tagged:    {stats['tagged']}\n"
        f"- failed:    {stats['failed']}\n"
        f"- tags:      {stats['tags']}\n"
        f"- elapsed_s: {t1 - t0:.2f}\n"
        f"- output:    {Path(args.out).resolve()}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
