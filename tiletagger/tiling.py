from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Literal, Optional, Tuple

from PIL import Image

from .config import (
    CROP_BOUND_FACTOR,
    MAX_CROPS,
    MAX_PIXELS,
    TILE_FORMAT,
    TILE_HEIGHT,
    TILE_OVERLAP,
    TILE_WIDTH,
)
from .errors import ConfigError, TileRenderError

logger = logging.getLogger(__name__)

Mode = Literal["fit", "tile"]
Size = Tuple[int, int]


@dataclass(frozen=True)
class TileGeometry:
    """
    Target output geometry for one source image.

    In tile mode, setting `crop_size` selects the crop-count variant
    (`crop_size` x `crop_size` tiles plus a whole-image overview); otherwise the
    source is bounded by `max_pixels` and cut into `width` x `height` tiles.
    """

    width: int = TILE_WIDTH
    height: int = TILE_HEIGHT
    mode: Mode = "fit"
    max_pixels: int = MAX_PIXELS
    crop_size: Optional[int] = None
    max_crops: int = MAX_CROPS

    def __post_init__(self):
        if self.mode not in ("fit", "tile"):
            raise ConfigError(f"Invalid mode {self.mode!r}; expected 'fit' or 'tile'")
        for name in ("width", "height", "max_pixels", "max_crops"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if self.crop_size is not None and self.crop_size <= 0:
            raise ConfigError(f"crop_size must be positive, got {self.crop_size}")


@dataclass(frozen=True)
class CropRectangle:
    x: int
    y: int
    w: int
    h: int

    @property
    def box(self) -> Tuple[int, int, int, int]:
        """(left, upper, right, lower) as PIL expects."""
        return (self.x, self.y, self.x + self.w, self.y + self.h)


@dataclass(frozen=True)
class TilePlan:
    resize_to: Size
    rectangles: List[CropRectangle] = field(default_factory=list)
    overview: Optional[Size] = None


def fit_size(width: int, height: int, max_width: int, max_height: int) -> Size:
    """
    Largest size within max_width x max_height that keeps the aspect ratio.

    Sources already inside the bounds are never upscaled.
    """
    if width <= max_width and height <= max_height:
        return width, height

    src_aspect = width / height
    if src_aspect > max_width / max_height:
        new_w = max_width
        new_h = int(new_w / src_aspect + 0.5)
    else:
        new_h = max_height
        new_w = int(new_h * src_aspect + 0.5)
    return max(1, new_w), max(1, new_h)


def bound_pixels(width: int, height: int, max_pixels: int) -> Size:
    """Scale down uniformly so width * height does not exceed max_pixels."""
    pixels = width * height
    if pixels <= max_pixels:
        return width, height
    scale = math.sqrt(pixels / max_pixels)
    return max(1, math.floor(width / scale)), max(1, math.floor(height / scale))


def _sweep_starts(extent: int, step: int) -> List[int]:
    # Always keep the origin so a thin axis still yields one row/column.
    return list(range(0, max(extent - step, 1), step))


def sweep_rectangles(width: int, height: int, tile_w: int, tile_h: int) -> List[CropRectangle]:
    """
    Overlapping tiles in row-major order, clipped at the right/bottom edge.

    Adjacent tiles overlap by TILE_OVERLAP of the tile size. A source that
    already fits in one tile yields a single rectangle covering all of it.
    """
    if width <= tile_w and height <= tile_h:
        return [CropRectangle(0, 0, width, height)]

    step_x = max(1, int(tile_w * TILE_OVERLAP))
    step_y = max(1, int(tile_h * TILE_OVERLAP))

    rects = []
    for y in _sweep_starts(height, step_y):
        for x in _sweep_starts(width, step_x):
            rects.append(
                CropRectangle(
                    x=x,
                    y=y,
                    w=min(x + tile_w, width) - x,
                    h=min(y + tile_h, height) - y,
                )
            )
    return rects


def plan(source_width: int, source_height: int, geometry: TileGeometry) -> TilePlan:
    """Compute the resize target and crop rectangles for one source image."""
    if source_width <= 0 or source_height <= 0:
        raise ValueError(f"Invalid source size: {(source_width, source_height)}")

    if geometry.mode == "fit":
        size = fit_size(source_width, source_height, geometry.width, geometry.height)
        return TilePlan(resize_to=size, rectangles=[CropRectangle(0, 0, *size)])

    if geometry.crop_size is not None:
        bound = int(geometry.crop_size * math.floor(math.sqrt(geometry.max_crops)) * CROP_BOUND_FACTOR)
        size = fit_size(source_width, source_height, bound, bound)
        rects = sweep_rectangles(*size, geometry.crop_size, geometry.crop_size)
        overview = fit_size(source_width, source_height, geometry.width, geometry.height)
        return TilePlan(resize_to=size, rectangles=rects, overview=overview)

    size = bound_pixels(source_width, source_height, geometry.max_pixels)
    rects = sweep_rectangles(*size, geometry.width, geometry.height)
    return TilePlan(resize_to=size, rectangles=rects)


def encode_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=TILE_FORMAT)
    return buf.getvalue()


def render_tile(image: Image.Image, rect: CropRectangle) -> bytes:
    """Crop one rectangle out of `image` and encode it losslessly."""
    try:
        return encode_png(image.crop(rect.box))
    except (OSError, ValueError) as e:
        raise TileRenderError(f"Could not render tile {rect}: {e}") from e


def _resized(image: Image.Image, size: Size) -> Image.Image:
    if image.size == size:
        return image
    return image.resize(size, Image.Resampling.LANCZOS)


def save_tile(data: bytes, source_name: str, output_dir: str, index: int) -> Path:
    base = Path(source_name).stem
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / f"{base}-{index}.png"
    out_path.write_bytes(data)
    return out_path


def make_tiles(
    image: Image.Image,
    geometry: TileGeometry,
    source_name: str = "image",
    persist_dir: Optional[str] = None,
) -> List[bytes]:
    """
    Plan, resize and render every tile for one source image.

    Returns PNG payloads in row-major order; in the crop-count variant the
    whole-image overview comes first. A single failed tile aborts the image.
    """
    tile_plan = plan(image.width, image.height, geometry)
    logger.debug(
        "Tiling %s: %dx%d -> %dx%d, %d tile(s)%s",
        source_name,
        image.width,
        image.height,
        tile_plan.resize_to[0],
        tile_plan.resize_to[1],
        len(tile_plan.rectangles),
        " + overview" if tile_plan.overview else "",
    )

    tiles: List[bytes] = []
    if tile_plan.overview is not None:
        overview = _resized(image, tile_plan.overview)
        tiles.append(render_tile(overview, CropRectangle(0, 0, *overview.size)))

    resized = _resized(image, tile_plan.resize_to)
    for rect in tile_plan.rectangles:
        tiles.append(render_tile(resized, rect))

    if persist_dir is not None:
        for i, data in enumerate(tiles):
            try:
                save_tile(data, source_name, persist_dir, i)
            except OSError as e:
                raise TileRenderError(f"Could not save tile {i} of {source_name}: {e}") from e

    return tiles
