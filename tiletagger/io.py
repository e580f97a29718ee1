from __future__ import annotations

import io
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from PIL import Image, UnidentifiedImageError

from .contracts import ImageResult, Workflow
from .errors import ImageLoadError, UnsupportedImageFormat

logger = logging.getLogger(__name__)

# Tried in order after Pillow's own format detection fails.
FALLBACK_FORMATS = ("JPEG", "WEBP", "AVIF", "TIFF")

_SCHEME_RE = re.compile(r"^\w+://")


def _get_fetch_timeout_s() -> float:
    try:
        return float(os.getenv("TILETAGGER_FETCH_TIMEOUT_S", "30"))
    except ValueError:
        return 30.0


def is_url(location: str) -> bool:
    return location.startswith("http://") or location.startswith("https://")


def _flatten_alpha_to_white(img: Image.Image) -> Image.Image:
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        comp = Image.alpha_composite(bg, rgba)
        return comp.convert("RGB")
    return img.convert("RGB")


def _open(data: bytes, formats=None) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data), formats=formats)
        img.load()
    except Image.DecompressionBombError as e:
        # Size limit, not a format mismatch: stop probing.
        raise ImageLoadError(f"Image exceeds the decoder pixel limit: {e}") from e
    return img


def decode_image(data: bytes) -> Image.Image:
    """
    Decode image bytes of unknown format to an RGB image.

    Pillow's generic detection runs first; format-specific decoders are then
    probed one at a time, since some payloads only decode under their own codec.
    """
    try:
        img = _open(data)
    except (UnidentifiedImageError, OSError, ValueError):
        img = None
        Image.init()
        for fmt in FALLBACK_FORMATS:
            if fmt not in Image.OPEN:
                continue
            try:
                img = _open(data, formats=[fmt])
                break
            except (UnidentifiedImageError, OSError, ValueError):
                continue
    if img is None:
        raise UnsupportedImageFormat("Unsupported image format or corrupted image")

    if img.width <= 0 or img.height <= 0:
        raise ImageLoadError(f"Image has no pixels: {img.size}")
    return _flatten_alpha_to_white(img)


def fetch_bytes(url: str) -> bytes:
    try:
        resp = requests.get(url, timeout=_get_fetch_timeout_s())
    except requests.exceptions.RequestException as e:
        raise ImageLoadError(f"Error fetching image from {url}: {e}") from e
    if resp.status_code != 200:
        raise ImageLoadError(f"Error fetching image from {url}: HTTP {resp.status_code}")
    return resp.content


def load_image(location: str) -> Image.Image:
    """Load an image from a local path or an http(s) URL."""
    if is_url(location):
        data = fetch_bytes(location)
    elif _SCHEME_RE.match(location):
        raise ImageLoadError(f"Unknown protocol: {location}")
    else:
        try:
            data = Path(location).read_bytes()
        except OSError as e:
            raise ImageLoadError(f"Could not read image: {location}: {e}") from e
    return decode_image(data)


def source_name(location: str) -> str:
    """Base file name of a path or URL, e.g. "https://x/y/car.jpg?s=1" -> "car.jpg"."""
    if is_url(location):
        location = location.split("?", 1)[0].split("#", 1)[0]
    return Path(location.rstrip("/")).name or "image"


def read_vocabulary(path: Optional[str]) -> List[str]:
    """
    Read the allowed tag vocabulary.

    Accepts a JSON array of strings or a legacy single comma-separated line.
    A missing or unreadable file yields an empty vocabulary.
    """
    if not path:
        return []
    try:
        text = Path(path).read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.error("Error reading tags file %s: %s", path, e)
        return []
    if not text:
        return []

    if text.startswith("["):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.error("Error parsing tags file %s: %s", path, e)
            return []
        if not isinstance(data, list):
            logger.error("Tags file %s is not a JSON array", path)
            return []
        tags = [str(t).strip() for t in data if isinstance(t, (str, int, float))]
    else:
        tags = [t.strip() for t in text.splitlines()[0].split(",")]
    return [t for t in tags if t]


def read_image_list(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as fp:
        return [line.strip() for line in fp if line.strip()]


def write_json(path: str, data: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def result_record(result: ImageResult, workflow: Workflow) -> Dict[str, Any]:
    """Serializable record for one image; tags are sorted by name."""
    if workflow == "two-stage":
        return {
            "file": result.file,
            "alt": result.description,
            "tags": sorted(result.tags),
        }
    return {
        "file": result.file,
        "processed_at": result.processed_at.isoformat(),
        "subject": result.subject,
        "description": result.description,
        "tags": [t.model_dump() for t in result.sorted_tags()],
    }


def result_path(output_dir: str, file_name: str) -> str:
    return str(Path(output_dir) / f"{file_name}_tags.json")
