from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from .config import (
    DESCRIBE_PROMPT,
    REDUCE_ANY_OBJECT,
    REDUCE_FROM_VOCABULARY,
    REDUCE_PROMPT,
    SUMMARY_PROMPT,
    SUMMARY_SCHEMA,
    TAGS_PROMPT,
    TAGS_SCHEMA,
    VISIBLE_OBJECTS,
)
from .contracts import ImageResult, ImageSummary, TagCaption, TaggerConfig, TagObservation, Workflow
from .errors import InferenceError, OutputWriteError, ResponseParseError
from .io import load_image, result_path, result_record, source_name, write_json
from .ollama_client import OllamaClient
from .parsing import parse_summary, parse_tag_caption, parse_tags
from .reducer import reduce_tags
from .tiling import TileGeometry, make_tiles

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLIENT: Optional[OllamaClient] = None


def _get_client() -> OllamaClient:
    global _CLIENT
    if _CLIENT is None:
        _CLIENT = OllamaClient()
    return _CLIENT


def _objects_instruction(vocabulary: Sequence[str]) -> str:
    if vocabulary:
        return f"from the following list: [{', '.join(vocabulary)}]"
    return VISIBLE_OBJECTS


def summarize(client: OllamaClient, config: TaggerConfig, tiles: Sequence[bytes]) -> ImageSummary:
    """One request carrying every tile; failures propagate (no subject, no tag prompt)."""
    text = client.generate(config.vision_model, SUMMARY_PROMPT, images=tiles, schema=SUMMARY_SCHEMA)
    logger.debug("Summary response: %s", text)
    return parse_summary(text)


def identify_tags(
    client: OllamaClient,
    config: TaggerConfig,
    tile: bytes,
    subject: str,
    vocabulary: Sequence[str],
) -> List[TagObservation]:
    prompt = TAGS_PROMPT.format(subject=subject or "scene", objects=_objects_instruction(vocabulary))
    text = client.generate(config.vision_model, prompt, images=[tile], schema=TAGS_SCHEMA)
    logger.debug("Tag response: %s", text)
    return parse_tags(text)


def describe_and_reduce(
    client: OllamaClient,
    config: TaggerConfig,
    tile: bytes,
    vocabulary: Sequence[str],
) -> TagCaption:
    """
    Two-stage free-text call for one tile:
      1) vision model describes the tile
      2) summary model intersects the description with the vocabulary and
         answers "tags line, blank line, caption"
    """
    description = client.generate(config.vision_model, DESCRIBE_PROMPT, images=[tile])
    if vocabulary:
        instruction = REDUCE_FROM_VOCABULARY.format(tags=", ".join(vocabulary))
    else:
        instruction = REDUCE_ANY_OBJECT
    prompt = REDUCE_PROMPT.format(description=description.strip(), instruction=instruction)
    text = client.generate(config.summary_model, prompt)
    logger.debug("Reduce response: %s", text)
    return parse_tag_caption(text)


def fan_out(
    fn: Callable[..., T],
    jobs: Sequence[Tuple],
    max_workers: int,
    label: str = "tile",
) -> List[Optional[T]]:
    """
    Run fn(*job) for every job on a thread pool and wait for all of them.

    Results come back in job order. A job that fails with a transport or parse
    error is logged and yields None; any other exception propagates.
    """
    if not jobs:
        return []

    with ThreadPoolExecutor(max_workers=min(max_workers, len(jobs))) as executor:
        futures = [executor.submit(fn, *job) for job in jobs]
        wait(futures)

    results: List[Optional[T]] = []
    for i, fut in enumerate(futures):
        try:
            results.append(fut.result())
        except InferenceError as e:
            logger.warning("%s %d excluded, inference failed: %s", label, i, e)
            results.append(None)
        except ResponseParseError as e:
            logger.warning("%s %d skipped, unparseable response: %s", label, i, e)
            logger.debug("Unparsed response for %s %d: %r", label, i, e.response)
            results.append(None)
    return results


def tag_structured(
    client: OllamaClient,
    config: TaggerConfig,
    tiles: Sequence[bytes],
    vocabulary: Sequence[str],
    file_name: str,
) -> ImageResult:
    """
    STRICT ORDER:
      1) Summary over all tiles -> subject, description (must succeed)
      2) One tag request per tile per pass, concurrently
      3) Barrier, then reduce
    """
    summary = summarize(client, config, tiles)
    logger.info("Subject of %s: %s", file_name, summary.subject)

    jobs = [
        (client, config, tile, summary.subject, vocabulary)
        for tile in tiles
        for _ in range(config.passes)
    ]
    per_tile = fan_out(identify_tags, jobs, config.max_workers, label="tag request")
    observations = [obs for tags in per_tile if tags is not None for obs in tags]

    return ImageResult(
        file=file_name,
        processed_at=datetime.now(timezone.utc),
        subject=summary.subject,
        description=summary.description,
        tags=reduce_tags(observations, config.confidence_threshold),
    )


def tag_two_stage(
    client: OllamaClient,
    config: TaggerConfig,
    tiles: Sequence[bytes],
    vocabulary: Sequence[str],
    file_name: str,
) -> ImageResult:
    jobs = [(client, config, tile, vocabulary) for tile in tiles]
    captions = [c for c in fan_out(describe_and_reduce, jobs, config.max_workers) if c is not None]
    if not captions:
        logger.warning("No tile of %s produced tags", file_name)

    # Free-text tags carry no score; every named tag counts as fully confident.
    observations = [TagObservation(object=tag, confidence=100) for c in captions for tag in c.tags]
    return ImageResult(
        file=file_name,
        processed_at=datetime.now(timezone.utc),
        description=captions[0].caption if captions else "",
        tags=reduce_tags(observations, config.confidence_threshold),
    )


def process_image_full(
    image_location: str,
    geometry: TileGeometry,
    config: Optional[TaggerConfig] = None,
    vocabulary: Sequence[str] = (),
    workflow: Workflow = "structured",
    output_root: str = "out",
    save_tiles: bool = False,
    client: Optional[OllamaClient] = None,
) -> Tuple[ImageResult, str]:
    """
    STRICT ORDER:
      1) Load image (path or URL)
      2) Plan + render tiles (optionally persisted under <output_root>/tiles)
      3) Inference fan-out for the chosen workflow
      4) Emit <output_root>/<file>_tags.json
    """
    config = config or TaggerConfig()
    client = client or _get_client()
    file_name = source_name(image_location)

    img = load_image(image_location)
    persist_dir = str(Path(output_root) / "tiles") if save_tiles else None
    tiles = make_tiles(img, geometry, source_name=file_name, persist_dir=persist_dir)
    logger.info("Processing %s: %d tile(s), workflow=%s", file_name, len(tiles), workflow)

    if workflow == "two-stage":
        result = tag_two_stage(client, config, tiles, vocabulary, file_name)
    else:
        result = tag_structured(client, config, tiles, vocabulary, file_name)

    out_path = result_path(output_root, file_name)
    try:
        write_json(out_path, result_record(result, workflow))
    except OSError as e:
        raise OutputWriteError(f"Could not write {out_path}: {e}") from e
    return result, out_path


def process_image(image_location: str, geometry: TileGeometry, **kwargs) -> ImageResult:
    result, _ = process_image_full(image_location, geometry, **kwargs)
    return result
