from __future__ import annotations

import io
import json
import threading
from pathlib import Path
from typing import Dict, List, Tuple

import pytest
from PIL import Image

from tiletagger.config import DESCRIBE_PROMPT, SUMMARY_SCHEMA, TAGS_SCHEMA, VISIBLE_OBJECTS
from tiletagger.contracts import TaggerConfig
from tiletagger.errors import ImageLoadError, InferenceError, OutputWriteError, ResponseParseError
from tiletagger.tiling import TileGeometry

RED = (255, 0, 0)
GREEN = (0, 255, 0)
BLUE = (0, 0, 255)
WHITE = (255, 255, 255)

# 400x200 source cut into three 200x200 tiles starting at x = 0, 100, 200.
TILE_GEOMETRY = TileGeometry(width=200, height=200, mode="tile")
TILE_COLORS = {RED: "wheel", GREEN: "door", BLUE: "mirror"}


def _write_striped_image(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGB", (400, 200), WHITE)
    for i, color in enumerate([RED, GREEN, BLUE, WHITE]):
        img.paste(color, (i * 100, 0, (i + 1) * 100, 200))
    img.save(str(path), format="PNG")


def _tile_color(data: bytes) -> Tuple[int, int, int]:
    return Image.open(io.BytesIO(data)).convert("RGB").getpixel((0, 0))


class _FakeClient:
    """Answers like a vision model would, keyed on the colour of each tile."""

    def __init__(self, *, fail_colors=(), garbage_colors=(), summary_error=None, one_line_colors=()):
        self.calls: List[Dict] = []
        self._lock = threading.Lock()
        self.fail_colors = set(fail_colors)
        self.garbage_colors = set(garbage_colors)
        self.one_line_colors = set(one_line_colors)
        self.summary_error = summary_error

    def generate(self, model, prompt, images=(), schema=None):
        with self._lock:
            self.calls.append({"model": model, "prompt": prompt, "images": list(images), "schema": schema})

        if schema == SUMMARY_SCHEMA:
            if self.summary_error is not None:
                raise self.summary_error
            return json.dumps({"subject": "car", "description": "A red car on a road."})

        if schema == TAGS_SCHEMA:
            color = _tile_color(images[0])
            if color in self.fail_colors:
                raise InferenceError("connection reset")
            if color in self.garbage_colors:
                return "I see a car!"
            tag = TILE_COLORS.get(color, "sky")
            return json.dumps({"tags": [{"object": tag, "confidence": 90}, {"object": "paint", "confidence": 30}]})

        if prompt == DESCRIBE_PROMPT:
            color = _tile_color(images[0])
            if color in self.fail_colors:
                raise InferenceError("timed out")
            return f"colour {color}"

        # Reduce stage: the description is embedded in the prompt.
        for color, tag in TILE_COLORS.items():
            if f"colour {color}" in prompt:
                if color in self.one_line_colors:
                    return f"{tag}, paint"
                return f"{tag.upper()}, Paint\n\nA car seen from the {tag} side."
        return "sky\n\nSky."

    def tag_calls(self):
        return [c for c in self.calls if c["schema"] == TAGS_SCHEMA]


@pytest.fixture
def striped_image(tmp_path: Path) -> Path:
    path = tmp_path / "in" / "car.png"
    _write_striped_image(path)
    return path


def test_structured_reduces_tags_across_tiles(monkeypatch, tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient()
    monkeypatch.setattr(pipeline_mod, "_get_client", lambda: fake)

    result, out_path = pipeline_mod.process_image_full(
        str(striped_image),
        TILE_GEOMETRY,
        vocabulary=["wheel", "door", "mirror"],
        output_root=str(tmp_path / "out"),
    )

    assert result.file == "car.png"
    assert result.subject == "car"
    assert result.description == "A red car on a road."
    assert result.tags == {"wheel": 90, "door": 90, "mirror": 90}

    record = json.loads(Path(out_path).read_text(encoding="utf-8"))
    assert Path(out_path).name == "car.png_tags.json"
    assert [t["object"] for t in record["tags"]] == ["door", "mirror", "wheel"]


def test_summary_precedes_tag_calls_and_feeds_subject(monkeypatch, tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient()
    pipeline_mod.process_image_full(
        str(striped_image),
        TILE_GEOMETRY,
        config=TaggerConfig(vision_model="llava:7b"),
        vocabulary=["wheel", "door"],
        output_root=str(tmp_path / "out"),
        client=fake,
    )

    summary_call = fake.calls[0]
    assert summary_call["schema"] == SUMMARY_SCHEMA
    assert len(summary_call["images"]) == 3

    tag_calls = fake.tag_calls()
    assert len(tag_calls) == 3
    for call in tag_calls:
        assert call["model"] == "llava:7b"
        assert len(call["images"]) == 1
        assert "image of a car" in call["prompt"]
        assert "[wheel, door]" in call["prompt"]


def test_empty_vocabulary_asks_for_visible_objects(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient()
    pipeline_mod.process_image_full(
        str(striped_image), TILE_GEOMETRY, output_root=str(tmp_path / "out"), client=fake
    )
    assert all(VISIBLE_OBJECTS in c["prompt"] for c in fake.tag_calls())


def test_failed_and_unparseable_tiles_are_excluded(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient(fail_colors=[GREEN], garbage_colors=[BLUE])
    result, _ = pipeline_mod.process_image_full(
        str(striped_image), TILE_GEOMETRY, output_root=str(tmp_path / "out"), client=fake
    )

    assert len(fake.tag_calls()) == 3
    assert result.tags == {"wheel": 90}


def test_summary_transport_failure_is_fatal(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient(summary_error=InferenceError("connection refused"))
    with pytest.raises(InferenceError):
        pipeline_mod.process_image_full(
            str(striped_image), TILE_GEOMETRY, output_root=str(tmp_path / "out"), client=fake
        )

    assert fake.tag_calls() == []
    assert not (tmp_path / "out" / "car.png_tags.json").exists()


def test_summary_parse_failure_is_fatal(monkeypatch, tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient()
    monkeypatch.setattr(pipeline_mod, "parse_summary", _raise_parse_error)
    with pytest.raises(ResponseParseError):
        pipeline_mod.process_image_full(
            str(striped_image), TILE_GEOMETRY, output_root=str(tmp_path / "out"), client=fake
        )
    assert fake.tag_calls() == []


def _raise_parse_error(text):
    raise ResponseParseError("bad summary", text)


def test_passes_repeat_tag_requests_per_tile(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient()
    pipeline_mod.process_image_full(
        str(striped_image),
        TILE_GEOMETRY,
        config=TaggerConfig(passes=3, max_workers=2),
        output_root=str(tmp_path / "out"),
        client=fake,
    )
    assert len(fake.tag_calls()) == 9


def test_threshold_from_config(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    result, _ = pipeline_mod.process_image_full(
        str(striped_image),
        TILE_GEOMETRY,
        config=TaggerConfig(confidence_threshold=20),
        output_root=str(tmp_path / "out"),
        client=_FakeClient(),
    )
    assert result.tags["paint"] == 30


def test_two_stage_merges_tags_and_keeps_first_caption(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient()
    result, out_path = pipeline_mod.process_image_full(
        str(striped_image),
        TILE_GEOMETRY,
        config=TaggerConfig(vision_model="llava:13b", summary_model="llama3.2:3b"),
        vocabulary=["wheel", "door", "mirror", "paint"],
        workflow="two-stage",
        output_root=str(tmp_path / "out"),
        client=fake,
    )

    assert result.tags == {"wheel": 100, "door": 100, "mirror": 100, "paint": 100}
    assert result.description == "A car seen from the wheel side."
    assert result.subject == ""

    reduce_calls = [c for c in fake.calls if c["model"] == "llama3.2:3b"]
    assert len(reduce_calls) == 3
    assert all(c["images"] == [] and c["schema"] is None for c in reduce_calls)
    assert all("[wheel, door, mirror, paint]" in c["prompt"] for c in reduce_calls)

    record = json.loads(Path(out_path).read_text(encoding="utf-8"))
    assert record == {
        "file": "car.png",
        "alt": "A car seen from the wheel side.",
        "tags": ["door", "mirror", "paint", "wheel"],
    }


def test_two_stage_skips_one_line_and_failed_tiles(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient(one_line_colors=[RED], fail_colors=[BLUE])
    result, _ = pipeline_mod.process_image_full(
        str(striped_image),
        TILE_GEOMETRY,
        vocabulary=["wheel", "door", "mirror"],
        workflow="two-stage",
        output_root=str(tmp_path / "out"),
        client=fake,
    )

    assert result.tags == {"door": 100, "paint": 100}
    assert result.description == "A car seen from the door side."


def test_two_stage_with_no_usable_tile_writes_empty_result(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient(fail_colors=[RED, GREEN, BLUE])
    result, _ = pipeline_mod.process_image_full(
        str(striped_image), TILE_GEOMETRY, workflow="two-stage", output_root=str(tmp_path / "out"), client=fake
    )
    assert result.tags == {}
    assert result.description == ""


def test_fit_mode_sends_single_tile(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient()
    pipeline_mod.process_image_full(
        str(striped_image),
        TileGeometry(width=100, height=100, mode="fit"),
        output_root=str(tmp_path / "out"),
        client=fake,
    )
    assert len(fake.calls[0]["images"]) == 1
    assert len(fake.tag_calls()) == 1
    tile = Image.open(io.BytesIO(fake.calls[0]["images"][0]))
    assert tile.size == (100, 50)


def test_save_tiles_persists_under_output_root(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    pipeline_mod.process_image_full(
        str(striped_image),
        TILE_GEOMETRY,
        output_root=str(tmp_path / "out"),
        save_tiles=True,
        client=_FakeClient(),
    )
    assert sorted(p.name for p in (tmp_path / "out" / "tiles").iterdir()) == ["car-0.png", "car-1.png", "car-2.png"]


def test_missing_image_raises_load_error(tmp_path: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _FakeClient()
    with pytest.raises(ImageLoadError):
        pipeline_mod.process_image_full(
            str(tmp_path / "nope.png"), TILE_GEOMETRY, output_root=str(tmp_path / "out"), client=fake
        )
    assert fake.calls == []


def test_fan_out_returns_results_in_job_order():
    from tiletagger import pipeline as pipeline_mod

    def _job(i):
        if i == 2:
            raise ResponseParseError("bad", "??")
        return i * 10

    results = pipeline_mod.fan_out(_job, [(i,) for i in range(5)], max_workers=3)
    assert results == [0, 10, None, 30, 40]
    assert pipeline_mod.fan_out(_job, [], max_workers=3) == []


def test_fan_out_propagates_unexpected_errors():
    from tiletagger import pipeline as pipeline_mod

    def _job():
        raise KeyError("boom")

    with pytest.raises(KeyError):
        pipeline_mod.fan_out(_job, [()], max_workers=1)


class _RendezvousClient(_FakeClient):
    """Tag requests only return once `parties` of them are in flight together."""

    def __init__(self, parties: int):
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=5)

    def generate(self, model, prompt, images=(), schema=None):
        if schema == TAGS_SCHEMA:
            self.barrier.wait()
        return super().generate(model, prompt, images=images, schema=schema)


def test_tag_requests_for_one_image_run_concurrently(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    fake = _RendezvousClient(parties=3)
    result, _ = pipeline_mod.process_image_full(
        str(striped_image),
        TILE_GEOMETRY,
        config=TaggerConfig(max_workers=3),
        output_root=str(tmp_path / "out"),
        client=fake,
    )

    assert not fake.barrier.broken
    assert result.tags == {"wheel": 90, "door": 90, "mirror": 90}


def test_unwritable_output_is_output_write_error(tmp_path: Path, striped_image: Path):
    from tiletagger import pipeline as pipeline_mod

    not_a_dir = tmp_path / "out"
    not_a_dir.write_text("occupied", encoding="utf-8")

    with pytest.raises(OutputWriteError):
        pipeline_mod.process_image_full(
            str(striped_image), TILE_GEOMETRY, output_root=str(not_a_dir), client=_FakeClient()
        )
