from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import render_main  # noqa: E402
from render_pipeline.errors import ConfigurationError  # noqa: E402

SCENE = """
from PIL import Image


def draw(frame, composition, props):
    return Image.new("RGB", (composition.width, composition.height), (props.get("red", 0), frame, 0))


COMPOSITIONS = [
    {"id": "Scene", "width": 8, "height": 8, "fps": 10, "duration_in_frames": 3, "component": draw},
]
"""


def _args(**overrides) -> argparse.Namespace:
    parser = render_main.build_parser()
    args = parser.parse_args(["scene.py", "Scene"])
    for key, value in overrides.items():
        setattr(args, key, value)
    return args


def test_load_user_props_inline_and_file(tmp_path: Path) -> None:
    assert render_main.load_user_props(None) == {}
    assert render_main.load_user_props('{"title": "Hi"}') == {"title": "Hi"}

    props_file = tmp_path / "props.json"
    props_file.write_text(json.dumps({"count": 3}), encoding="utf-8")
    assert render_main.load_user_props(str(props_file)) == {"count": 3}


@pytest.mark.parametrize("value", ["[1, 2]", "{not json"])
def test_load_user_props_rejects_non_objects(value: str) -> None:
    with pytest.raises(ConfigurationError):
        render_main.load_user_props(value)


def test_cli_flags_override_config_defaults() -> None:
    defaults = {"codec": "vp9", "crf": 30, "concurrency": "2", "overwrite": True, "quality": 60}
    options = render_main.build_options(_args(codec="h265", quality=90), defaults, {"a": 1})

    assert options.codec == "h265"
    assert options.crf == 30.0
    assert options.concurrency == 2
    assert options.overwrite is True
    assert options.quality == 90
    assert options.pixel_format == "yuv420p"
    assert options.props == {"a": 1}
    assert options.output is None


def test_invalid_config_value() -> None:
    with pytest.raises(ConfigurationError, match="concurrency"):
        render_main.build_options(_args(), {"concurrency": "many"}, {})


def test_sequence_with_codec_exits_with_configuration_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "scene.py").write_text(SCENE, encoding="utf-8")

    code = render_main.main(["scene.py", "Scene", "--sequence", "--codec", "h264"])

    assert code == 1
    assert sorted(p.name for p in tmp_path.iterdir()) == ["scene.py"]


def test_missing_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    assert render_main.main(["scene.py", "Scene", "--config", "missing.yaml"]) == 1


def test_unknown_composition_exits_with_one(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "scene.py").write_text(SCENE, encoding="utf-8")
    code = render_main.main(["scene.py", "Nope", "frames", "--sequence", "--concurrency", "1"])
    assert code == 1
    assert not (tmp_path / "frames").exists()


def test_renders_image_sequence_from_config(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "scene.py").write_text(SCENE, encoding="utf-8")
    (tmp_path / "render.config.yaml").write_text(
        "render:\n  sequence: true\n  concurrency: 1\noutput:\n  temp_directory: tmp\n",
        encoding="utf-8",
    )

    code = render_main.main(["scene.py", "Scene", "frames", "--props", '{"red": 200}'])

    assert code == 0
    frames_dir = (tmp_path / "frames").resolve()
    assert capsys.readouterr().out.strip() == str(frames_dir)
    assert sorted(p.name for p in frames_dir.iterdir()) == [
        "element-0.png",
        "element-1.png",
        "element-2.png",
    ]
    assert list((tmp_path / "tmp").iterdir()) == []
