from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from render_pipeline.collaborators import (  # noqa: E402
    Bundler,
    CompositionResolver,
    Encoder,
    FrameRenderer,
    StitchJob,
    frame_file_name,
)
from render_pipeline.errors import (  # noqa: E402
    CollaboratorError,
    CompositionNotFoundError,
    ConfigurationError,
    PreconditionError,
)
from render_pipeline.formats import EncoderCapabilities  # noqa: E402
from render_pipeline.models import Composition, ImageFormat, RenderOptions, Stage  # noqa: E402
from render_pipeline.pipeline import RenderPipeline  # noqa: E402
from render_pipeline.progress import ProgressReporter, StageProgress  # noqa: E402


class RecordingReporter(ProgressReporter):
    def __init__(self) -> None:
        super().__init__()
        self.events: List[tuple] = []

    def _on_start(self, stage: Stage, maximum: float, label: str) -> None:
        self.events.append(("start", stage, maximum, label))

    def _on_progress(self, stage: Stage, value: float, maximum: float) -> None:
        self.events.append(("progress", stage, value, maximum))

    def _on_finish(self, stage: Stage, state: StageProgress) -> None:
        self.events.append(("finish", stage, state.value, state.maximum))

    def values(self, stage: Stage) -> List[float]:
        return [event[2] for event in self.events if event[0] == "progress" and event[1] is stage]


class DummyBundler(Bundler):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0
        self.out_dir: Optional[Path] = None

    def bundle(self, source: Path, out_dir: Path, on_progress=None) -> Path:
        self.calls += 1
        self.out_dir = out_dir
        if on_progress:
            on_progress(0)
            on_progress(50)
        if self.fail:
            raise RuntimeError("bundler exploded")
        (out_dir / "bundle.js").write_text("bundle", encoding="utf-8")
        if on_progress:
            on_progress(100)
        return out_dir


class DummyResolver(CompositionResolver):
    def __init__(self, compositions: List[Composition]) -> None:
        self.compositions = compositions
        self.calls = 0

    def get_compositions(self, artifact: Path) -> List[Composition]:
        self.calls += 1
        assert artifact.exists()
        return list(self.compositions)


class DummyFrameRenderer(FrameRenderer):
    def __init__(
        self,
        artifact: Path,
        log: List[int],
        fail_at: Optional[int] = None,
        delay: float = 0.0,
    ) -> None:
        self.artifact = artifact
        self.log = log
        self.fail_at = fail_at
        self.delay = delay
        self.closed = False

    def render_frame(
        self,
        composition: Composition,
        props: Mapping[str, Any],
        frame: int,
        output_path: Path,
        image_format: ImageFormat,
        quality: Optional[int],
    ) -> None:
        if self.delay:
            time.sleep(self.delay)
        if frame == self.fail_at:
            raise RuntimeError(f"frame {frame} broke")
        output_path.write_bytes(b"frame-%d" % frame)
        self.log.append(frame)

    def close(self) -> None:
        self.closed = True


class DummyEncoder(Encoder):
    def __init__(self, fail: bool = False, features=frozenset({"enable-libvpx", "enable-gpl", "enable-libx265"})) -> None:
        self.fail = fail
        self.features = frozenset(features)
        self.jobs: List[StitchJob] = []
        self.validated = 0
        self.frames_seen: List[str] = []

    def validate(self) -> None:
        self.validated += 1

    def capabilities(self) -> EncoderCapabilities:
        return EncoderCapabilities(features=self.features)

    def stitch(self, job: StitchJob, on_progress: Optional[Callable[[int], None]] = None) -> Path:
        self.jobs.append(job)
        self.frames_seen = sorted(p.name for p in job.frames_dir.iterdir())
        job.output_path.write_bytes(b"partial")
        if self.fail:
            raise RuntimeError("encoder exited with code 1")
        for frame in range(1, job.total_frames + 1):
            if on_progress:
                on_progress(frame)
        job.output_path.write_bytes(b"video")
        return job.output_path


def make_pipeline(
    tmp_path: Path,
    *,
    compositions: Optional[List[Composition]] = None,
    bundler: Optional[DummyBundler] = None,
    encoder: Optional[DummyEncoder] = None,
    fail_at: Optional[int] = None,
    delay: float = 0.0,
    cpu_count: int = 8,
):
    rendered: List[int] = []
    renderers: List[DummyFrameRenderer] = []
    lock = threading.Lock()

    def factory(artifact: Path) -> DummyFrameRenderer:
        renderer = DummyFrameRenderer(artifact, rendered, fail_at=fail_at, delay=delay)
        with lock:
            renderers.append(renderer)
        return renderer

    reporter = RecordingReporter()
    temp_root = tmp_path / "tmp"
    pipeline = RenderPipeline(
        bundler=bundler or DummyBundler(),
        resolver=DummyResolver(
            compositions
            if compositions is not None
            else [Composition(id="Main", width=320, height=180, fps=30, duration_in_frames=30)]
        ),
        frame_renderer_factory=factory,
        encoder=encoder or DummyEncoder(),
        reporter=reporter,
        temp_root=temp_root,
        cpu_count=cpu_count,
        cwd=tmp_path,
    )
    return pipeline, reporter, rendered, renderers, temp_root


def _options(tmp_path: Path, **overrides: Any) -> RenderOptions:
    values = {
        "source": tmp_path / "src" / "index.py",
        "composition_id": "Main",
        "output": tmp_path / "out" / "video.mp4",
    }
    values.update(overrides)
    return RenderOptions(**values)


def test_h264_video_completes_and_cleans_up(tmp_path: Path) -> None:
    encoder = DummyEncoder()
    bundler = DummyBundler()
    pipeline, reporter, rendered, renderers, temp_root = make_pipeline(
        tmp_path, encoder=encoder, bundler=bundler
    )

    run = pipeline.run(
        _options(
            tmp_path,
            codec="h264",
            pixel_format="yuv420p",
            image_format="jpeg",
            crf=18,
            concurrency=4,
        )
    )

    assert run.succeeded, run.error
    assert run.history == [
        Stage.VALIDATING,
        Stage.PACKAGING,
        Stage.RESOLVING_COMPOSITION,
        Stage.RENDERING_FRAMES,
        Stage.STITCHING,
        Stage.CLEANING_UP,
        Stage.DONE,
    ]
    output = tmp_path / "out" / "video.mp4"
    assert run.output == output
    assert output.read_bytes() == b"video"
    assert sorted(p.name for p in output.parent.iterdir()) == ["video.mp4"]

    assert sorted(rendered) == list(range(30))
    assert 1 <= len(renderers) <= 4
    assert all(r.closed for r in renderers)

    # Stitching saw the complete frame set.
    assert encoder.frames_seen == [frame_file_name(i, ImageFormat.JPEG, 30) for i in range(30)]
    job = encoder.jobs[0]
    assert job.crf == 18 and job.fps == 30 and (job.width, job.height) == (320, 180)

    assert not job.frames_dir.exists()
    assert bundler.out_dir is not None and not bundler.out_dir.exists()
    assert list(temp_root.iterdir()) == []
    assert run.temp.closed


def test_codec_with_sequence_rejected_before_anything(tmp_path: Path) -> None:
    encoder = DummyEncoder()
    bundler = DummyBundler()
    pipeline, _, rendered, _, temp_root = make_pipeline(tmp_path, encoder=encoder, bundler=bundler)

    run = pipeline.run(_options(tmp_path, output=tmp_path / "frames", sequence=True, codec="h264"))

    assert run.failed
    assert isinstance(run.error, ConfigurationError)
    assert run.exit_code == 1
    assert run.history == [Stage.VALIDATING, Stage.CLEANING_UP, Stage.FAILED]
    assert bundler.calls == 0 and encoder.validated == 0 and rendered == []
    assert not temp_root.exists()
    assert not (tmp_path / "frames").exists()


def test_alpha_pixel_format_needs_png_frames(tmp_path: Path) -> None:
    bundler = DummyBundler()
    pipeline, _, _, _, _ = make_pipeline(tmp_path, bundler=bundler)

    run = pipeline.run(
        _options(
            tmp_path,
            output=tmp_path / "out" / "video.webm",
            codec="vp9",
            pixel_format="yuva420p",
            image_format="jpeg",
        )
    )

    assert run.failed
    assert isinstance(run.error, ConfigurationError)
    assert "alpha" in str(run.error)
    assert bundler.calls == 0


def test_unknown_composition_cleans_bundle(tmp_path: Path) -> None:
    bundler = DummyBundler()
    pipeline, _, rendered, _, temp_root = make_pipeline(tmp_path, bundler=bundler)

    run = pipeline.run(_options(tmp_path, composition_id="Missing"))

    assert run.failed
    assert isinstance(run.error, CompositionNotFoundError)
    assert run.error.available == ["Main"]
    assert run.exit_code == 1
    assert Stage.RENDERING_FRAMES not in run.history
    assert rendered == []
    assert bundler.out_dir is not None and not bundler.out_dir.exists()
    assert list(temp_root.iterdir()) == []


def test_image_sequence_writes_frames_into_output_dir(tmp_path: Path) -> None:
    encoder = DummyEncoder()
    compositions = [Composition(id="Main", width=16, height=16, fps=24, duration_in_frames=12)]
    pipeline, reporter, _, _, temp_root = make_pipeline(tmp_path, encoder=encoder, compositions=compositions)

    target = tmp_path / "frames"
    run = pipeline.run(_options(tmp_path, output=target, sequence=True))

    assert run.succeeded, run.error
    assert Stage.STITCHING not in run.history
    assert encoder.jobs == [] and encoder.validated == 0
    assert sorted(p.name for p in target.iterdir()) == [
        frame_file_name(i, ImageFormat.PNG, 12) for i in range(12)
    ]
    assert list(temp_root.iterdir()) == []
    assert reporter.values(Stage.RENDERING_FRAMES)[-1] == 12
    assert reporter.events[0][3].startswith("(1/2)")


@pytest.mark.parametrize("concurrency", [1, 2, 3, 4, 8])
def test_frame_progress_is_monotonic_and_bounded(tmp_path: Path, concurrency: int) -> None:
    compositions = [Composition(id="Main", width=8, height=8, fps=30, duration_in_frames=40)]
    pipeline, reporter, _, _, _ = make_pipeline(tmp_path, compositions=compositions, delay=0.001)

    run = pipeline.run(_options(tmp_path, concurrency=concurrency))

    assert run.succeeded, run.error
    values = reporter.values(Stage.RENDERING_FRAMES)
    assert values == sorted(values)
    assert max(values) == 40
    assert all(0 <= v <= 40 for v in values)
    stitched = reporter.values(Stage.STITCHING)
    assert stitched == sorted(stitched) and max(stitched) == 40
    assert run.progress[Stage.RENDERING_FRAMES].value == 40


def test_failed_frame_stops_dispatch_and_cleans_up(tmp_path: Path) -> None:
    encoder = DummyEncoder()
    compositions = [Composition(id="Main", width=8, height=8, fps=30, duration_in_frames=200)]
    pipeline, _, rendered, _, temp_root = make_pipeline(
        tmp_path, compositions=compositions, encoder=encoder, fail_at=3
    )

    run = pipeline.run(_options(tmp_path, concurrency=2))

    assert run.failed
    assert isinstance(run.error, CollaboratorError)
    assert run.error.stage == Stage.RENDERING_FRAMES.value
    assert run.exit_code == 2
    assert len(rendered) < 199
    assert encoder.jobs == []
    assert list(temp_root.iterdir()) == []
    assert not (tmp_path / "out" / "video.mp4").exists()


def test_encoder_failure_leaves_no_partial_output(tmp_path: Path) -> None:
    pipeline, _, _, _, temp_root = make_pipeline(tmp_path, encoder=DummyEncoder(fail=True))
    (tmp_path / "out").mkdir()

    run = pipeline.run(_options(tmp_path))

    assert run.failed
    assert isinstance(run.error, CollaboratorError)
    assert run.error.stage == Stage.STITCHING.value
    assert list((tmp_path / "out").iterdir()) == []
    assert list(temp_root.iterdir()) == []


def test_bundler_failure_is_collaborator_error(tmp_path: Path) -> None:
    pipeline, _, _, _, temp_root = make_pipeline(tmp_path, bundler=DummyBundler(fail=True))

    run = pipeline.run(_options(tmp_path))

    assert run.failed
    assert isinstance(run.error, CollaboratorError)
    assert run.error.stage == Stage.PACKAGING.value
    assert isinstance(run.error.__cause__, RuntimeError)
    assert list(temp_root.iterdir()) == []


def test_existing_output_without_overwrite_is_precondition_error(tmp_path: Path) -> None:
    output = tmp_path / "out" / "video.mp4"
    output.parent.mkdir()
    output.write_bytes(b"old")
    bundler = DummyBundler()
    pipeline, _, _, _, _ = make_pipeline(tmp_path, bundler=bundler)

    run = pipeline.run(_options(tmp_path))

    assert isinstance(run.error, PreconditionError)
    assert run.exit_code == 1
    assert bundler.calls == 0
    assert output.read_bytes() == b"old"


def test_overwrite_replaces_existing_output(tmp_path: Path) -> None:
    output = tmp_path / "out" / "video.mp4"
    output.parent.mkdir()
    output.write_bytes(b"old")
    pipeline, _, _, _, _ = make_pipeline(tmp_path)

    run = pipeline.run(_options(tmp_path, overwrite=True))

    assert run.succeeded, run.error
    assert output.read_bytes() == b"video"


def test_missing_encoder_feature_is_only_a_warning(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    encoder = DummyEncoder(features=frozenset())
    pipeline, _, _, _, _ = make_pipeline(tmp_path, encoder=encoder)

    with caplog.at_level("WARNING"):
        run = pipeline.run(_options(tmp_path, output=tmp_path / "out" / "video.webm", codec="vp8"))

    assert run.succeeded, run.error
    assert any("enable-libvpx" in message for message in run.warnings)
    assert "enable-libvpx" in caplog.text


def test_cleanup_failure_does_not_fail_run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    pipeline, _, _, _, _ = make_pipeline(tmp_path)
    import render_pipeline.temp_resources as temp_resources

    def broken_rmtree(path, *args, **kwargs):
        raise OSError("device busy")

    monkeypatch.setattr(temp_resources.shutil, "rmtree", broken_rmtree)

    run = pipeline.run(_options(tmp_path))

    assert run.succeeded
    assert run.error is None
    assert len(run.cleanup_failures) >= 1


def test_terminal_run_cannot_advance(tmp_path: Path) -> None:
    pipeline, _, _, _, _ = make_pipeline(tmp_path)
    run = pipeline.run(_options(tmp_path))

    with pytest.raises(RuntimeError):
        run.advance(Stage.PACKAGING)
    with pytest.raises(RuntimeError):
        run.temp.make_dir("late")


def test_unexpected_exception_still_cleans_up(tmp_path: Path) -> None:
    class ExplodingResolver(DummyResolver):
        def get_compositions(self, artifact: Path) -> List[Composition]:
            raise KeyboardInterrupt()

    pipeline, _, _, _, temp_root = make_pipeline(tmp_path)
    pipeline.resolver = ExplodingResolver([])

    with pytest.raises(KeyboardInterrupt):
        pipeline.run(_options(tmp_path))
    assert list(temp_root.iterdir()) == []


def test_debug_logs_perf_counters(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    pipeline, _, _, _, _ = make_pipeline(tmp_path)
    pipeline.debug = True

    with caplog.at_level("INFO"):
        run = pipeline.run(_options(tmp_path))

    assert run.succeeded
    assert "render-frame: 30x" in caplog.text
    assert run.perf.snapshot()["stitch"].count == 1


def test_extensionless_output_is_encoded_with_container_suffix(tmp_path: Path) -> None:
    encoder = DummyEncoder()
    pipeline, _, _, _, _ = make_pipeline(tmp_path, encoder=encoder)

    run = pipeline.run(_options(tmp_path, output=tmp_path / "out" / "myvideo", codec="h264"))

    assert run.succeeded, run.error
    assert run.output == tmp_path / "out" / "myvideo.mp4"
    assert encoder.jobs[0].output_path.suffix == ".mp4"
    assert any("No file extension" in message for message in run.warnings)


def test_failed_stitch_removes_parent_dirs_it_created(tmp_path: Path) -> None:
    pipeline, _, _, _, temp_root = make_pipeline(tmp_path, encoder=DummyEncoder(fail=True))

    run = pipeline.run(_options(tmp_path, output=tmp_path / "renders" / "2024" / "video.mp4"))

    assert run.failed
    assert not (tmp_path / "renders").exists()
    assert list(temp_root.iterdir()) == []


def test_successful_stitch_keeps_parent_dirs_it_created(tmp_path: Path) -> None:
    pipeline, _, _, _, _ = make_pipeline(tmp_path)

    run = pipeline.run(_options(tmp_path, output=tmp_path / "renders" / "2024" / "video.mp4"))

    assert run.succeeded, run.error
    assert (tmp_path / "renders" / "2024" / "video.mp4").read_bytes() == b"video"


def test_failed_sequence_leaves_existing_output_dir_untouched(tmp_path: Path) -> None:
    target = tmp_path / "frames"
    target.mkdir()
    (target / "notes.txt").write_text("keep", encoding="utf-8")
    compositions = [Composition(id="Main", width=8, height=8, fps=30, duration_in_frames=50)]
    pipeline, _, _, _, temp_root = make_pipeline(tmp_path, compositions=compositions, fail_at=20)

    run = pipeline.run(_options(tmp_path, output=target, sequence=True, overwrite=True, concurrency=1))

    assert run.failed
    assert isinstance(run.error, CollaboratorError)
    assert sorted(p.name for p in target.iterdir()) == ["notes.txt"]
    assert list(temp_root.iterdir()) == []


def test_failed_sequence_removes_output_dir_it_would_create(tmp_path: Path) -> None:
    pipeline, _, _, _, _ = make_pipeline(tmp_path, fail_at=5)

    run = pipeline.run(_options(tmp_path, output=tmp_path / "seq" / "frames", sequence=True, concurrency=1))

    assert run.failed
    assert not (tmp_path / "seq").exists()


def test_sequence_overwrite_replaces_frames_of_earlier_render(tmp_path: Path) -> None:
    target = tmp_path / "frames"
    target.mkdir()
    for frame in range(100):
        (target / frame_file_name(frame, ImageFormat.PNG, 100)).write_bytes(b"old")
    (target / "notes.txt").write_text("keep", encoding="utf-8")
    compositions = [Composition(id="Main", width=8, height=8, fps=30, duration_in_frames=12)]
    pipeline, _, _, _, temp_root = make_pipeline(tmp_path, compositions=compositions)

    run = pipeline.run(_options(tmp_path, output=target, sequence=True, overwrite=True))

    assert run.succeeded, run.error
    expected = [frame_file_name(i, ImageFormat.PNG, 12) for i in range(12)]
    assert sorted(p.name for p in target.iterdir()) == sorted(expected + ["notes.txt"])
    assert (target / expected[3]).read_bytes() == b"frame-3"
    assert list(temp_root.iterdir()) == []
