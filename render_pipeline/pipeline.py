"""Render pipeline coordinator.

Stages run strictly in order::

    idle -> validating -> packaging -> resolving-composition
         -> rendering-frames -> (stitching) -> cleaning-up -> done | failed

Stitching is skipped for image sequences. Cleanup runs on every exit path.
"""
from __future__ import annotations

import os
import shutil
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from logging_utils import get_logger

from . import formats
from .collaborators import (
    FRAME_FILE_PREFIX,
    Bundler,
    CompositionResolver,
    Encoder,
    FrameRenderer,
    FrameRendererFactory,
    StitchJob,
    frame_file_name,
)
from .concurrency import describe_concurrency
from .errors import CollaboratorError, CompositionNotFoundError, PreconditionError, RenderError
from .models import Composition, RenderOptions, RenderRequest, Stage
from .perf import PerfCounters
from .progress import FrameProgressTracker, NullProgressReporter, ProgressReporter, StageProgress
from .request import check_sequence_codec_conflict, resolve_render_request
from .temp_resources import TempResourceManager

logger = get_logger(__name__)


def _make_parents(temp: TempResourceManager, path: Path) -> List[Path]:
    """Create the missing ancestors of ``path`` and register each one with ``temp``.

    Returns the created directories, outermost first.
    """
    missing: List[Path] = []
    parent = path.parent
    while not parent.exists():
        missing.append(parent)
        parent = parent.parent
    created = list(reversed(missing))
    for directory in created:
        directory.mkdir(exist_ok=True)
        temp.register(directory)
    return created


class _RunProgressReporter(ProgressReporter):
    """Keeps the run's own counters and forwards every event to the display sink."""

    def __init__(self, downstream: ProgressReporter) -> None:
        super().__init__()
        self.downstream = downstream

    def _on_start(self, stage: Stage, maximum: float, label: str) -> None:
        self.downstream.start_stage(stage, maximum, label)

    def _on_progress(self, stage: Stage, value: float, maximum: float) -> None:
        self.downstream.report_progress(stage, value, maximum)

    def _on_finish(self, stage: Stage, state: StageProgress) -> None:
        self.downstream.finish_stage(stage)


@dataclass
class PipelineRun:
    run_id: str
    temp: TempResourceManager
    stage: Stage = Stage.IDLE
    history: List[Stage] = field(default_factory=list)
    request: Optional[RenderRequest] = None
    composition: Optional[Composition] = None
    artifact_dir: Optional[Path] = None
    frames_dir: Optional[Path] = None
    output: Optional[Path] = None
    error: Optional[RenderError] = None
    warnings: List[str] = field(default_factory=list)
    cleanup_failures: List[Path] = field(default_factory=list)
    perf: PerfCounters = field(default_factory=PerfCounters)
    reporter: Optional[ProgressReporter] = None

    def advance(self, stage: Stage) -> None:
        if self.stage.is_terminal:
            raise RuntimeError(f"Run {self.run_id} already finished with state {self.stage.value}")
        logger.debug("Run %s: %s -> %s", self.run_id, self.stage.value, stage.value)
        self.stage = stage
        self.history.append(stage)

    @property
    def succeeded(self) -> bool:
        return self.stage is Stage.DONE

    @property
    def failed(self) -> bool:
        return self.stage is Stage.FAILED

    @property
    def exit_code(self) -> int:
        if self.error is not None:
            return self.error.exit_code
        return 0

    @property
    def progress(self) -> Dict[Stage, StageProgress]:
        if self.reporter is None:
            return {}
        return self.reporter.snapshot()


def _new_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"render_{stamp}_{uuid.uuid4().hex[:8]}"


class RenderPipeline:
    """Drive one composition through packaging, frame rendering and encoding."""

    def __init__(
        self,
        *,
        bundler: Bundler,
        resolver: CompositionResolver,
        frame_renderer_factory: FrameRendererFactory,
        encoder: Encoder,
        reporter: Optional[ProgressReporter] = None,
        temp_root: Optional[Path] = None,
        cpu_count: Optional[int] = None,
        cwd: Optional[Path] = None,
        debug: bool = False,
    ) -> None:
        self.bundler = bundler
        self.resolver = resolver
        self.frame_renderer_factory = frame_renderer_factory
        self.encoder = encoder
        self.reporter = reporter or NullProgressReporter()
        self.temp_root = temp_root
        self.cpu_count = cpu_count
        self.cwd = cwd
        self.debug = debug

    def run(self, options: RenderOptions) -> PipelineRun:
        """Execute a run and return it in state ``done`` or ``failed``.

        ``RenderError`` failures are recorded on the returned run. Any other
        exception is re-raised after cleanup.
        """
        run = PipelineRun(
            run_id=_new_run_id(),
            temp=TempResourceManager(self.temp_root),
            reporter=_RunProgressReporter(self.reporter),
        )
        try:
            self._execute(run, options)
        except RenderError as exc:
            run.error = exc
            logger.error("Render failed during %s: %s", run.stage.value, exc)
        except BaseException:
            self._finish(run, failed=True)
            raise
        self._finish(run, failed=run.error is not None)
        return run

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _execute(self, run: PipelineRun, options: RenderOptions) -> None:
        run.advance(Stage.VALIDATING)
        request = self._validate(run, options)
        run.request = request
        steps = 2 if request.outputs_image_sequence else 3

        run.advance(Stage.PACKAGING)
        artifact = self._package(run, request, steps)

        run.advance(Stage.RESOLVING_COMPOSITION)
        composition = self._resolve_composition(artifact, request.composition_id)
        run.composition = composition

        run.advance(Stage.RENDERING_FRAMES)
        frames_dir = self._render_frames(run, request, composition, artifact, steps)

        if request.outputs_image_sequence:
            self._publish_sequence(run, request, frames_dir)
        else:
            run.advance(Stage.STITCHING)
            self._stitch(run, request, composition, frames_dir, steps)

        run.output = request.output

    def _validate(self, run: PipelineRun, options: RenderOptions) -> RenderRequest:
        check_sequence_codec_conflict(options)
        request, warnings = resolve_render_request(options, cpu_count=self.cpu_count, cwd=self.cwd)

        if not request.outputs_image_sequence:
            try:
                self.encoder.validate()
                capabilities = self.encoder.capabilities()
            except RenderError:
                raise
            except Exception as exc:
                raise CollaboratorError(f"Encoder is not usable: {exc}", stage=Stage.VALIDATING.value) from exc
            warnings.extend(formats.check_codec_feasibility(request.codec, capabilities))

        for message in warnings:
            logger.warning(message)
        run.warnings.extend(warnings)
        logger.debug("Render request: %s", request.to_debug_dict())
        return request

    def _package(self, run: PipelineRun, request: RenderRequest, steps: int) -> Path:
        reporter = run.reporter
        out_dir = run.temp.make_dir("bundle")
        run.artifact_dir = out_dir
        reporter.start_stage(Stage.PACKAGING, 100, f"(1/{steps}) Bundling composition...")
        try:
            with run.perf.measure("bundle"):
                artifact = self.bundler.bundle(request.source, out_dir, reporter.packaging_progress)
        except Exception as exc:
            raise CollaboratorError(f"Bundling {request.source} failed: {exc}", stage=Stage.PACKAGING.value) from exc
        finally:
            reporter.finish_stage(Stage.PACKAGING)
        artifact = Path(artifact)
        if artifact != out_dir:
            run.temp.register(artifact)
            run.artifact_dir = artifact
        return artifact

    def _resolve_composition(self, artifact: Path, composition_id: str) -> Composition:
        try:
            compositions = self.resolver.get_compositions(artifact)
        except Exception as exc:
            raise CollaboratorError(
                f"Could not read compositions: {exc}", stage=Stage.RESOLVING_COMPOSITION.value
            ) from exc
        for composition in compositions:
            if composition.id == composition_id:
                return composition
        raise CompositionNotFoundError(composition_id, [c.id for c in compositions])

    def _render_frames(
        self,
        run: PipelineRun,
        request: RenderRequest,
        composition: Composition,
        artifact: Path,
        steps: int,
    ) -> Path:
        frames_dir = run.temp.make_dir("frames")
        run.frames_dir = frames_dir

        total = composition.duration_in_frames
        reporter = run.reporter
        reporter.start_stage(
            Stage.RENDERING_FRAMES,
            total,
            f"(2/{steps}) Rendering frames ({describe_concurrency(request.concurrency)})...",
        )
        tracker = FrameProgressTracker(total, reporter)
        try:
            self._fan_out_frames(run, request, composition, artifact, frames_dir, tracker)
        finally:
            reporter.finish_stage(Stage.RENDERING_FRAMES)
        logger.info("Rendered %d frames into %s", tracker.completed, frames_dir)
        return frames_dir

    def _fan_out_frames(
        self,
        run: PipelineRun,
        request: RenderRequest,
        composition: Composition,
        artifact: Path,
        frames_dir: Path,
        tracker: FrameProgressTracker,
    ) -> None:
        total = composition.duration_in_frames
        local = threading.local()
        renderers: List[FrameRenderer] = []
        renderers_lock = threading.Lock()

        def render_one(frame: int) -> int:
            renderer = getattr(local, "renderer", None)
            if renderer is None:
                renderer = self.frame_renderer_factory(artifact)
                local.renderer = renderer
                with renderers_lock:
                    renderers.append(renderer)
            output_path = frames_dir / frame_file_name(frame, request.image_format, total)
            with run.perf.measure("render-frame"):
                renderer.render_frame(
                    composition,
                    request.props,
                    frame,
                    output_path,
                    request.image_format,
                    request.effective_quality,
                )
            tracker.frame_done(frame)
            return frame

        frames: Iterator[int] = iter(range(total))
        pending: Dict[Future, int] = {}
        failure: Optional[tuple] = None

        with ThreadPoolExecutor(max_workers=request.concurrency, thread_name_prefix="frame") as executor:

            def submit_next() -> bool:
                frame = next(frames, None)
                if frame is None:
                    return False
                pending[executor.submit(render_one, frame)] = frame
                return True

            while len(pending) < request.concurrency and submit_next():
                pass
            while pending:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    frame = pending.pop(future)
                    exc = future.exception()
                    if exc is not None and failure is None:
                        failure = (frame, exc)
                # No new work once a frame has failed; in-flight frames finish.
                while failure is None and len(pending) < request.concurrency and submit_next():
                    pass

        for renderer in renderers:
            try:
                renderer.close()
            except Exception as exc:
                logger.warning("Frame renderer did not close cleanly: %s", exc)

        if failure is not None:
            frame, exc = failure
            raise CollaboratorError(
                f"Rendering frame {frame} of {composition.id} failed: {exc}",
                stage=Stage.RENDERING_FRAMES.value,
            ) from exc

    def _stitch(
        self,
        run: PipelineRun,
        request: RenderRequest,
        composition: Composition,
        frames_dir: Path,
        steps: int,
    ) -> None:
        if isinstance(request.crf, bool) or not isinstance(request.crf, (int, float)):
            raise PreconditionError("CRF is unexpectedly not a number")
        assert request.codec is not None

        output = request.output
        partial = output.with_name(f".{output.stem}.{run.run_id}.partial{output.suffix}")
        created_dirs = _make_parents(run.temp, output)
        run.temp.register(partial)
        job = StitchJob(
            frames_dir=frames_dir,
            width=composition.width,
            height=composition.height,
            fps=composition.fps,
            total_frames=composition.duration_in_frames,
            output_path=partial,
            overwrite=request.overwrite,
            image_format=request.image_format,
            pixel_format=request.pixel_format,
            codec=request.codec,
            crf=request.crf,
        )

        reporter = run.reporter
        total = composition.duration_in_frames
        reporter.start_stage(Stage.STITCHING, total, f"({steps}/{steps}) Stitching frames together...")
        try:
            with run.perf.measure("stitch"):
                self.encoder.stitch(job, lambda frame: reporter.stitch_progress(frame, total))
        except Exception as exc:
            raise CollaboratorError(f"Encoding {output} failed: {exc}", stage=Stage.STITCHING.value) from exc
        finally:
            reporter.finish_stage(Stage.STITCHING)

        if not partial.exists():
            raise CollaboratorError(f"Encoder produced no file at {partial}", stage=Stage.STITCHING.value)
        if output.exists() and not request.overwrite:
            raise PreconditionError(f"File at {output} already exists. Use --overwrite to overwrite.")
        os.replace(partial, output)
        run.temp.release(partial)
        for directory in created_dirs:
            run.temp.release(directory)

    def _publish_sequence(self, run: PipelineRun, request: RenderRequest, frames_dir: Path) -> None:
        """Move the rendered frames into the sequence output directory.

        Frame files left by an earlier render of the same directory are removed
        first so the directory holds exactly one file per frame.
        """
        target = request.output
        try:
            created_dirs = _make_parents(run.temp, target)
            if target.exists():
                stale = [path for path in target.glob(f"{FRAME_FILE_PREFIX}*") if path.is_file()]
                for path in stale:
                    path.unlink()
                if stale:
                    logger.info("Removed %d frame file(s) of an earlier render from %s", len(stale), target)
            else:
                target.mkdir()
                # Owned by the run until it succeeds.
                run.temp.register(target)
            for path in sorted(frames_dir.iterdir()):
                shutil.move(str(path), str(target / path.name))
        except OSError as exc:
            raise PreconditionError(f"Could not write the image sequence to {target}: {exc}") from exc
        for directory in created_dirs:
            run.temp.release(directory)

    def _finish(self, run: PipelineRun, *, failed: bool) -> None:
        run.advance(Stage.CLEANING_UP)
        if not failed and run.request is not None and run.request.outputs_image_sequence:
            run.temp.release(run.request.output)
        logger.info("Cleaning up...")
        run.cleanup_failures = run.temp.dispose()
        if self.debug:
            run.perf.log()

        if failed:
            run.output = None
            run.advance(Stage.FAILED)
            return
        run.advance(Stage.DONE)
        if run.request is not None and run.request.outputs_image_sequence:
            logger.info("Your image sequence is ready: %s", run.output)
        else:
            logger.info("Your video is ready: %s", run.output)
