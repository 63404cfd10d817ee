"""Per-task processing pipeline: extract -> process step(s) -> encode -> done."""

from __future__ import annotations

import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import codec
import interpolator
import upscaler
from errors import AlreadyRunning, ProcessingCancelled, ToolExecutionFailure
from tasks import Stage, Task, TaskKind
from toolchain import ActiveProcess, Toolchain, get_default_temp_root
from tracing import traced
from workflow import SourceShape, WorkflowPlan, adapt_interpolation_after_upscale, resolve_workflow_plan


@dataclass(frozen=True)
class PipelineProgress:
    stage: Stage
    progress: float
    current_frame: int
    total_frames: int
    eta: int
    message: str


@dataclass(frozen=True)
class StageWeights:
    extract: float
    process: float
    encode: float


SIMPLE_WEIGHTS = StageWeights(extract=25.0, process=60.0, encode=15.0)
WORKFLOW_WEIGHTS = StageWeights(extract=20.0, process=70.0, encode=10.0)

STEP_LABELS = {"upscale": "Upscaling frames", "interpolate": "Interpolating frames"}

ProgressListener = Callable[[PipelineProgress], None]


def calculate_eta(started_at: float, progress: float, now: Optional[float] = None) -> int:
    """Linear extrapolation of the remaining seconds from elapsed time."""
    if progress <= 0:
        return 0
    if now is None:
        now = time.monotonic()
    elapsed = max(0.0, now - started_at)
    return max(0, round(elapsed * (100.0 / min(progress, 100.0) - 1.0)))


class ProcessingPipeline:
    """Runs one task at a time against a single active child process.

    Progress events are delivered to every subscribed listener. Progress never
    decreases within a run and the run's temporary directory is always removed.
    """

    def __init__(self, toolchain: Toolchain, *, temp_root: Optional[Path] = None):
        self.toolchain = toolchain
        self.temp_root = Path(temp_root) if temp_root is not None else get_default_temp_root()
        self.runner = ActiveProcess()
        self.work_dir: Optional[Path] = None
        self._listeners: list[ProgressListener] = []
        self._running = False
        self._cancelled = False
        self._started_at = 0.0
        self._last_progress = 0.0

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def cancel(self) -> None:
        """Kill the active tool; no further tool is started during this run."""
        if not self._running:
            return
        self._cancelled = True
        await self.runner.cancel()

    @traced
    async def start(self, task: Task) -> None:
        if self._running:
            raise AlreadyRunning("Pipeline is already processing a task")
        self._running = True
        self._cancelled = False
        self.runner.reset()
        self._started_at = time.monotonic()
        self._last_progress = 0.0

        work_dir = self.temp_root / f"enhance-video-{task.id}-{int(time.time() * 1000)}"
        self.work_dir = work_dir
        try:
            try:
                await self._run(task, work_dir)
            except ToolExecutionFailure as exc:
                if self._cancelled:
                    raise ProcessingCancelled() from exc
                raise
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
            self.work_dir = None
            self._running = False

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise ProcessingCancelled()

    def _emit(
        self,
        stage: Stage,
        progress: float,
        current_frame: int,
        total_frames: int,
        message: str,
    ) -> None:
        progress = min(100.0, max(self._last_progress, progress))
        self._last_progress = progress
        event = PipelineProgress(
            stage=stage,
            progress=progress,
            current_frame=current_frame,
            total_frames=total_frames,
            eta=calculate_eta(self._started_at, progress),
            message=message,
        )
        for listener in list(self._listeners):
            listener(event)

    def _band(self, stage: Stage, start: float, width: float, message: str) -> Callable[[int, int], None]:
        def on_progress(current: int, total: int) -> None:
            fraction = min(1.0, current / total) if total > 0 else 0.0
            self._emit(stage, start + width * fraction, current, total, message)

        return on_progress

    async def _run(self, task: Task, work_dir: Path) -> None:
        frames_in = work_dir / "frames_in"
        frames_out = work_dir / "frames_out"
        frames_mid = work_dir / "frames_mid"
        frames_in.mkdir(parents=True, exist_ok=True)
        frames_out.mkdir(parents=True, exist_ok=True)

        info = await codec.get_video_info(self.toolchain, task.input_path, self.runner)
        plan: Optional[WorkflowPlan] = None
        if task.kind is TaskKind.WORKFLOW:
            source = SourceShape(info.width, info.height, info.fps, info.total_frames)
            plan = resolve_workflow_plan(source, task.params)
            if len(plan.steps) > 1:
                frames_mid.mkdir(parents=True, exist_ok=True)
        self._check_cancelled()

        weights = WORKFLOW_WEIGHTS if plan is not None else SIMPLE_WEIGHTS

        message = "Extracting frames"
        self._emit(Stage.EXTRACT, 0.0, 0, info.total_frames, message)
        await codec.extract_frames(
            self.toolchain,
            self.runner,
            task.input_path,
            frames_in,
            total_frames=info.total_frames,
            on_progress=self._band(Stage.EXTRACT, 0.0, weights.extract, message),
        )
        self._check_cancelled()

        steps = plan.steps if plan is not None else (task.kind.value,)
        step_width = weights.process / len(steps)
        for index, step in enumerate(steps):
            self._check_cancelled()
            step_input = frames_in if index == 0 else frames_mid
            step_output = frames_out if index == len(steps) - 1 else frames_mid
            band_start = weights.extract + step_width * index
            message = STEP_LABELS[step]
            if len(steps) > 1:
                message = f"{message} (step {index + 1}/{len(steps)})"
            self._emit(Stage.PROCESS, band_start, 0, 0, message)
            on_progress = self._band(Stage.PROCESS, band_start, step_width, message)

            if step == "upscale":
                params = plan.upscale_params if plan is not None else task.params
                await upscaler.run_upscale(
                    self.toolchain, self.runner, step_input, step_output, params, on_progress=on_progress
                )
            else:
                params = plan.interpolate_params if plan is not None else task.params
                if plan is not None and "upscale" in steps[:index]:
                    params = adapt_interpolation_after_upscale(params)
                await interpolator.run_interpolate(
                    self.toolchain, self.runner, step_input, step_output, params, on_progress=on_progress
                )
        self._check_cancelled()

        encode_start = weights.extract + weights.process
        target_width = target_height = target_fps = None
        if plan is not None:
            fps = plan.sequence_fps
            target_width = plan.output_width
            target_height = plan.output_height
            target_fps = plan.output_fps
        elif task.kind is TaskKind.INTERPOLATE:
            fps = info.fps * task.params.multiplier
        else:
            fps = info.fps

        message = "Encoding video"
        self._emit(Stage.ENCODE, encode_start, 0, 0, message)
        await codec.encode_video(
            self.toolchain,
            self.runner,
            frames_out,
            task.output_path,
            fps=fps,
            encode_settings=task.encode_settings,
            audio_source=task.input_path,
            on_progress=self._band(Stage.ENCODE, encode_start, weights.encode, message),
            target_width=target_width,
            target_height=target_height,
            target_fps=target_fps,
        )
        self._check_cancelled()

        self._emit(Stage.DONE, 100.0, 0, 0, "Done")
