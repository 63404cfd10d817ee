#!/usr/bin/env python3
"""Queue video upscale/interpolation tasks and run them with live progress."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

import codec
import tracing
from cli import build_task_params, build_tasks, parse_args, validate_runtime_args
from pipeline import ProcessingPipeline
from scheduler import TaskScheduler
from tasks import Task, TaskKind, TaskStatus, TaskStore
from toolchain import ActiveProcess, Toolchain, progress_write, resolve_toolchain
from workflow import SourceShape, describe_workflow_choice, resolve_workflow_plan


class ProgressDisplay:
    """One tqdm bar per task, driven by store updates."""

    def __init__(self, store: TaskStore):
        self._bars: dict[str, tqdm] = {}
        self._unsubscribe = store.subscribe(self._on_change)

    def _on_change(self, tasks: list[Task], previous: list[Task]) -> None:
        for task in tasks:
            bar = self._bars.get(task.id)
            if task.status is TaskStatus.PROCESSING:
                if bar is None:
                    bar = tqdm(total=100, desc=task.input_path.name, unit="%", leave=True)
                    self._bars[task.id] = bar
                bar.n = round(task.progress, 1)
                bar.set_postfix_str(f"{task.stage_message} | ETA {task.eta}s", refresh=False)
                bar.refresh()
            elif task.status.is_terminal and bar is not None:
                if task.status is TaskStatus.COMPLETED:
                    bar.n = 100
                    bar.refresh()
                bar.close()
                del self._bars[task.id]
                progress_write(describe_outcome(task))

    def close(self) -> None:
        self._unsubscribe()
        for bar in self._bars.values():
            bar.close()
        self._bars.clear()


def describe_outcome(task: Task) -> str:
    if task.status is TaskStatus.COMPLETED:
        return f"Done: {task.output_path}"
    if task.status is TaskStatus.CANCELLED:
        return f"Cancelled: {task.input_path}"
    return f"Failed: {task.input_path}: {task.error}"


async def probe_source(toolchain: Toolchain, input_video: Path) -> SourceShape:
    info = await codec.get_video_info(toolchain, input_video, ActiveProcess())
    return SourceShape(info.width, info.height, info.fps, info.total_frames)


async def run_plan_only(args) -> int:
    """Probe each input and print the resolved workflow plans as JSON."""
    toolchain = resolve_toolchain(args, need_upscaler=False, need_interpolator=False)
    params = build_task_params(args)
    plans = []
    for raw in args.input_videos:
        input_video = Path(raw).expanduser().resolve()
        source = await probe_source(toolchain, input_video)
        plan = resolve_workflow_plan(source, params)
        _, reason = describe_workflow_choice(source, params)
        plans.append(
            {
                "input": str(input_video),
                "source": {
                    "width": source.width,
                    "height": source.height,
                    "fps": source.fps,
                    "total_frames": source.total_frames,
                },
                "plan": plan.to_dict(),
                "reason": reason,
            }
        )
    print(json.dumps(plans, indent=2))
    return 0


async def run_tasks(args) -> int:
    kind = TaskKind(args.command)
    toolchain = resolve_toolchain(
        args,
        need_upscaler=kind in (TaskKind.UPSCALE, TaskKind.WORKFLOW),
        need_interpolator=kind in (TaskKind.INTERPOLATE, TaskKind.WORKFLOW),
    )
    tasks = build_tasks(args)

    store = TaskStore()
    pipeline = ProcessingPipeline(toolchain, temp_root=args.temp_dir)
    scheduler = TaskScheduler(store, pipeline)
    display = ProgressDisplay(store)
    try:
        # The queue admits the newest pending task first; submit in reverse so
        # inputs run in command-line order.
        for task in reversed(tasks):
            source = None
            if kind is TaskKind.WORKFLOW:
                source = await probe_source(toolchain, task.input_path)
            scheduler.submit(task, source)

        scheduler.start()
        await scheduler.wait_idle()
    except asyncio.CancelledError:
        await scheduler.cancel_all()
        raise
    finally:
        scheduler.close()
        display.close()

    failed = [task for task in store.list_tasks() if task.status is TaskStatus.ERROR]
    return 1 if failed else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        validate_runtime_args(args)
        if args.trace:
            tracing.init_tracing(args.trace_endpoint)
        if getattr(args, "plan_only", False):
            return asyncio.run(run_plan_only(args))
        return asyncio.run(run_tasks(args))
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
