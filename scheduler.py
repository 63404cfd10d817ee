"""Single-runner task scheduler.

Runs one task at a time through a ProcessingPipeline. The most recently
submitted pending task is admitted first, and admission is re-triggered by
every store change and every task completion, so no external driving loop is
needed.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from errors import ProcessingCancelled
from pipeline import PipelineProgress, ProcessingPipeline
from tasks import Stage, Task, TaskKind, TaskStatus, TaskStore
from workflow import SourceShape, resolve_workflow_plan


class TaskScheduler:
    def __init__(self, store: TaskStore, pipeline: ProcessingPipeline):
        self.store = store
        self.pipeline = pipeline
        self.current_task_id: Optional[str] = None
        self._running = False
        self._run_task: Optional[asyncio.Task] = None
        self._unsubscribers: list[Callable[[], None]] = []

    def start(self) -> None:
        """Subscribe to the store and pipeline; must be called from the event loop."""
        if not self._unsubscribers:
            self._unsubscribers.append(self.store.subscribe(self._on_store_change))
            self._unsubscribers.append(self.pipeline.subscribe(self._on_progress))
        self.admit_next()

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def submit(self, task: Task, source: Optional[SourceShape] = None) -> Task:
        """Add a task to the store.

        When the source shape is already known, workflow tasks are planned
        first so an infeasible target never reaches the queue.
        """
        if task.kind is TaskKind.WORKFLOW and source is not None:
            resolve_workflow_plan(source, task.params)
        self.store.add_task(task)
        return task

    def pick_next(self) -> Optional[Task]:
        tasks = self.store.list_tasks()
        for task in tasks:
            if task.status is TaskStatus.PROCESSING:
                return task
        for task in reversed(tasks):
            if task.status is TaskStatus.PENDING:
                return task
        return None

    def admit_next(self) -> None:
        if self._running:
            return
        task = self.pick_next()
        if task is None:
            return
        self._running = True
        self.current_task_id = task.id
        # Flip to PROCESSING before yielding so a cancel that lands before the
        # run coroutine starts is seen by it.
        self.store.update_task(
            task.id,
            status=TaskStatus.PROCESSING,
            stage=None,
            progress=0.0,
            current_frame=0,
            total_frames=0,
            eta=0,
            stage_message="",
            error=None,
            start_time=time.time(),
            end_time=None,
        )
        self._run_task = asyncio.get_running_loop().create_task(self._process_task(task.id))

    async def wait_idle(self) -> None:
        """Wait until no task is running and nothing is left to admit."""
        while True:
            run_task = self._run_task
            if run_task is None or run_task.done():
                return
            await asyncio.wait({run_task})

    async def cancel_task(self, task_id: str) -> None:
        task = self.store.get_task(task_id)
        if task is None or task.status.is_terminal:
            return
        self.store.update_task(task_id, status=TaskStatus.CANCELLED, error=None, end_time=time.time())
        if task_id == self.current_task_id:
            await self.pipeline.cancel()

    async def cancel_all(self) -> None:
        active = False
        for task in self.store.list_tasks():
            if task.status not in (TaskStatus.PROCESSING, TaskStatus.PENDING):
                continue
            self.store.update_task(task.id, status=TaskStatus.CANCELLED, error=None, end_time=time.time())
            if task.id == self.current_task_id:
                active = True
        if active:
            await self.pipeline.cancel()

    def _on_store_change(self, tasks: list[Task], previous: list[Task]) -> None:
        self.admit_next()

    def _on_progress(self, event: PipelineProgress) -> None:
        if self.current_task_id is None:
            return
        task = self.store.get_task(self.current_task_id)
        if task is None or task.status is not TaskStatus.PROCESSING:
            return
        self.store.update_task(
            task.id,
            stage=event.stage,
            progress=event.progress,
            current_frame=event.current_frame,
            total_frames=event.total_frames,
            eta=event.eta,
            stage_message=event.message,
        )

    async def _process_task(self, task_id: str) -> None:
        try:
            task = self.store.get_task(task_id)
            if task is not None and task.status is TaskStatus.PROCESSING:
                await self._run_pipeline(task)
        finally:
            self.current_task_id = None
            self._running = False
        self.admit_next()

    async def _run_pipeline(self, task: Task) -> None:
        try:
            await self.pipeline.start(task)
        except ProcessingCancelled:
            self._finish_cancelled(task.id)
        except Exception as exc:
            if self._is_cancelled(task.id):
                self._finish_cancelled(task.id)
            else:
                self.store.update_task(
                    task.id, status=TaskStatus.ERROR, error=str(exc), end_time=time.time()
                )
        else:
            if self._is_cancelled(task.id):
                self._finish_cancelled(task.id)
            else:
                self.store.update_task(
                    task.id,
                    status=TaskStatus.COMPLETED,
                    stage=Stage.DONE,
                    progress=100.0,
                    eta=0,
                    end_time=time.time(),
                )

    def _is_cancelled(self, task_id: str) -> bool:
        task = self.store.get_task(task_id)
        return task is not None and task.status is TaskStatus.CANCELLED

    def _finish_cancelled(self, task_id: str) -> None:
        self.store.update_task(task_id, status=TaskStatus.CANCELLED, error=None, end_time=time.time())
