import asyncio
import unittest
from pathlib import Path

import tasks
from errors import InfeasibleTarget, ProcessingCancelled, ToolExecutionFailure
from models import UpscaleParams, WorkflowTaskParams
from pipeline import PipelineProgress
from scheduler import TaskScheduler
from tasks import Stage, TaskKind, TaskStatus, TaskStore
from workflow import SourceShape


class FakePipeline:
    """Stands in for ProcessingPipeline; tasks can be held open with gates."""

    def __init__(self):
        self.started = []
        self.gates = {}
        self.errors = {}
        self.listeners = []
        self.cancel_calls = 0
        self.cancel_error = ProcessingCancelled()
        self._cancel_requested = False

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    async def start(self, task):
        self._cancel_requested = False
        self.started.append(task.id)
        for listener in list(self.listeners):
            listener(PipelineProgress(Stage.EXTRACT, 10.0, 1, 10, 5, "Extracting frames"))
        gate = self.gates.get(task.id)
        if gate is not None:
            await gate.wait()
        if self._cancel_requested:
            raise self.cancel_error
        error = self.errors.get(task.id)
        if error is not None:
            raise error

    async def cancel(self):
        self.cancel_calls += 1
        self._cancel_requested = True
        for gate in self.gates.values():
            gate.set()


def make_task(name):
    return tasks.create_task(TaskKind.UPSCALE, Path(f"/videos/{name}.mp4"), UpscaleParams())


class SchedulerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = TaskStore()
        self.pipeline = FakePipeline()
        self.scheduler = TaskScheduler(self.store, self.pipeline)
        self.addCleanup(self.scheduler.close)

    async def wait_until_started(self, task_id):
        while task_id not in self.pipeline.started:
            await asyncio.sleep(0.01)

    def status(self, task):
        return self.store.get_task(task.id).status


class TestAdmission(SchedulerTestCase):
    async def test_newest_pending_task_runs_first(self):
        first, second = make_task("a"), make_task("b")
        self.store.add_task(first)
        self.store.add_task(second)

        self.scheduler.start()
        await self.scheduler.wait_idle()

        self.assertEqual(self.pipeline.started, [second.id, first.id])
        for task in (first, second):
            record = self.store.get_task(task.id)
            self.assertEqual(record.status, TaskStatus.COMPLETED)
            self.assertEqual(record.progress, 100.0)
            self.assertEqual(record.stage, Stage.DONE)
            self.assertIsNotNone(record.start_time)
            self.assertIsNotNone(record.end_time)

    async def test_admission_resets_progress_and_tracks_events(self):
        task = make_task("a")
        self.store.add_task(task)
        self.store.update_task(task.id, progress=55.0, error="stale", current_frame=9)
        gate = self.pipeline.gates[task.id] = asyncio.Event()

        self.scheduler.start()
        await self.wait_until_started(task.id)

        record = self.store.get_task(task.id)
        self.assertEqual(record.status, TaskStatus.PROCESSING)
        self.assertIsNone(record.error)
        self.assertEqual(record.progress, 10.0)
        self.assertEqual(record.current_frame, 1)
        self.assertEqual(record.eta, 5)
        self.assertEqual(record.stage_message, "Extracting frames")
        self.assertEqual(self.scheduler.current_task_id, task.id)

        gate.set()
        await self.scheduler.wait_idle()
        self.assertIsNone(self.scheduler.current_task_id)

    async def test_tasks_added_later_are_admitted_automatically(self):
        self.scheduler.start()
        task = self.scheduler.submit(make_task("late"))

        await asyncio.sleep(0)
        await self.scheduler.wait_idle()

        self.assertEqual(self.status(task), TaskStatus.COMPLETED)

    async def test_processing_task_is_resumed_first(self):
        resumed, pending = make_task("resumed"), make_task("pending")
        self.store.add_task(resumed)
        self.store.add_task(pending)
        self.store.update_task(resumed.id, status=TaskStatus.PROCESSING)

        self.scheduler.start()
        await self.scheduler.wait_idle()

        self.assertEqual(self.pipeline.started, [resumed.id, pending.id])

    async def test_failure_is_recorded_verbatim_and_queue_continues(self):
        failing, other = make_task("bad"), make_task("good")
        self.store.add_task(other)
        self.store.add_task(failing)
        self.pipeline.errors[failing.id] = ToolExecutionFailure("ffmpeg", 1, "moov atom not found")

        self.scheduler.start()
        await self.scheduler.wait_idle()

        record = self.store.get_task(failing.id)
        self.assertEqual(record.status, TaskStatus.ERROR)
        self.assertEqual(record.error, "moov atom not found")
        self.assertEqual(record.progress, 10.0)
        self.assertEqual(self.status(other), TaskStatus.COMPLETED)

    async def test_closed_scheduler_ignores_new_tasks(self):
        self.scheduler.start()
        self.scheduler.close()
        self.store.add_task(make_task("a"))
        await asyncio.sleep(0)
        self.assertEqual(self.pipeline.started, [])


class TestSubmit(SchedulerTestCase):
    def test_infeasible_workflow_is_never_queued(self):
        params = WorkflowTaskParams(output_mode="target", target_width=16000, target_height=9000)
        task = tasks.create_task(TaskKind.WORKFLOW, Path("/videos/a.mp4"), params)

        with self.assertRaises(InfeasibleTarget):
            self.scheduler.submit(task, SourceShape(1920, 1080, 30.0, 300))

        self.assertEqual(self.store.list_tasks(), [])

    def test_feasible_workflow_is_queued(self):
        task = tasks.create_task(TaskKind.WORKFLOW, Path("/videos/a.mp4"), WorkflowTaskParams())
        self.scheduler.submit(task, SourceShape(1920, 1080, 30.0, 300))
        self.assertEqual(self.store.get_task(task.id).status, TaskStatus.PENDING)


class TestCancellation(SchedulerTestCase):
    async def test_cancelling_active_task_ends_cancelled_without_error(self):
        task = make_task("a")
        self.store.add_task(task)
        self.pipeline.gates[task.id] = asyncio.Event()
        self.scheduler.start()
        await self.wait_until_started(task.id)

        await self.scheduler.cancel_task(task.id)

        self.assertEqual(self.status(task), TaskStatus.CANCELLED)
        self.assertEqual(self.pipeline.cancel_calls, 1)
        await self.scheduler.wait_idle()
        record = self.store.get_task(task.id)
        self.assertEqual(record.status, TaskStatus.CANCELLED)
        self.assertIsNone(record.error)
        self.assertIsNotNone(record.end_time)

    async def test_failure_after_cancel_is_still_cancelled(self):
        task = make_task("a")
        self.store.add_task(task)
        self.pipeline.gates[task.id] = asyncio.Event()
        self.pipeline.cancel_error = ToolExecutionFailure("waifu2x-ncnn-vulkan", -9, "")
        self.scheduler.start()
        await self.wait_until_started(task.id)

        await self.scheduler.cancel_task(task.id)
        await self.scheduler.wait_idle()

        record = self.store.get_task(task.id)
        self.assertEqual(record.status, TaskStatus.CANCELLED)
        self.assertIsNone(record.error)

    async def test_cancel_right_after_admission_never_starts_pipeline(self):
        self.scheduler.start()
        task = self.scheduler.submit(make_task("a"))
        self.assertEqual(self.status(task), TaskStatus.PROCESSING)

        await self.scheduler.cancel_task(task.id)
        await self.scheduler.wait_idle()

        self.assertEqual(self.pipeline.started, [])
        record = self.store.get_task(task.id)
        self.assertEqual(record.status, TaskStatus.CANCELLED)
        self.assertIsNone(record.error)

    async def test_cancel_all_right_after_admission_never_starts_pipeline(self):
        self.scheduler.start()
        first = self.scheduler.submit(make_task("a"))
        second = self.scheduler.submit(make_task("b"))

        await self.scheduler.cancel_all()
        await self.scheduler.wait_idle()

        self.assertEqual(self.pipeline.started, [])
        self.assertEqual(self.status(first), TaskStatus.CANCELLED)
        self.assertEqual(self.status(second), TaskStatus.CANCELLED)

    async def test_cancelling_pending_task_skips_it(self):
        first, second = make_task("a"), make_task("b")
        self.store.add_task(first)
        self.store.add_task(second)

        await self.scheduler.cancel_task(second.id)
        self.scheduler.start()
        await self.scheduler.wait_idle()

        self.assertEqual(self.pipeline.started, [first.id])
        self.assertEqual(self.pipeline.cancel_calls, 0)
        self.assertEqual(self.status(second), TaskStatus.CANCELLED)

    async def test_cancelling_terminal_task_is_a_no_op(self):
        task = make_task("a")
        self.store.add_task(task)
        self.scheduler.start()
        await self.scheduler.wait_idle()

        await self.scheduler.cancel_task(task.id)
        await self.scheduler.cancel_task("unknown")

        self.assertEqual(self.status(task), TaskStatus.COMPLETED)

    async def test_cancel_all(self):
        older, newer = make_task("a"), make_task("b")
        self.store.add_task(older)
        self.store.add_task(newer)
        self.pipeline.gates[newer.id] = asyncio.Event()
        self.scheduler.start()
        await self.wait_until_started(newer.id)

        await self.scheduler.cancel_all()
        await self.scheduler.wait_idle()

        self.assertEqual(self.pipeline.cancel_calls, 1)
        self.assertEqual(self.pipeline.started, [newer.id])
        self.assertEqual(self.status(older), TaskStatus.CANCELLED)
        self.assertEqual(self.status(newer), TaskStatus.CANCELLED)


if __name__ == "__main__":
    unittest.main()
