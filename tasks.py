"""Task records and the in-memory task store the scheduler works against."""

from __future__ import annotations

import dataclasses
import enum
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from models import EncodeSettings, InterpolateParams, UpscaleParams, WorkflowTaskParams


class TaskKind(str, enum.Enum):
    UPSCALE = "upscale"
    INTERPOLATE = "interpolate"
    WORKFLOW = "workflow"


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.CANCELLED)


class Stage(str, enum.Enum):
    EXTRACT = "extract"
    PROCESS = "process"
    ENCODE = "encode"
    DONE = "done"


TaskParams = Union[UpscaleParams, InterpolateParams, WorkflowTaskParams]

_PARAMS_BY_KIND = {
    TaskKind.UPSCALE: UpscaleParams,
    TaskKind.INTERPOLATE: InterpolateParams,
    TaskKind.WORKFLOW: WorkflowTaskParams,
}

IMMUTABLE_FIELDS = frozenset(
    {"id", "kind", "input_path", "output_path", "encode_settings", "params"}
)


@dataclass(frozen=True)
class Task:
    id: str
    kind: TaskKind
    input_path: Path
    output_path: Path
    params: TaskParams
    encode_settings: EncodeSettings = EncodeSettings()
    status: TaskStatus = TaskStatus.PENDING
    stage: Optional[Stage] = None
    progress: float = 0.0
    current_frame: int = 0
    total_frames: int = 0
    eta: int = 0
    stage_message: str = ""
    error: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    def __post_init__(self) -> None:
        expected = _PARAMS_BY_KIND[self.kind]
        if not isinstance(self.params, expected):
            raise TypeError(
                f"{self.kind.value} task requires {expected.__name__}, "
                f"got {type(self.params).__name__}"
            )


def new_task_id(kind: TaskKind) -> str:
    return f"{kind.value}-{uuid.uuid4().hex[:12]}"


def resolve_output_path(input_path: Path, kind: TaskKind, output_dir: Optional[str] = None) -> Path:
    """Return ``<dir>/<stem>-<kind>.mp4`` next to the input or in ``output_dir``."""
    input_path = Path(input_path)
    file_name = f"{input_path.stem}-{kind.value}.mp4"
    if output_dir and output_dir.strip():
        return Path(output_dir.strip()).expanduser() / file_name
    return input_path.parent / file_name


def create_task(
    kind: TaskKind,
    input_path: Path,
    params: TaskParams,
    *,
    encode_settings: Optional[EncodeSettings] = None,
    output_dir: Optional[str] = None,
) -> Task:
    input_path = Path(input_path)
    return Task(
        id=new_task_id(kind),
        kind=kind,
        input_path=input_path,
        output_path=resolve_output_path(input_path, kind, output_dir),
        params=params,
        encode_settings=encode_settings or EncodeSettings(),
    )


Listener = Callable[[list[Task], list[Task]], None]


class TaskStore:
    """Ordered task list; every mutation goes through this object.

    Listeners are called with ``(tasks, previous_tasks)`` after each change.
    Tasks are kept in submission order.
    """

    def __init__(self) -> None:
        self._tasks: list[Task] = []
        self._listeners: list[Listener] = []

    def list_tasks(self) -> list[Task]:
        return list(self._tasks)

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def add_task(self, task: Task) -> None:
        if self.get_task(task.id) is not None:
            raise ValueError(f"Duplicate task id: {task.id}")
        self._commit(self._tasks + [task])

    def remove_task(self, task_id: str) -> None:
        self._commit([task for task in self._tasks if task.id != task_id])

    def update_task(self, task_id: str, **fields) -> Optional[Task]:
        frozen = IMMUTABLE_FIELDS.intersection(fields)
        if frozen:
            raise ValueError(f"Cannot modify immutable task field(s): {', '.join(sorted(frozen))}")

        updated: Optional[Task] = None
        tasks = []
        for task in self._tasks:
            if task.id == task_id:
                updated = dataclasses.replace(task, **fields)
                tasks.append(updated)
            else:
                tasks.append(task)
        if updated is not None:
            self._commit(tasks)
        return updated

    def clear_completed(self) -> None:
        self._commit([task for task in self._tasks if task.status is not TaskStatus.COMPLETED])

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, tasks: list[Task]) -> None:
        previous = self._tasks
        self._tasks = tasks
        for listener in list(self._listeners):
            listener(list(tasks), list(previous))
