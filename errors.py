"""Errors raised while planning and running enhancement tasks."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class ToolExecutionFailure(RuntimeError):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(self, tool: str, returncode: Optional[int], stderr: str = ""):
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        message = stderr if stderr.strip() else f"{tool} failed with code {returncode}"
        super().__init__(message)


class FrameSequenceError(RuntimeError):
    """Raised when a frame directory cannot be encoded as one sequence."""

    def __init__(self, directory: Path, reason: str):
        self.directory = Path(directory)
        super().__init__(f"{reason} in {directory}")


class NoSequenceFound(FrameSequenceError):
    def __init__(self, directory: Path):
        super().__init__(directory, "No valid frame sequence found")


class NonContiguousSequence(FrameSequenceError):
    def __init__(self, directory: Path):
        super().__init__(directory, "Frame sequence is not contiguous")


class PlanningError(ValueError):
    """Raised when a workflow request cannot be turned into a plan."""


class InfeasibleTarget(PlanningError):
    pass


class UnsupportedModelScale(PlanningError):
    pass


class AlreadyRunning(RuntimeError):
    """Raised when a pipeline is started while another run is in flight."""


class ProcessingCancelled(Exception):
    """Cooperative cancellation signal; not a failure."""

    def __init__(self, message: str = "Processing cancelled"):
        super().__init__(message)
