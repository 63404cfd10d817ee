"""Toolchain: binary resolution, subprocess wrappers, and the active-process handle."""

from __future__ import annotations

import argparse
import asyncio
import os
import platform
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from tqdm import tqdm

from errors import ProcessingCancelled, ToolExecutionFailure

FFMPEG = "ffmpeg"
FFPROBE = "ffprobe"
WAIFU2X = "waifu2x-ncnn-vulkan"
RIFE = "rife-ncnn-vulkan"

LINE_BREAK = re.compile(r"[\r\n]+")

LineCallback = Callable[[str], None]


def get_default_temp_root() -> Path:
    return Path(tempfile.gettempdir())


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str
    waifu2x_binary: Optional[Path] = None
    rife_binary: Optional[Path] = None


@dataclass(frozen=True)
class ToolResult:
    returncode: int
    stdout: str
    stderr: str


def progress_write(message: str) -> None:
    """Write a message without breaking active tqdm progress bars."""
    tqdm.write(message)


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [str(part) for part in cmd],
        check=check,
        capture_output=capture_output,
        text=True,
        timeout=timeout,
    )


async def _pump_lines(
    stream: asyncio.StreamReader,
    raw: bytearray,
    on_line: Optional[LineCallback],
) -> None:
    # ncnn tools and ffmpeg redraw progress with bare carriage returns.
    pending = ""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        raw.extend(chunk)
        pending += chunk.decode("utf-8", errors="replace")
        *lines, pending = LINE_BREAK.split(pending)
        for line in lines:
            _emit_line(line, on_line)
    _emit_line(pending, on_line)


def _emit_line(line: str, on_line: Optional[LineCallback]) -> None:
    line = line.strip()
    if line and on_line is not None:
        on_line(line)


class ActiveProcess:
    """Runs one external tool at a time and can kill the one in flight.

    A pipeline owns a single instance, so "the currently active child process"
    is always ``self._process``. ``cancel()`` latches until ``reset()``: no new
    process is started while it is set, even if nothing was running when the
    cancel arrived.
    """

    def __init__(self) -> None:
        self._process: Optional[asyncio.subprocess.Process] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_active(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    async def run(
        self,
        cmd: Sequence[object],
        *,
        tool: Optional[str] = None,
        on_line: Optional[LineCallback] = None,
        check: bool = True,
    ) -> ToolResult:
        if self._process is not None:
            raise RuntimeError("Another tool process is already active")

        if self._cancelled:
            raise ProcessingCancelled()

        argv = [str(part) for part in cmd]
        tool_name = tool or Path(argv[0]).name
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._process = process
        stdout_raw = bytearray()
        stderr_raw = bytearray()
        try:
            if self._cancelled:
                # Cancelled while the process was being spawned.
                await self.terminate()
                raise ProcessingCancelled()
            await asyncio.gather(
                _pump_lines(process.stdout, stdout_raw, on_line),
                _pump_lines(process.stderr, stderr_raw, on_line),
            )
            returncode = await process.wait()
        except asyncio.CancelledError:
            await self.terminate()
            raise
        finally:
            self._process = None

        result = ToolResult(
            returncode=returncode,
            stdout=stdout_raw.decode("utf-8", errors="replace"),
            stderr=stderr_raw.decode("utf-8", errors="replace"),
        )
        if check and returncode != 0:
            raise ToolExecutionFailure(tool_name, returncode, result.stderr)
        return result

    async def cancel(self) -> None:
        """Kill the active child and refuse to start new ones until ``reset()``."""
        self._cancelled = True
        await self.terminate()

    def reset(self) -> None:
        self._cancelled = False

    async def terminate(self) -> None:
        """Kill the active child, if any, and wait for it to exit."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def get_binary_name(tool: str) -> str:
    """Return the expected executable name for the current OS."""
    if platform.system().lower() == "windows" and not tool.endswith(".exe"):
        return f"{tool}.exe"
    return tool


def find_bundled_binary(search_root: Path, binary_name: str) -> Optional[Path]:
    """Search vendored model folders for a tool binary.

    Release bundles put each tool either in its own folder
    (``models/<tool>/<tool>``) or flat under ``models/``; both layouts may
    also sit below a ``resources/`` directory.
    """
    tool_dir = binary_name[:-4] if binary_name.endswith(".exe") else binary_name
    vendor_candidates = [
        search_root / "models" / tool_dir,
        search_root / "resources" / "models" / tool_dir,
        search_root / "models",
        search_root / "resources" / "models",
    ]

    for vendor_root in vendor_candidates:
        if not vendor_root.is_dir():
            continue

        candidates = sorted(vendor_root.rglob(binary_name))
        for candidate in candidates:
            if not candidate.is_file():
                continue
            if platform.system().lower() == "windows":
                return candidate
            if os.access(candidate, os.X_OK):
                return candidate

    return None


def resolve_binary(
    tool: str,
    custom_path: Optional[str],
    search_root: Optional[Path] = None,
) -> Path:
    """Resolve a tool binary from a custom path, PATH, or a vendored location."""
    if search_root is None:
        search_root = Path.cwd()

    if custom_path:
        candidate = Path(custom_path).expanduser().resolve()
        if not candidate.is_file():
            raise FileNotFoundError(f"{tool} binary not found at: {candidate}")
        return candidate

    binary_name = get_binary_name(tool)

    system_binary = shutil.which(binary_name)
    if system_binary:
        return Path(system_binary).resolve()

    bundled_binary = find_bundled_binary(search_root, binary_name)
    if bundled_binary:
        return bundled_binary.resolve()

    raise FileNotFoundError(
        f"Unable to locate {tool}. Install it in PATH or pass "
        f"--{tool.split('-')[0]}-path explicitly."
    )


def resolve_model_dir(binary: Path, model_name: str) -> Path:
    """Resolve a model directory shipped next to an ncnn tool binary."""
    stripped_name = re.sub(r"^models-", "", model_name)
    candidates = [
        binary.parent / model_name,
        binary.parent / "models" / model_name,
        binary.parent / stripped_name,
    ]
    explicit = Path(model_name).expanduser()
    if explicit.is_absolute():
        candidates.insert(0, explicit)

    for candidate in candidates:
        if candidate.is_dir():
            return candidate.resolve()

    checked = ", ".join(str(candidate) for candidate in candidates)
    raise FileNotFoundError(f"Model not found: {model_name}. Checked: {checked}")


def resolve_toolchain(
    args: argparse.Namespace,
    *,
    need_upscaler: bool,
    need_interpolator: bool,
) -> Toolchain:
    """Resolve runtime binaries and raise clear dependency errors."""
    search_root = Path.cwd()
    missing = []
    resolved: dict[str, Path] = {}
    for tool, custom in ((FFMPEG, args.ffmpeg_path), (FFPROBE, args.ffprobe_path)):
        try:
            resolved[tool] = resolve_binary(tool, custom, search_root)
        except FileNotFoundError:
            missing.append(tool)
    if missing:
        raise FileNotFoundError(
            f"Missing required dependency: {', '.join(missing)}. "
            "Install with Homebrew (macOS) or your system package manager."
        )

    waifu2x_binary = None
    if need_upscaler:
        waifu2x_binary = resolve_binary(WAIFU2X, args.waifu2x_path, search_root)
    rife_binary = None
    if need_interpolator:
        rife_binary = resolve_binary(RIFE, args.rife_path, search_root)

    return Toolchain(
        ffmpeg=str(resolved[FFMPEG]),
        ffprobe=str(resolved[FFPROBE]),
        waifu2x_binary=waifu2x_binary,
        rife_binary=rife_binary,
    )
