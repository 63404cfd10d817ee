"""waifu2x-ncnn-vulkan adapter."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Callable, Optional

import advisor
from frame_sequence import count_frame_files
from models import ThreadSpec, UpscaleParams
from toolchain import ActiveProcess, Toolchain, resolve_model_dir

PERCENT_REGEX = re.compile(r"(\d+(?:\.\d+)?)%")
FRACTION_REGEX = re.compile(r"(\d+)\s*/\s*(\d+)")

ProgressCallback = Callable[[int, int], None]


def parse_progress_line(line: str) -> Optional[tuple[float, int]]:
    """Return ``(current, total)``; percentages come back with ``total == 100``."""
    percent = PERCENT_REGEX.search(line)
    if percent:
        return min(100.0, max(0.0, float(percent.group(1)))), 100

    fraction = FRACTION_REGEX.search(line)
    if fraction:
        current = int(fraction.group(1))
        total = int(fraction.group(2))
        if total > 0:
            return min(current, total), total
    return None


def has_arg(custom_args: tuple[str, ...], flag: str) -> bool:
    return any(arg.strip() == flag for arg in custom_args)


def get_gpu_args(gpu_id: int) -> list[str]:
    if gpu_id < 0:
        return []
    return ["-g", str(gpu_id)]


def build_waifu2x_command(
    binary: Path,
    input_dir: Path,
    output_dir: Path,
    params: UpscaleParams,
    *,
    model_dir: Path,
    tile_size: int,
    thread_spec: Optional[ThreadSpec],
) -> list[str]:
    cmd = [
        str(binary),
        "-i",
        str(input_dir),
        "-o",
        str(output_dir),
        "-n",
        str(params.denoise_level),
        "-s",
        str(params.scale),
        "-t",
        str(tile_size),
        "-m",
        str(model_dir),
        "-f",
        params.format,
    ]
    cmd.extend(get_gpu_args(params.gpu_id))
    if thread_spec is not None and not has_arg(params.custom_args, "-j"):
        cmd.extend(["-j", str(thread_spec)])
    cmd.extend(params.custom_args)
    return cmd


class ProgressNormalizer:
    """Turn tool output into monotonically increasing frame counts."""

    def __init__(self, expected_total: int, on_progress: Optional[ProgressCallback]):
        self.expected_total = max(1, expected_total)
        self.on_progress = on_progress
        self.last_reported = 0

    def report(self, current: float, total: int) -> None:
        if total == 100:
            normalized_current = round(current / 100 * self.expected_total)
            normalized_total = self.expected_total
        else:
            normalized_current = int(current)
            normalized_total = total
        bounded = min(normalized_current, normalized_total)
        if bounded > self.last_reported and self.on_progress is not None:
            self.last_reported = bounded
            self.on_progress(bounded, normalized_total)

    def handle_line(self, line: str) -> None:
        parsed = parse_progress_line(line)
        if parsed is not None:
            self.report(*parsed)

    def finish(self) -> None:
        if self.on_progress is not None:
            self.last_reported = self.expected_total
            self.on_progress(self.expected_total, self.expected_total)


async def run_upscale(
    toolchain: Toolchain,
    runner: ActiveProcess,
    input_dir: Path,
    output_dir: Path,
    params: UpscaleParams,
    *,
    on_progress: Optional[ProgressCallback] = None,
) -> None:
    if toolchain.waifu2x_binary is None:
        raise FileNotFoundError("waifu2x-ncnn-vulkan binary is not configured.")
    output_dir.mkdir(parents=True, exist_ok=True)

    tile_size = params.tile_size
    thread_spec = params.thread_spec
    if tile_size <= 0 or thread_spec is None:
        recommendation = await asyncio.to_thread(
            advisor.recommend_ncnn_runtime, toolchain.waifu2x_binary, params.gpu_id
        )
        if tile_size <= 0:
            tile_size = recommendation.tile_size
        if thread_spec is None:
            thread_spec = recommendation.thread_spec

    cmd = build_waifu2x_command(
        toolchain.waifu2x_binary,
        input_dir,
        output_dir,
        params,
        model_dir=resolve_model_dir(toolchain.waifu2x_binary, params.model),
        tile_size=tile_size,
        thread_spec=thread_spec,
    )
    progress = ProgressNormalizer(count_frame_files(input_dir), on_progress)
    await runner.run(cmd, tool="waifu2x-ncnn-vulkan", on_line=progress.handle_line)
    progress.finish()
