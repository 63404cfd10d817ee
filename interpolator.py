"""rife-ncnn-vulkan adapter."""

from __future__ import annotations

import asyncio
import contextlib
import re
from pathlib import Path
from typing import Optional

import advisor
from frame_sequence import FRAME_NUMBER_FORMAT, count_frame_files
from models import InterpolateParams, ThreadSpec
from toolchain import ActiveProcess, Toolchain, resolve_model_dir
from upscaler import ProgressCallback, ProgressNormalizer, get_gpu_args, has_arg

PERCENT_REGEX = re.compile(r"(\d+(?:\.\d+)?)%")
OUTPUT_POLL_SECONDS = 1.2


def expected_output_frames(input_frames: int, multiplier: int) -> int:
    """rife emits ``(n - 1) * m + 1`` frames for ``n`` inputs."""
    if input_frames > 1:
        return (input_frames - 1) * multiplier + 1
    return input_frames


def build_rife_command(
    binary: Path,
    input_dir: Path,
    output_dir: Path,
    params: InterpolateParams,
    *,
    model_dir: Path,
    target_frames: int,
    thread_spec: Optional[ThreadSpec],
) -> list[str]:
    cmd = [
        str(binary),
        "-i",
        str(input_dir),
        "-o",
        str(output_dir),
        "-m",
        str(model_dir),
    ]
    cmd.extend(get_gpu_args(params.gpu_id))
    cmd.extend(["-n", str(max(1, target_frames)), "-f", f"{FRAME_NUMBER_FORMAT}.png"])
    if thread_spec is not None and not has_arg(params.custom_args, "-j"):
        cmd.extend(["-j", str(thread_spec)])
    cmd.extend(params.custom_args)
    if params.uhd:
        cmd.append("-u")
    return cmd


class InterpolateProgress(ProgressNormalizer):
    def handle_line(self, line: str) -> None:
        # rife only reports percentages; fractions in its log are not frame counts.
        match = PERCENT_REGEX.search(line)
        if match:
            self.report(min(100.0, max(0.0, float(match.group(1)))), 100)


async def _poll_output_frames(output_dir: Path, progress: ProgressNormalizer) -> None:
    while True:
        await asyncio.sleep(OUTPUT_POLL_SECONDS)
        count = count_frame_files(output_dir)
        progress.report(min(count, progress.expected_total), progress.expected_total)


async def run_interpolate(
    toolchain: Toolchain,
    runner: ActiveProcess,
    input_dir: Path,
    output_dir: Path,
    params: InterpolateParams,
    *,
    on_progress: Optional[ProgressCallback] = None,
) -> None:
    if toolchain.rife_binary is None:
        raise FileNotFoundError("rife-ncnn-vulkan binary is not configured.")
    output_dir.mkdir(parents=True, exist_ok=True)

    thread_spec = params.thread_spec
    if thread_spec is None:
        thread_spec = await asyncio.to_thread(
            advisor.recommend_rife_runtime, toolchain.rife_binary, params.gpu_id, uhd=params.uhd
        )

    target_frames = expected_output_frames(count_frame_files(input_dir), params.multiplier)
    cmd = build_rife_command(
        toolchain.rife_binary,
        input_dir,
        output_dir,
        params,
        model_dir=resolve_model_dir(toolchain.rife_binary, params.model),
        target_frames=target_frames,
        thread_spec=thread_spec,
    )

    progress = InterpolateProgress(target_frames if target_frames > 0 else 100, on_progress)
    poller = asyncio.create_task(_poll_output_frames(output_dir, progress))
    try:
        await runner.run(cmd, tool="rife-ncnn-vulkan", on_line=progress.handle_line)
    finally:
        poller.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await poller
    progress.finish()
