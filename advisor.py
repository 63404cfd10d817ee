"""GPU capability heuristics for ncnn tile size and thread specs.

Recommendations only fill in values the user left on auto; nothing here is
required for a task to run correctly.
"""

from __future__ import annotations

import functools
import math
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from models import AUTO_GPU, ThreadSpec
from toolchain import progress_write, run_subprocess

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
NCNN_DEVICE_LINE = re.compile(r"^\[(\d+)\s+([^\]]+)\]")

DEFAULT_NCNN_TILE = 256
DEFAULT_NCNN_THREADS = ThreadSpec(1, 2, 2)
RIFE_FALLBACK_THREADS = ThreadSpec(3, 6, 4)
RIFE_FALLBACK_UHD_THREADS = ThreadSpec(2, 3, 2)

# (minimum VRAM in MiB, tile size, thread spec), largest first.
NCNN_VRAM_TABLE = (
    (16384, 512, ThreadSpec(2, 8, 2)),
    (12288, 384, ThreadSpec(2, 6, 2)),
    (8192, 320, ThreadSpec(2, 5, 2)),
    (6144, 256, ThreadSpec(2, 4, 2)),
    (4096, 192, ThreadSpec(1, 3, 2)),
)

RIFE_VRAM_PROC_TABLE = (
    (16384, 8),
    (12288, 7),
    (8192, 6),
    (6144, 5),
    (4096, 4),
)


@dataclass(frozen=True)
class GpuDevice:
    id: int
    name: str
    vram_mb: Optional[int]


@dataclass(frozen=True)
class NcnnRecommendation:
    tile_size: int
    thread_spec: ThreadSpec


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def parse_ncnn_devices(output: str) -> list[tuple[int, str]]:
    """Parse ``[0 NVIDIA GeForce RTX 3080]  queueC=...`` lines from ncnn verbose output."""
    devices: dict[tuple[int, str], None] = {}
    for line in strip_ansi(output).splitlines():
        match = NCNN_DEVICE_LINE.match(line.strip())
        if not match:
            continue
        devices[(int(match.group(1)), match.group(2).strip())] = None
    return sorted(devices, key=lambda device: device[0])


def parse_nvidia_smi(output: str) -> list[tuple[str, int]]:
    gpus = []
    for line in output.splitlines():
        name, _, memory = line.rpartition(",")
        if not name:
            continue
        try:
            gpus.append((name.strip(), int(float(memory.strip()))))
        except ValueError:
            continue
    return gpus


def normalize_gpu_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "", name.lower())


def match_vram(ncnn_name: str, system_gpus: list[tuple[str, int]]) -> Optional[int]:
    normalized = normalize_gpu_name(ncnn_name)
    if not normalized:
        return None
    for name, vram in system_gpus:
        if normalize_gpu_name(name) == normalized:
            return vram
    for name, vram in system_gpus:
        system_name = normalize_gpu_name(name)
        if system_name in normalized or normalized in system_name:
            return vram
    return None


def list_system_gpus() -> list[tuple[str, int]]:
    nvidia_smi = shutil.which("nvidia-smi")
    if not nvidia_smi:
        return []
    result = run_subprocess(
        [nvidia_smi, "--query-gpu=name,memory.total", "--format=csv,noheader,nounits"],
        check=False,
        capture_output=True,
        timeout=15,
    )
    if result.returncode != 0:
        return []
    return parse_nvidia_smi(result.stdout)


@functools.lru_cache(maxsize=None)
def detect_gpu_devices(probe_binary: str) -> tuple[GpuDevice, ...]:
    """List Vulkan devices as seen by an ncnn tool, with VRAM when known."""
    result = run_subprocess(
        [
            probe_binary,
            "-v",
            "-i",
            "__gpu_probe_input__.png",
            "-o",
            "__gpu_probe_output__.png",
            "-s",
            "1",
            "-n",
            "0",
        ],
        check=False,
        capture_output=True,
        timeout=30,
    )
    devices = parse_ncnn_devices(f"{result.stdout}\n{result.stderr}")
    system_gpus = list_system_gpus()
    return tuple(
        GpuDevice(id=device_id, name=name, vram_mb=match_vram(name, system_gpus))
        for device_id, name in devices
    )


def resolve_target_gpu(gpus: tuple[GpuDevice, ...], gpu_id: int) -> Optional[GpuDevice]:
    if not gpus:
        return None
    if gpu_id != AUTO_GPU and gpu_id >= 0:
        for gpu in gpus:
            if gpu.id == gpu_id:
                return gpu
        return None
    with_vram = [gpu for gpu in gpus if gpu.vram_mb is not None]
    if not with_vram:
        return gpus[0]
    return max(with_vram, key=lambda gpu: gpu.vram_mb or 0)


def ncnn_recommendation_by_vram(vram_mb: Optional[int]) -> NcnnRecommendation:
    if not vram_mb or vram_mb <= 0:
        return NcnnRecommendation(DEFAULT_NCNN_TILE, DEFAULT_NCNN_THREADS)
    for minimum, tile_size, threads in NCNN_VRAM_TABLE:
        if vram_mb >= minimum:
            return NcnnRecommendation(tile_size, threads)
    return NcnnRecommendation(128, ThreadSpec(1, 2, 2))


def _clamp(value: int, low: int, high: int) -> int:
    return min(high, max(low, value))


def rife_recommendation_by_vram(
    vram_mb: Optional[int],
    *,
    uhd: bool = False,
    cpu_cores: Optional[int] = None,
) -> ThreadSpec:
    cores = cpu_cores or os.cpu_count() or 8
    max_proc = max(2, cores - (4 if uhd else 2))

    if uhd:
        proc = 4 if vram_mb and vram_mb >= 12288 else 3
    elif not vram_mb or vram_mb <= 0:
        proc = 6
    else:
        proc = 3
        for minimum, threads in RIFE_VRAM_PROC_TABLE:
            if vram_mb >= minimum:
                proc = threads
                break

    proc = _clamp(proc, 2, max_proc)
    if uhd:
        load = _clamp(math.ceil(proc / 2), 1, 6)
        save = _clamp(math.ceil(proc / 2), 2, 8)
    else:
        load = _clamp(math.ceil(proc / 1.8), 1, 6)
        save = _clamp(math.ceil(proc / 1.6), 2, 8)
    return ThreadSpec(load, proc, save)


def _target_vram(probe_binary: Path, gpu_id: int) -> Optional[int]:
    target = resolve_target_gpu(detect_gpu_devices(str(probe_binary)), gpu_id)
    return target.vram_mb if target else None


def recommend_ncnn_runtime(probe_binary: Optional[Path], gpu_id: int) -> NcnnRecommendation:
    if probe_binary is None:
        return NcnnRecommendation(DEFAULT_NCNN_TILE, DEFAULT_NCNN_THREADS)
    try:
        vram_mb = _target_vram(probe_binary, gpu_id)
    except (OSError, subprocess.SubprocessError) as exc:
        progress_write(f"Warning: GPU detection failed ({exc}); using default waifu2x settings.")
        return NcnnRecommendation(DEFAULT_NCNN_TILE, DEFAULT_NCNN_THREADS)
    return ncnn_recommendation_by_vram(vram_mb)


def recommend_rife_runtime(probe_binary: Optional[Path], gpu_id: int, *, uhd: bool) -> ThreadSpec:
    fallback = RIFE_FALLBACK_UHD_THREADS if uhd else RIFE_FALLBACK_THREADS
    if probe_binary is None:
        return fallback
    try:
        vram_mb = _target_vram(probe_binary, gpu_id)
    except (OSError, subprocess.SubprocessError) as exc:
        progress_write(f"Warning: GPU detection failed ({exc}); using default RIFE settings.")
        return fallback
    return rife_recommendation_by_vram(vram_mb, uhd=uhd)
