"""CLI: argument parsing, runtime validation, and task construction."""

from __future__ import annotations

import argparse
import shlex
from pathlib import Path
from typing import Optional, Sequence

from models import (
    DENOISE_LEVELS,
    FRAME_FORMATS,
    HARDWARE_ENCODERS,
    ORDER_STRATEGIES,
    OUTPUT_MODES,
    SOFTWARE_ENCODERS,
    SUPPORTED_MULTIPLIERS,
    SUPPORTED_PRESETS,
    SUPPORTED_SCALES,
    AUTO_GPU,
    EncodeSettings,
    InterpolateParams,
    ThreadSpec,
    UpscaleParams,
    WorkflowTaskParams,
    find_interpolate_model,
    find_upscale_model,
)
from tasks import Task, TaskKind, TaskParams, create_task
from tracing import DEFAULT_ENDPOINT

COMMANDS = tuple(kind.value for kind in TaskKind)


# ── Parser ─────────────────────────────────────────────────────────────────────


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input_videos", nargs="+", type=str, help="Input video path(s)")
    parser.add_argument(
        "-o",
        "--output-dir",
        type=str,
        default=None,
        help="Output directory (default: next to each input as <name>-<command>.mp4)",
    )
    parser.add_argument(
        "--temp-dir",
        type=str,
        default=None,
        help="Root for per-task working directories (default: system temp dir)",
    )
    parser.add_argument("--ffmpeg-path", type=str, default=None, help="Custom path to ffmpeg")
    parser.add_argument("--ffprobe-path", type=str, default=None, help="Custom path to ffprobe")
    parser.add_argument(
        "-g",
        "--gpu",
        type=int,
        default=AUTO_GPU,
        help="GPU device ID (-1 = auto)",
    )
    parser.add_argument(
        "--hardware-encoding",
        action="store_true",
        help="Encode with the hardware encoder instead of the software one",
    )
    parser.add_argument(
        "--software-encoder",
        type=str,
        default="libx264",
        choices=SOFTWARE_ENCODERS,
        help="Software video encoder",
    )
    parser.add_argument(
        "--hardware-encoder",
        type=str,
        default="h264_nvenc",
        choices=HARDWARE_ENCODERS,
        help="Hardware video encoder",
    )
    parser.add_argument(
        "--preset",
        type=str,
        default="medium",
        choices=SUPPORTED_PRESETS,
        help="Software encoder preset",
    )
    parser.add_argument(
        "--crf",
        type=int,
        default=None,
        help="Software encoder CRF (0-51, default: 18 for libx264, 23 for libx265)",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Export OpenTelemetry spans for each pipeline run",
    )
    parser.add_argument(
        "--trace-endpoint",
        type=str,
        default=DEFAULT_ENDPOINT,
        help="OTLP/HTTP endpoint for --trace",
    )


def _add_upscale_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--waifu2x-path",
        type=str,
        default=None,
        help="Custom path to waifu2x-ncnn-vulkan binary",
    )
    parser.add_argument(
        "-s",
        "--scale",
        type=int,
        default=2,
        choices=SUPPORTED_SCALES,
        help="Upscaling factor",
    )
    parser.add_argument(
        "-n",
        "--denoise-level",
        type=int,
        default=1,
        choices=DENOISE_LEVELS,
        help="waifu2x denoise level",
    )
    parser.add_argument(
        "-m",
        "--model",
        type=str,
        default="models-cunet",
        help="waifu2x model directory name",
    )
    parser.add_argument(
        "-t",
        "--tile-size",
        type=int,
        default=0,
        help="Tile size (0 = auto)",
    )
    parser.add_argument(
        "-j",
        "--threads",
        type=str,
        default=None,
        help="waifu2x thread tuple (load:proc:save), for example 1:2:2 (default: auto)",
    )
    parser.add_argument(
        "-f",
        "--format",
        type=str,
        default="png",
        choices=FRAME_FORMATS,
        help="Intermediate frame format written by waifu2x",
    )
    parser.add_argument(
        "--upscale-args",
        type=str,
        default="",
        help="Extra arguments appended to the waifu2x command line",
    )


def _add_interpolate_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--rife-path",
        type=str,
        default=None,
        help="Custom path to rife-ncnn-vulkan binary",
    )
    parser.add_argument(
        "-x",
        "--multiplier",
        type=int,
        default=2,
        choices=SUPPORTED_MULTIPLIERS,
        help="Frame-rate multiplier",
    )
    parser.add_argument(
        "--rife-model",
        type=str,
        default="rife-v4.6",
        help="RIFE model directory name",
    )
    parser.add_argument("--uhd", action="store_true", help="Enable RIFE UHD mode")
    parser.add_argument(
        "--rife-threads",
        type=str,
        default="4:8:4",
        help="RIFE thread tuple (load:proc:save); empty string means auto",
    )
    parser.add_argument(
        "--rife-args",
        type=str,
        default="",
        help="Extra arguments appended to the rife command line",
    )


def _add_workflow_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--order",
        type=str,
        default="auto",
        choices=ORDER_STRATEGIES,
        help="Step order; auto picks the cheaper one",
    )
    parser.add_argument(
        "--output-mode",
        type=str,
        default="ratio",
        choices=OUTPUT_MODES,
        help="ratio applies --scale/--multiplier; target derives them from --target-*",
    )
    parser.add_argument("--target-width", type=int, default=3840, help="Target output width")
    parser.add_argument("--target-height", type=int, default=2160, help="Target output height")
    parser.add_argument("--target-fps", type=float, default=60.0, help="Target output FPS")
    parser.add_argument(
        "--plan-only",
        action="store_true",
        help="Probe inputs and print the resolved workflow plan as JSON",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enhance-video",
        description="Upscale and frame-interpolate videos with waifu2x and RIFE",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    upscale = commands.add_parser(
        TaskKind.UPSCALE.value,
        help="Upscale with waifu2x-ncnn-vulkan",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_options(upscale)
    _add_upscale_options(upscale)

    interpolate = commands.add_parser(
        TaskKind.INTERPOLATE.value,
        help="Interpolate frames with rife-ncnn-vulkan",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_options(interpolate)
    _add_interpolate_options(interpolate)

    workflow = commands.add_parser(
        TaskKind.WORKFLOW.value,
        help="Upscale and interpolate in one run",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_options(workflow)
    _add_upscale_options(workflow)
    _add_interpolate_options(workflow)
    _add_workflow_options(workflow)
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


# ── Validation ─────────────────────────────────────────────────────────────────


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.crf is not None and (args.crf < 0 or args.crf > 51):
        raise ValueError("CRF must be between 0 and 51.")
    if args.gpu < AUTO_GPU:
        raise ValueError("GPU ID must be >= -1.")

    kind = TaskKind(args.command)
    if kind in (TaskKind.UPSCALE, TaskKind.WORKFLOW):
        if args.tile_size < 0:
            raise ValueError("Tile size must be >= 0.")
        ThreadSpec.parse(args.threads)
        model = find_upscale_model(args.model)
        # Workflow target mode may switch to a model that supports the derived scale.
        check_scale = kind is TaskKind.UPSCALE or args.output_mode == "ratio"
        if model is not None and check_scale and args.scale not in model.supported_scales:
            raise ValueError(
                f"Model {args.model} does not support {args.scale}x "
                f"(supported: {', '.join(map(str, model.supported_scales))})."
            )
    if kind in (TaskKind.INTERPOLATE, TaskKind.WORKFLOW):
        ThreadSpec.parse(args.rife_threads)
        model = find_interpolate_model(args.rife_model)
        if model is not None and args.multiplier not in model.supported_multipliers:
            raise ValueError(
                f"Model {args.rife_model} does not support {args.multiplier}x interpolation."
            )
    if kind is TaskKind.WORKFLOW and args.output_mode == "target":
        if args.target_width <= 0 or args.target_height <= 0:
            raise ValueError("Target width and height must be > 0.")
        if args.target_fps <= 0:
            raise ValueError("Target FPS must be > 0.")

    for raw in args.input_videos:
        input_video = Path(raw).expanduser()
        if not input_video.is_file():
            raise FileNotFoundError(f"Input video not found: {input_video}")
    if args.output_dir:
        output_dir = Path(args.output_dir).expanduser()
        if output_dir.exists() and not output_dir.is_dir():
            raise ValueError("Output directory path must be a directory, not a file.")


# ── Task construction ──────────────────────────────────────────────────────────


def build_upscale_params(args: argparse.Namespace) -> UpscaleParams:
    return UpscaleParams(
        scale=args.scale,
        denoise_level=args.denoise_level,
        tile_size=args.tile_size,
        thread_spec=ThreadSpec.parse(args.threads),
        gpu_id=args.gpu,
        model=args.model,
        format=args.format,
        custom_args=tuple(shlex.split(args.upscale_args)),
    )


def build_interpolate_params(args: argparse.Namespace) -> InterpolateParams:
    return InterpolateParams(
        multiplier=args.multiplier,
        model=args.rife_model,
        gpu_id=args.gpu,
        uhd=args.uhd,
        thread_spec=ThreadSpec.parse(args.rife_threads),
        custom_args=tuple(shlex.split(args.rife_args)),
    )


def build_workflow_params(args: argparse.Namespace) -> WorkflowTaskParams:
    return WorkflowTaskParams(
        order_strategy=args.order,
        output_mode=args.output_mode,
        target_width=args.target_width,
        target_height=args.target_height,
        target_fps=args.target_fps,
        upscale=build_upscale_params(args),
        interpolate=build_interpolate_params(args),
    )


def build_encode_settings(args: argparse.Namespace) -> EncodeSettings:
    return EncodeSettings(
        use_hardware_encoding=args.hardware_encoding,
        software_encoder=args.software_encoder,
        hardware_encoder=args.hardware_encoder,
        preset=args.preset,
        crf=args.crf,
    )


def build_task_params(args: argparse.Namespace) -> TaskParams:
    kind = TaskKind(args.command)
    if kind is TaskKind.UPSCALE:
        return build_upscale_params(args)
    if kind is TaskKind.INTERPOLATE:
        return build_interpolate_params(args)
    return build_workflow_params(args)


def build_tasks(args: argparse.Namespace) -> list[Task]:
    """Create one pending task per input video, in command-line order."""
    kind = TaskKind(args.command)
    params = build_task_params(args)
    encode_settings = build_encode_settings(args)
    tasks = []
    for raw in args.input_videos:
        input_video = Path(raw).expanduser().resolve()
        task = create_task(
            kind,
            input_video,
            params,
            encode_settings=encode_settings,
            output_dir=args.output_dir,
        )
        if task.output_path.resolve() == input_video:
            raise ValueError("Output video path must be different from input video path.")
        tasks.append(task)
    return tasks
