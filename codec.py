"""ffmpeg/ffprobe adapter: probe, frame extraction, and final encode."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from frame_sequence import FRAME_NUMBER_FORMAT, FrameSequenceInfo, resolve_frame_sequence
from models import HARDWARE_ENCODERS, SOFTWARE_ENCODERS, EncodeSettings
from toolchain import ActiveProcess, Toolchain

DEFAULT_FPS = 30.0
EXTRACT_FRAME_PATTERN = f"{FRAME_NUMBER_FORMAT}.png"
FRAME_REGEX = re.compile(r"frame=\s*(\d+)")
QUIET_FLAGS = ["-hide_banner", "-nostats", "-loglevel", "error", "-progress", "pipe:1"]

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class VideoInfo:
    path: Path
    width: int
    height: int
    fps: float
    duration_seconds: float
    total_frames: int
    video_codec: str
    audio_codec: Optional[str]
    bitrate: int
    file_size: int

    @property
    def has_audio(self) -> bool:
        return self.audio_codec is not None


def parse_framerate(value: Optional[str]) -> float:
    """Parse ffprobe framerate strings like 30000/1001 safely."""
    if not value or value == "0/0":
        return DEFAULT_FPS

    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            denominator = float(den)
            if denominator == 0:
                return DEFAULT_FPS
            framerate = float(num) / denominator
        else:
            framerate = float(value)
    except (TypeError, ValueError):
        return DEFAULT_FPS

    if not math.isfinite(framerate) or framerate <= 0:
        return DEFAULT_FPS
    return framerate


def format_rate(value: float) -> str:
    return f"{value:.6f}".rstrip("0").rstrip(".")


def parse_frame_from_line(line: str) -> Optional[int]:
    match = FRAME_REGEX.search(line)
    if not match:
        return None
    return int(match.group(1))


def _as_number(value: object, cast: Callable, default):
    try:
        return cast(value)
    except (TypeError, ValueError):
        return default


def parse_video_info(path: Path, payload: dict) -> VideoInfo:
    video_stream = None
    audio_stream = None
    for stream in payload.get("streams", []):
        stream_type = stream.get("codec_type")
        if stream_type == "video" and video_stream is None:
            video_stream = stream
        elif stream_type == "audio" and audio_stream is None:
            audio_stream = stream

    if video_stream is None:
        raise RuntimeError("No video stream found in input file.")

    format_info = payload.get("format", {})
    fps = parse_framerate(
        video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate", "")
    )
    duration = max(_as_number(format_info.get("duration") or video_stream.get("duration"), float, 0.0), 0.0)
    frames_from_stream = _as_number(video_stream.get("nb_frames"), int, 0)
    if frames_from_stream > 0:
        total_frames = frames_from_stream
    elif duration > 0:
        total_frames = max(1, round(fps * duration))
    else:
        total_frames = 0

    return VideoInfo(
        path=path,
        width=_as_number(video_stream.get("width"), int, 0),
        height=_as_number(video_stream.get("height"), int, 0),
        fps=fps,
        duration_seconds=duration,
        total_frames=total_frames,
        video_codec=video_stream.get("codec_name") or "unknown",
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        bitrate=_as_number(format_info.get("bit_rate"), int, 0),
        file_size=_as_number(format_info.get("size"), int, 0),
    )


async def _ffprobe_json(toolchain: Toolchain, runner: ActiveProcess, path: Path, *sections: str) -> dict:
    cmd = [toolchain.ffprobe, "-v", "error", "-print_format", "json", *sections, str(path)]
    result = await runner.run(cmd, tool="ffprobe")
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Failed to parse ffprobe output: {exc}") from exc


async def get_video_info(toolchain: Toolchain, input_video: Path, runner: ActiveProcess) -> VideoInfo:
    """Read metadata with ffprobe and return parsed info."""
    payload = await _ffprobe_json(toolchain, runner, input_video, "-show_streams", "-show_format")
    return parse_video_info(Path(input_video), payload)


async def probe_streams(toolchain: Toolchain, runner: ActiveProcess, path: Path) -> list[dict]:
    payload = await _ffprobe_json(toolchain, runner, path, "-show_streams")
    return payload.get("streams", [])


def _frame_progress(on_progress: Optional[ProgressCallback], total_frames: int) -> Callable[[str], None]:
    def handle_line(line: str) -> None:
        frame = parse_frame_from_line(line)
        if frame is None or on_progress is None:
            return
        total = total_frames or frame
        on_progress(min(frame, total), total)

    return handle_line


async def extract_frames(
    toolchain: Toolchain,
    runner: ActiveProcess,
    input_video: Path,
    frames_dir: Path,
    *,
    total_frames: int = 0,
    on_progress: Optional[ProgressCallback] = None,
) -> int:
    """Extract every source frame into ``frame_%08d.png`` files."""
    frames_dir.mkdir(parents=True, exist_ok=True)
    cmd = [
        toolchain.ffmpeg,
        "-y",
        *QUIET_FLAGS,
        "-i",
        str(input_video),
        "-fps_mode",
        "passthrough",
        str(frames_dir / EXTRACT_FRAME_PATTERN),
    ]
    await runner.run(cmd, tool="ffmpeg", on_line=_frame_progress(on_progress, total_frames))

    frame_count = len(list(frames_dir.glob("frame_*.png")))
    if frame_count == 0:
        raise RuntimeError("Frame extraction produced zero output frames.")
    return frame_count


def get_disposition_flags(stream: dict) -> str:
    disposition = stream.get("disposition") or {}
    is_default = disposition.get("default") == 1
    is_forced = disposition.get("forced") == 1
    if is_default and is_forced:
        return "default+forced"
    if is_default:
        return "default"
    if is_forced:
        return "forced"
    return "0"


def normalize_scale_dimension(value: Optional[float], label: str) -> Optional[int]:
    """Encoders need even dimensions; odd targets round up by one pixel."""
    if value is None or not math.isfinite(value):
        return None
    numeric = int(value)
    if numeric <= 0:
        raise ValueError(f"Invalid target {label}: {value}")
    return numeric if numeric % 2 == 0 else numeric + 1


def get_codec_flags(settings: EncodeSettings, video_index: int = 0) -> list[str]:
    """Return ffmpeg encoder flags scoped to one output video stream."""
    spec = f"v:{video_index}"
    encoder = settings.video_encoder
    flags = [f"-c:{spec}", encoder, f"-pix_fmt:{spec}", "yuv420p"]
    if settings.use_hardware_encoding:
        if encoder not in HARDWARE_ENCODERS:
            raise ValueError(f"Unsupported codec: {encoder}")
        return flags + [f"-preset:{spec}", "p5", f"-rc:{spec}", "vbr", f"-cq:{spec}", "21"]
    if encoder not in SOFTWARE_ENCODERS:
        raise ValueError(f"Unsupported codec: {encoder}")
    default_crf = 18 if encoder == "libx264" else 23
    crf = settings.crf if settings.crf is not None else default_crf
    return flags + [f"-preset:{spec}", settings.preset, f"-crf:{spec}", str(crf)]


def build_stream_maps(source_streams: list[dict]) -> tuple[list[str], int]:
    """Map the new video over the source's main video, keeping every other stream.

    Returns the ffmpeg arguments and the output index of the encoded video
    among the output's video streams.
    """
    ordered = sorted(
        (stream for stream in source_streams if isinstance(stream.get("index"), int)),
        key=lambda stream: stream["index"],
    )
    main_video = next(
        (
            stream
            for stream in ordered
            if stream.get("codec_type") == "video"
            and (stream.get("disposition") or {}).get("attached_pic") != 1
        ),
        None,
    ) or next((stream for stream in ordered if stream.get("codec_type") == "video"), None)

    if main_video is None:
        return ["-map", "0:v:0", "-map", "1"], 0

    args: list[str] = []
    video_index = 0
    video_counter = 0
    audio_counter = 0
    subtitle_counter = 0
    for stream in ordered:
        if stream["index"] == main_video["index"]:
            args.extend(["-map", "0:v:0"])
            video_index = video_counter
        else:
            args.extend(["-map", f"1:{stream['index']}"])

        codec_type = stream.get("codec_type")
        if codec_type == "video":
            video_counter += 1
        elif codec_type == "audio":
            args.extend([f"-disposition:a:{audio_counter}", get_disposition_flags(stream)])
            audio_counter += 1
        elif codec_type == "subtitle":
            args.extend([f"-disposition:s:{subtitle_counter}", get_disposition_flags(stream)])
            subtitle_counter += 1
    return args, video_index


def build_encode_command(
    ffmpeg_bin: str,
    sequence: FrameSequenceInfo,
    output_video: Path,
    *,
    fps: float,
    encode_settings: EncodeSettings,
    audio_source: Optional[Path] = None,
    source_streams: Optional[list[dict]] = None,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
    target_fps: Optional[float] = None,
) -> list[str]:
    cmd = [
        ffmpeg_bin,
        "-y",
        *QUIET_FLAGS,
        "-framerate",
        format_rate(fps),
        "-start_number",
        str(sequence.start_number),
        "-i",
        sequence.input_pattern,
    ]

    video_index = 0
    if audio_source is not None:
        map_args, video_index = build_stream_maps(source_streams or [])
        cmd.extend(["-i", str(audio_source), *map_args])
        cmd.extend(["-map_metadata", "1", "-map_chapters", "1", "-copy_unknown"])

    cmd.extend(["-c", "copy", *get_codec_flags(encode_settings, video_index)])

    filters = []
    width = normalize_scale_dimension(target_width, "width")
    height = normalize_scale_dimension(target_height, "height")
    if width is not None and height is not None:
        filters.append(f"scale=w={width}:h={height}:flags=lanczos")
    if target_fps is not None and target_fps > 0 and abs(target_fps - fps) > 0.001:
        filters.append(f"fps={format_rate(target_fps)}")
    if filters:
        cmd.extend([f"-filter:v:{video_index}", ",".join(filters)])

    cmd.append(str(output_video))
    return cmd


async def encode_video(
    toolchain: Toolchain,
    runner: ActiveProcess,
    frames_dir: Path,
    output_video: Path,
    *,
    fps: float,
    encode_settings: EncodeSettings,
    audio_source: Optional[Path] = None,
    on_progress: Optional[ProgressCallback] = None,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
    target_fps: Optional[float] = None,
) -> FrameSequenceInfo:
    """Mux the frame sequence into ``output_video`` with the source's other streams."""
    output_video.parent.mkdir(parents=True, exist_ok=True)
    sequence = resolve_frame_sequence(frames_dir)

    source_streams = None
    if audio_source is not None:
        source_streams = await probe_streams(toolchain, runner, audio_source)

    cmd = build_encode_command(
        toolchain.ffmpeg,
        sequence,
        output_video,
        fps=fps,
        encode_settings=encode_settings,
        audio_source=audio_source,
        source_streams=source_streams,
        target_width=target_width,
        target_height=target_height,
        target_fps=target_fps,
    )
    await runner.run(cmd, tool="ffmpeg", on_line=_frame_progress(on_progress, sequence.frame_count))

    if on_progress is not None and sequence.frame_count > 0:
        on_progress(sequence.frame_count, sequence.frame_count)
    return sequence
