"""Tool parameter types and the bundled model registries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

SUPPORTED_SCALES = (2, 3, 4)
SUPPORTED_MULTIPLIERS = (2, 3, 4, 8)
DENOISE_LEVELS = (0, 1, 2, 3)
FRAME_FORMATS = ("png", "jpg", "webp")
SOFTWARE_ENCODERS = ("libx264", "libx265")
HARDWARE_ENCODERS = ("h264_nvenc", "hevc_nvenc")
SUPPORTED_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)

ORDER_STRATEGIES = ("auto", "upscale-first", "interpolate-first")
OUTPUT_MODES = ("ratio", "target")

AUTO_GPU = -1


@dataclass(frozen=True)
class ThreadSpec:
    """Thread counts for the load, process and save stages of an ncnn tool."""

    load: int
    proc: int
    save: int

    def __post_init__(self) -> None:
        if min(self.load, self.proc, self.save) < 1:
            raise ValueError(f"Thread counts must be >= 1: {self}")

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ThreadSpec"]:
        """Parse ``load:proc:save``; empty input means auto."""
        if value is None or not value.strip():
            return None
        parts = value.strip().split(":")
        if len(parts) != 3:
            raise ValueError(f"Thread spec must look like load:proc:save, got {value!r}")
        try:
            load, proc, save = (int(part) for part in parts)
        except ValueError as exc:
            raise ValueError(f"Thread spec must contain integers, got {value!r}") from exc
        return cls(load, proc, save)

    def __str__(self) -> str:
        return f"{self.load}:{self.proc}:{self.save}"


@dataclass(frozen=True)
class UpscaleParams:
    scale: int = 2
    denoise_level: int = 1
    tile_size: int = 0
    thread_spec: Optional[ThreadSpec] = None
    gpu_id: int = AUTO_GPU
    model: str = "models-cunet"
    format: str = "png"
    custom_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class InterpolateParams:
    multiplier: int = 2
    model: str = "rife-v4.6"
    gpu_id: int = AUTO_GPU
    uhd: bool = False
    thread_spec: Optional[ThreadSpec] = ThreadSpec(4, 8, 4)
    custom_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class EncodeSettings:
    use_hardware_encoding: bool = False
    software_encoder: str = "libx264"
    hardware_encoder: str = "h264_nvenc"
    preset: str = "medium"
    crf: Optional[int] = None

    @property
    def video_encoder(self) -> str:
        if self.use_hardware_encoding:
            return self.hardware_encoder
        return self.software_encoder


@dataclass(frozen=True)
class WorkflowTaskParams:
    order_strategy: str = "auto"
    output_mode: str = "ratio"
    target_width: int = 3840
    target_height: int = 2160
    target_fps: float = 60.0
    upscale: UpscaleParams = field(default_factory=UpscaleParams)
    interpolate: InterpolateParams = field(default_factory=InterpolateParams)


@dataclass(frozen=True)
class UpscaleModelConfig:
    name: str
    display_name: str
    supported_scales: tuple[int, ...]
    default_scale: int = 2


@dataclass(frozen=True)
class InterpolateModelConfig:
    name: str
    display_name: str
    supported_multipliers: tuple[int, ...]
    default_multiplier: int = 2


UPSCALE_MODELS: tuple[UpscaleModelConfig, ...] = (
    UpscaleModelConfig("models-cunet", "CUnet (General Anime)", (2,)),
    UpscaleModelConfig(
        "models-upconv_7_anime_style_art_rgb", "Anime Style Art RGB", (2, 3, 4)
    ),
    UpscaleModelConfig("models-upconv_7_photo", "Photo Realistic", (2, 3, 4)),
)

INTERPOLATE_MODELS: tuple[InterpolateModelConfig, ...] = (
    InterpolateModelConfig("rife-v4.6", "RIFE v4.6", (2, 3, 4, 8)),
    InterpolateModelConfig("rife-v4", "RIFE v4", (2, 3, 4)),
    InterpolateModelConfig("rife-v3.1", "RIFE v3.1", (2, 3, 4, 8)),
    InterpolateModelConfig("rife-v3.0", "RIFE v3.0", (2, 3, 4, 8)),
    InterpolateModelConfig("rife-v2.4", "RIFE v2.4", (2, 3, 4, 8)),
    InterpolateModelConfig("rife-v2.3", "RIFE v2.3", (2, 3, 4, 8)),
    InterpolateModelConfig("rife-v2", "RIFE v2", (2, 3, 4, 8)),
    InterpolateModelConfig("rife", "RIFE (Default)", (2, 3, 4, 8)),
    InterpolateModelConfig("rife-anime", "RIFE Anime", (2, 3, 4, 8)),
    InterpolateModelConfig("rife-HD", "RIFE HD", (2, 3, 4, 8)),
    InterpolateModelConfig("rife-UHD", "RIFE UHD", (2, 4, 8)),
)


def find_upscale_model(name: str) -> Optional[UpscaleModelConfig]:
    for model in UPSCALE_MODELS:
        if model.name == name:
            return model
    return None


def find_interpolate_model(name: str) -> Optional[InterpolateModelConfig]:
    for model in INTERPOLATE_MODELS:
        if model.name == name:
            return model
    return None
