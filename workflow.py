"""Workflow planner: step order and per-step parameters for chained jobs.

A workflow runs the upscaler and, when needed, the interpolator over the same
frame sequence. The plan decides which runs first, which model and scale the
upscaler uses, which multiplier the interpolator uses, and what size and frame
rate the final encode must produce. Plans are derived fresh per task.
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from typing import Optional

from errors import InfeasibleTarget, UnsupportedModelScale
from models import (
    SUPPORTED_MULTIPLIERS,
    SUPPORTED_SCALES,
    UPSCALE_MODELS,
    InterpolateParams,
    UpscaleParams,
    WorkflowTaskParams,
    find_upscale_model,
)

UPSCALE_FIRST = "upscale-first"
INTERPOLATE_FIRST = "interpolate-first"

UPSCALE_WORK_WEIGHT = 1.0
INTERPOLATE_WORK_WEIGHT = 0.72

DEFAULT_SOURCE_WIDTH = 1920
DEFAULT_SOURCE_HEIGHT = 1080
DEFAULT_SOURCE_FPS = 30.0
DEFAULT_SOURCE_FRAMES = 300


@dataclass(frozen=True)
class SourceShape:
    width: int
    height: int
    fps: float
    total_frames: int


@dataclass(frozen=True)
class OrderEstimate:
    interpolate_first_cost: float
    upscale_first_cost: float


@dataclass(frozen=True)
class WorkflowPlan:
    order: str
    upscale_params: UpscaleParams
    interpolate_params: InterpolateParams
    should_interpolate: bool
    sequence_fps: float
    output_fps: float
    output_width: Optional[int]
    output_height: Optional[int]
    steps: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "order": self.order,
            "steps": list(self.steps),
            "should_interpolate": self.should_interpolate,
            "sequence_fps": self.sequence_fps,
            "output_fps": self.output_fps,
            "output_width": self.output_width,
            "output_height": self.output_height,
            "upscale": {
                "model": self.upscale_params.model,
                "scale": self.upscale_params.scale,
            },
            "interpolate": {
                "model": self.interpolate_params.model,
                "multiplier": self.interpolate_params.multiplier,
            },
        }


def _positive_int(value: float, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return fallback
    return number if number > 0 else fallback


def _positive_float(value: float, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number) or number <= 0:
        return fallback
    return number


def normalize_source(source: SourceShape) -> SourceShape:
    return SourceShape(
        width=_positive_int(source.width, DEFAULT_SOURCE_WIDTH),
        height=_positive_int(source.height, DEFAULT_SOURCE_HEIGHT),
        fps=_positive_float(source.fps, DEFAULT_SOURCE_FPS),
        total_frames=_positive_int(source.total_frames, DEFAULT_SOURCE_FRAMES),
    )


def supported_scales_for(model_name: str) -> tuple[int, ...]:
    """Scales a model can produce; custom models are assumed to cover all of them."""
    model = find_upscale_model(model_name)
    if model is None:
        return SUPPORTED_SCALES
    return tuple(sorted(scale for scale in model.supported_scales if scale in SUPPORTED_SCALES))


def pick_minimal_option(options: tuple[int, ...], ratio: float) -> Optional[int]:
    for option in sorted(options):
        if option >= ratio:
            return option
    return None


def pick_fallback_model_for_scale(scale: int) -> Optional[str]:
    for model in UPSCALE_MODELS:
        if scale in model.supported_scales:
            return model.name
    return None


def estimate_order_cost(
    source: SourceShape,
    upscale_params: UpscaleParams,
    interpolate_params: InterpolateParams,
    *,
    upscale_weight: float = UPSCALE_WORK_WEIGHT,
    interpolate_weight: float = INTERPOLATE_WORK_WEIGHT,
) -> OrderEstimate:
    """Relative cost of both step orders; units are weighted pixels, not seconds."""
    source = normalize_source(source)
    source_pixels = source.width * source.height
    frames = source.total_frames
    area_factor = upscale_params.scale * upscale_params.scale
    multiplier = interpolate_params.multiplier

    interpolate_first = (
        source_pixels * frames * interpolate_weight
        + source_pixels * area_factor * frames * multiplier * upscale_weight
    )
    upscale_first = (
        source_pixels * area_factor * frames * upscale_weight
        + source_pixels * area_factor * frames * interpolate_weight
    )
    return OrderEstimate(
        interpolate_first_cost=interpolate_first,
        upscale_first_cost=upscale_first,
    )


def resolve_order(
    strategy: str,
    source: SourceShape,
    upscale_params: UpscaleParams,
    interpolate_params: InterpolateParams,
    should_interpolate: bool,
    **weights: float,
) -> str:
    if not should_interpolate:
        return UPSCALE_FIRST
    if strategy in (UPSCALE_FIRST, INTERPOLATE_FIRST):
        return strategy
    if strategy != "auto":
        raise ValueError(f"Unsupported order strategy: {strategy}")

    estimate = estimate_order_cost(source, upscale_params, interpolate_params, **weights)
    if estimate.upscale_first_cost <= estimate.interpolate_first_cost:
        return UPSCALE_FIRST
    return INTERPOLATE_FIRST


def _resolve_target_scale(
    source: SourceShape,
    upscale_params: UpscaleParams,
    target_width: int,
    target_height: int,
) -> UpscaleParams:
    ratio = max(target_width / source.width, target_height / source.height)
    chosen = pick_minimal_option(supported_scales_for(upscale_params.model), ratio)
    if chosen is not None:
        return dataclasses.replace(upscale_params, scale=chosen)

    any_scale = pick_minimal_option(SUPPORTED_SCALES, ratio)
    if any_scale is None:
        raise InfeasibleTarget(
            f"Target resolution {target_width}x{target_height} exceeds current "
            f"single-pass upscale capability (max {max(SUPPORTED_SCALES)}x)."
        )
    fallback_model = pick_fallback_model_for_scale(any_scale)
    if fallback_model is None:
        raise UnsupportedModelScale(
            f"Current model {upscale_params.model} does not support the required "
            "scale for target resolution."
        )
    return dataclasses.replace(upscale_params, model=fallback_model, scale=any_scale)


def resolve_workflow_plan(
    source: SourceShape,
    workflow: WorkflowTaskParams,
    **weights: float,
) -> WorkflowPlan:
    source = normalize_source(source)
    upscale_params = workflow.upscale
    interpolate_params = workflow.interpolate
    should_interpolate = True
    output_fps = source.fps * interpolate_params.multiplier
    sequence_fps = output_fps
    output_width: Optional[int] = None
    output_height: Optional[int] = None

    if workflow.output_mode == "target":
        target_width = _positive_int(workflow.target_width, source.width * 2)
        target_height = _positive_int(workflow.target_height, source.height * 2)
        target_fps = _positive_float(workflow.target_fps, DEFAULT_SOURCE_FPS)

        upscale_params = _resolve_target_scale(source, upscale_params, target_width, target_height)
        natural_width = source.width * upscale_params.scale
        natural_height = source.height * upscale_params.scale
        if target_width != natural_width or target_height != natural_height:
            output_width = target_width
            output_height = target_height

        if target_fps <= source.fps:
            should_interpolate = False
            sequence_fps = source.fps
            output_fps = target_fps
        else:
            multiplier = pick_minimal_option(SUPPORTED_MULTIPLIERS, target_fps / source.fps)
            if multiplier is None:
                raise InfeasibleTarget(
                    f"Target FPS {target_fps:g} exceeds current interpolation "
                    f"capability (max {max(SUPPORTED_MULTIPLIERS)}x)."
                )
            interpolate_params = dataclasses.replace(interpolate_params, multiplier=multiplier)
            sequence_fps = source.fps * multiplier
            output_fps = target_fps
    elif workflow.output_mode != "ratio":
        raise ValueError(f"Unsupported output mode: {workflow.output_mode}")

    if upscale_params.scale not in supported_scales_for(upscale_params.model):
        fallback_model = pick_fallback_model_for_scale(upscale_params.scale)
        if fallback_model is None:
            raise UnsupportedModelScale(
                f"Model {upscale_params.model} does not support {upscale_params.scale}x upscale."
            )
        upscale_params = dataclasses.replace(upscale_params, model=fallback_model)

    order = resolve_order(
        workflow.order_strategy,
        source,
        upscale_params,
        interpolate_params,
        should_interpolate,
        **weights,
    )
    if not should_interpolate:
        steps: tuple[str, ...] = ("upscale",)
    elif order == UPSCALE_FIRST:
        steps = ("upscale", "interpolate")
    else:
        steps = ("interpolate", "upscale")

    return WorkflowPlan(
        order=order,
        upscale_params=upscale_params,
        interpolate_params=interpolate_params,
        should_interpolate=should_interpolate,
        sequence_fps=sequence_fps,
        output_fps=output_fps,
        output_width=output_width,
        output_height=output_height,
        steps=steps,
    )


def get_order_label(order: str) -> str:
    if order == UPSCALE_FIRST:
        return "Upscale then interpolate"
    return "Interpolate then upscale"


def describe_workflow_choice(source: SourceShape, workflow: WorkflowTaskParams) -> tuple[str, str]:
    """Return the resolved order and a one-line explanation of how it was chosen."""
    plan = resolve_workflow_plan(source, workflow)

    if workflow.order_strategy != "auto":
        return plan.order, f"Fixed order: {get_order_label(plan.order)}"

    if not plan.should_interpolate:
        return (
            plan.order,
            "Auto suggestion: upscale only, because target FPS is not higher than source FPS.",
        )

    estimate = estimate_order_cost(source, plan.upscale_params, plan.interpolate_params)
    slower = max(estimate.interpolate_first_cost, estimate.upscale_first_cost)
    faster = min(estimate.interpolate_first_cost, estimate.upscale_first_cost)
    speed_gain = round((slower - faster) / slower * 100) if slower > 0 else 0
    return (
        plan.order,
        f"Auto suggestion: {get_order_label(plan.order)} with about "
        f"{max(0, speed_gain)}% speed advantage.",
    )


def adapt_interpolation_after_upscale(params: InterpolateParams) -> InterpolateParams:
    """Interpolation over enlarged frames: auto threads, no -j override, UHD mode."""
    custom_args: list[str] = []
    skip_next = False
    for arg in params.custom_args:
        if skip_next:
            skip_next = False
            continue
        if arg.strip() == "-j":
            skip_next = True
            continue
        custom_args.append(arg)
    return dataclasses.replace(
        params,
        thread_spec=None,
        uhd=True,
        custom_args=tuple(custom_args),
    )
