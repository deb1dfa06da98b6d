from __future__ import annotations

from typing import List, Optional

from voleveler.adaptive.presets import LoudnessPreset
from voleveler.common.engine import EngineHandle
from voleveler.common.ffmpeg import base_args, parse_loudnorm_json, pcm_output_args
from voleveler.common.logging_setup import get_logger
from voleveler.common.utils import parse_maybe_number


log = get_logger("loudness")

_MEASURED_KEYS = ("input_i", "input_tp", "input_lra", "input_thresh", "target_offset")


def loudnorm_filter(preset: LoudnessPreset, *, print_format: str = "summary") -> str:
    return f"loudnorm=I={preset.integrated}:TP={preset.true_peak}:LRA={preset.lra}:print_format={print_format}"


def second_pass_filter(preset: LoudnessPreset, measured: dict) -> str:
    return (
        f"loudnorm=I={preset.integrated}:TP={preset.true_peak}:LRA={preset.lra}"
        f":measured_I={measured['input_i']:g}:measured_TP={measured['input_tp']:g}"
        f":measured_LRA={measured['input_lra']:g}:measured_thresh={measured['input_thresh']:g}"
        f":offset={measured['target_offset']:g}:linear=true:print_format=summary"
    )


def _measured_values(text: str) -> Optional[dict]:
    data = parse_loudnorm_json(text) or {}
    values = {k: parse_maybe_number(data.get(k)) for k in _MEASURED_KEYS}
    if any(v is None for v in values.values()):
        return None
    return values


async def _render(handle: EngineHandle, threads: int, input_name: str, output_name: str, af: str, context: str) -> None:
    args: List[str] = base_args(threads) + ["-y", "-i", input_name, "-af", af] + pcm_output_args(output_name)
    await handle.exec_checked(args, context)


async def run_loudnorm(
    handle: EngineHandle,
    input_name: str,
    output_name: str,
    preset: LoudnessPreset,
    *,
    threads: int = 1,
) -> str:
    """Two-pass loudness normalization. Returns "two-pass" or "one-pass".

    The measurement pass feeds the linear second pass; an unparsable
    measurement falls back to dynamic one-pass loudnorm.
    """
    text = await handle.exec_checked(
        base_args(threads) + ["-i", input_name, "-af", loudnorm_filter(preset, print_format="json"), "-f", "null", "-"],
        "Loudnorm analysis",
    )
    measured = _measured_values(text)
    if measured is None:
        log.warning("loudnorm pass1 unparsable input=%s; using one-pass", input_name)
        await _render(handle, threads, input_name, output_name, loudnorm_filter(preset), "One-pass loudnorm")
        return "one-pass"

    await _render(handle, threads, input_name, output_name, second_pass_filter(preset, measured), "Loudnorm render")
    return "two-pass"
