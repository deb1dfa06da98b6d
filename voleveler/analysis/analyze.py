from __future__ import annotations

from dataclasses import replace
from typing import List, Optional

from voleveler.adaptive.presets import ANALYSIS_BANDS, ANALYSIS_LOUDNORM
from voleveler.analysis.metrics import (
    EnvelopeMetrics,
    SignalMetrics,
    compute_envelope_metrics,
    samples_from_f32le,
)
from voleveler.common.engine import EngineError, EngineHandle
from voleveler.common.env import Env
from voleveler.common.ffmpeg import base_args, parse_loudnorm_json, parse_rms_from_astats
from voleveler.common.logging_setup import get_logger
from voleveler.common.utils import parse_maybe_number, sanitize_base


log = get_logger("analysis")


def _window_args(env: Env, input_name: str) -> List[str]:
    return ["-i", input_name, "-t", str(int(env.analysis_sample_seconds))]


async def measure_loudness(handle: EngineHandle, input_name: str, *, env: Env) -> SignalMetrics:
    text = await handle.exec_checked(
        base_args(1, filter_threads=False)
        + _window_args(env, input_name)
        + ["-af", ANALYSIS_LOUDNORM, "-f", "null", "-"],
        "Smart match loudness analysis",
    )
    data = parse_loudnorm_json(text) or {}
    return SignalMetrics(
        input_i=parse_maybe_number(data.get("input_i")),
        input_lra=parse_maybe_number(data.get("input_lra")),
        input_tp=parse_maybe_number(data.get("input_tp")),
        input_thresh=parse_maybe_number(data.get("input_thresh")),
    )


async def measure_band_rms(handle: EngineHandle, input_name: str, band_filter: str, *, env: Env) -> Optional[float]:
    text = await handle.exec_checked(
        base_args(1, filter_threads=False)
        + _window_args(env, input_name)
        + ["-af", f"{band_filter},astats=metadata=0:reset=0:measure_perchannel=0", "-f", "null", "-"],
        "RMS analysis",
    )
    return parse_rms_from_astats(text)


async def measure_envelope(handle: EngineHandle, input_name: str, *, env: Env) -> EnvelopeMetrics:
    """Decode the analysis window to mono float32 and compute frame metrics."""
    analysis_name = f"{sanitize_base(input_name)}_envelope_analysis.f32"
    try:
        await handle.exec_checked(
            base_args(1, filter_threads=False)
            + ["-y"]
            + _window_args(env, input_name)
            + ["-ac", "1", "-ar", str(env.analysis_sample_rate), "-c:a", "pcm_f32le", "-f", "f32le", analysis_name],
            "Envelope analysis render",
        )
        samples = samples_from_f32le(await handle.read_file(analysis_name))
        return compute_envelope_metrics(samples, sample_rate=env.analysis_sample_rate)
    finally:
        await handle.delete_file(analysis_name)


async def analyze_file(handle: EngineHandle, input_name: str, *, env: Env) -> SignalMetrics:
    """Measure one file already written into the engine.

    Loudness and band passes propagate EngineError to the caller (which
    substitutes an empty record); an envelope failure only leaves the
    envelope fields empty.
    """
    metrics = await measure_loudness(handle, input_name, env=env)
    metrics = replace(
        metrics,
        low_rms=await measure_band_rms(handle, input_name, ANALYSIS_BANDS["low"], env=env),
        mid_rms=await measure_band_rms(handle, input_name, ANALYSIS_BANDS["mid"], env=env),
        high_rms=await measure_band_rms(handle, input_name, ANALYSIS_BANDS["high"], env=env),
    )

    try:
        envelope = await measure_envelope(handle, input_name, env=env)
    except (EngineError, OSError) as e:
        log.warning("envelope fallback input=%s err=%s", input_name, e)
        return metrics
    return metrics.with_envelope(envelope)
