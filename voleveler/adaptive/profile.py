"""Adaptive per-file processing profile.

build_adaptive_profile() is a pure function of (metrics, batch reference,
toggles). It is composed of small scoring steps, each returning plain values,
followed by a final clamp of every numeric field into PROFILE_RANGES.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, fields, replace
from typing import Dict, Optional, Tuple

from voleveler.adaptive.presets import FLOOR_GUARD, FLOOR_GUARD_STRONG
from voleveler.analysis.metrics import SignalMetrics
from voleveler.analysis.reference import (
    DEFAULT_HIGH_TILT_DB,
    DEFAULT_LOW_TILT_DB,
    DEFAULT_LRA,
    BatchReference,
)
from voleveler.common.config import LevelerSettings
from voleveler.common.utils import clamp, finite_or, round_half_up


RISK_LEVELS = ("low", "medium", "high")

NOISE_FLOOR_HIGH_DB = -52.0
NOISE_FLOOR_MEDIUM_DB = -62.0
SPEECH_THRESHOLD_ESCALATE_MEDIUM_DB = -44.0
SPEECH_THRESHOLD_ESCALATE_HIGH_DB = -40.0
GATING_THRESHOLD_HIGH_DB = -33.0
GATING_THRESHOLD_MEDIUM_DB = -38.0

ROOM_SCORE_MEDIUM = 0.33
ROOM_SCORE_HIGH = 0.58
LOW_CONFIDENCE = 0.35
DEFAULT_CONFIDENCE = 0.25

PRESERVE_ENDINGS_INSTABILITY = 0.62
PRESERVE_ENDINGS_MAX_ECHO = 0.92
BLEND_HARD_CAP = 0.0018


PROFILE_RANGES: Dict[str, Tuple[float, float]] = {
    "highpass_hz": (65, 105),
    "low_mid_gain_db": (-3.6, 1.2),
    "presence_gain_db": (-2.2, 1.8),
    "air_gain_db": (-1.4, 1.0),
    "emotional_harshness_cut_db": (0.0, 1.6),
    "top_end_harshness_cut_db": (0.0, 1.2),
    "leveling_need": (0.0, 1.0),
    "emotion_protection": (0.0, 0.82),
    "compressor_ratio_offset": (-0.35, 0.45),
    "compressor_threshold_offset_db": (-1.5, 1.5),
    "dyna_trim": (0.0, 4.4),
    "noise_floor_db": (-90.0, -28.0),
    "speech_threshold_db": (-58.0, -26.0),
    "tail_gate_strength": (0.0, 0.22),
    "echo_notch_cut_db": (0.0, 1.45),
    "instability_score": (0.0, 1.0),
    "click_score": (0.0, 1.0),
    "click_tame_strength": (0.0, 1.0),
    "blend_indoor_gain": (0.0, 0.07),
    "blend_outdoor_gain": (0.0, 0.055),
    "blend_indoor_delay_ms": (22, 36),
    "blend_outdoor_delay_ms": (48, 74),
}

_INT_FIELDS = {"highpass_hz", "blend_indoor_delay_ms", "blend_outdoor_delay_ms"}


@dataclass(frozen=True)
class ProfileToggles:
    tone: float = 0.0
    dynamics: float = 0.0
    room_cleanup: bool = False
    scene_blend: bool = False
    noise_guard: bool = False

    @classmethod
    def from_settings(cls, settings: LevelerSettings) -> "ProfileToggles":
        preset = settings.smart_match_preset
        return cls(
            tone=preset.tone,
            dynamics=preset.dynamics,
            room_cleanup=settings.room_cleanup,
            scene_blend=settings.scene_blend,
            noise_guard=settings.noise_guard,
        )

    @property
    def any_enabled(self) -> bool:
        return self.tone > 0 or self.dynamics > 0 or self.room_cleanup or self.scene_blend


@dataclass(frozen=True)
class AdaptiveProfile:
    highpass_hz: int
    low_mid_gain_db: float
    presence_gain_db: float
    air_gain_db: float
    emotional_harshness_cut_db: float
    top_end_harshness_cut_db: float
    leveling_need: float
    emotion_protection: float
    compressor_ratio_offset: float
    compressor_threshold_offset_db: float
    dyna_trim: float
    floor_guard_filter: str
    noise_risk: str
    noise_floor_db: float
    speech_threshold_db: float
    room_risk: str
    use_tail_gate: bool
    tail_gate_strength: float
    echo_notch_cut_db: float
    instability_score: float
    click_score: float
    click_tame_strength: float
    blend_indoor_gain: float
    blend_outdoor_gain: float
    blend_indoor_delay_ms: int
    blend_outdoor_delay_ms: int

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class _Inputs:
    """Metrics with non-finite values dropped and reference defaults resolved."""

    m: SignalMetrics
    ref_low_tilt: float
    ref_high_tilt: float
    ref_lra: float


def _sanitize(metrics: SignalMetrics, reference: Optional[BatchReference]) -> _Inputs:
    clean = replace(metrics, **{f.name: finite_or(getattr(metrics, f.name), None) for f in fields(metrics)})
    return _Inputs(
        m=clean,
        ref_low_tilt=finite_or(reference.low_tilt if reference else None, DEFAULT_LOW_TILT_DB),
        ref_high_tilt=finite_or(reference.high_tilt if reference else None, DEFAULT_HIGH_TILT_DB),
        ref_lra=finite_or(reference.lra if reference else None, DEFAULT_LRA),
    )


def tilt_deltas(inp: _Inputs) -> Tuple[float, float]:
    low = inp.m.low_tilt
    high = inp.m.high_tilt
    low_tilt = inp.ref_low_tilt if low is None else low
    high_tilt = inp.ref_high_tilt if high is None else high
    return low_tilt - inp.ref_low_tilt, high_tilt - inp.ref_high_tilt


def tone_moves(low_diff: float, high_diff: float, tone: float) -> Tuple[int, float, float, float]:
    """(highpass Hz, low-mid dB, presence dB, air dB), each a gentle nudge."""
    highpass = round_half_up(clamp(80 + low_diff * 2.2 * tone, 65, 105))
    low_mid = clamp(-2 - low_diff * 0.28 * tone, -3.6, 1.2)
    presence = clamp(-high_diff * 0.45 * tone, -2.2, 1.8)
    air = clamp(-high_diff * 0.25 * tone, -1.4, 1.0)
    return highpass, low_mid, presence, air


def dynamics_offsets(lra_diff: float, dynamics: float) -> Tuple[float, float]:
    """(compressor ratio offset, compressor threshold offset dB)."""
    return (
        clamp(lra_diff * 0.07 * dynamics, -0.35, 0.45),
        clamp(lra_diff * 0.6 * dynamics, -1.5, 1.5),
    )


def escalate(risk: str) -> str:
    return RISK_LEVELS[min(RISK_LEVELS.index(risk) + 1, len(RISK_LEVELS) - 1)]


def downgrade(risk: str) -> str:
    return RISK_LEVELS[max(RISK_LEVELS.index(risk) - 1, 0)]


def classify_noise_risk(m: SignalMetrics) -> Tuple[str, float, float]:
    """(noise risk, measured floor dB, speech threshold dB).

    The louder of the overall and near-speech floors decides the base level.
    A high speech threshold bumps the risk on its own, since loud speech can
    hide a noisy room behind a low-looking floor.
    """
    floor = max(
        m.noise_floor_db if m.noise_floor_db is not None else -70.0,
        m.near_speech_noise_floor_db if m.near_speech_noise_floor_db is not None else -90.0,
    )
    speech_threshold = (
        m.speech_threshold_db if m.speech_threshold_db is not None else clamp(floor + 10.5, -58, -26)
    )

    risk = "low"
    if m.noise_floor_db is not None or m.near_speech_noise_floor_db is not None:
        if floor > NOISE_FLOOR_HIGH_DB:
            risk = "high"
        elif floor > NOISE_FLOOR_MEDIUM_DB:
            risk = "medium"
    elif m.input_thresh is not None:
        # gating threshold only stands in when the envelope pass is missing
        if m.input_thresh > GATING_THRESHOLD_HIGH_DB:
            risk = "high"
        elif m.input_thresh > GATING_THRESHOLD_MEDIUM_DB:
            risk = "medium"

    if risk == "low" and speech_threshold > SPEECH_THRESHOLD_ESCALATE_MEDIUM_DB:
        risk = escalate(risk)
    if risk == "medium" and speech_threshold > SPEECH_THRESHOLD_ESCALATE_HIGH_DB:
        risk = escalate(risk)
    return risk, floor, speech_threshold


def classify_room_risk(room_score: float, confidence: float) -> Tuple[str, float]:
    """(room risk, confidence-scaled room score); weak evidence drops one level."""
    scaled = room_score * clamp(0.75 + confidence * 0.25, 0.75, 1)
    if scaled < ROOM_SCORE_MEDIUM:
        risk = "low"
    elif scaled < ROOM_SCORE_HIGH:
        risk = "medium"
    else:
        risk = "high"
    if confidence < LOW_CONFIDENCE:
        risk = downgrade(risk)
    return risk, scaled


def emotion_scores(
    input_tp: Optional[float], high_diff: float, lra: float, lra_diff: float, tone: float, dynamics: float
) -> Tuple[float, float, float, float]:
    """(emotion protection, leveling need, presence harshness cut, air harshness cut).

    Hot, bright, wide-range takes get protected peaks and gentler leveling;
    flat takes get more leveling.
    """
    hot_peak = clamp(((input_tp if input_tp is not None else -9.0) + 9) / 7, 0, 1)
    bright = clamp((high_diff + 1.8) / 4.5, 0, 1)
    wide = clamp((lra - 5.5) / 7, 0, 1)
    protection = clamp((hot_peak * 0.48 + wide * 0.4) * dynamics, 0, 0.82)
    need = clamp((wide * 0.72 + max(0.0, lra_diff) / 8) * dynamics, 0, 1)
    harsh = clamp((hot_peak * 0.95 + bright * 0.7) * tone, 0, 1.6)
    return protection, need, harsh, clamp(harsh * 0.75, 0, 1.2)


def trim_boosts_under_risk(presence: float, air: float, noise_risk: str, room_risk: str) -> Tuple[float, float]:
    if noise_risk == "low" and room_risk == "low":
        return presence, air
    if room_risk == "high":
        keep = 0.2
    elif room_risk == "medium":
        keep = 0.45
    elif noise_risk == "high":
        keep = 0.35
    else:
        keep = 0.7
    return (presence * keep if presence > 0 else presence, air * keep if air > 0 else air)


@dataclass(frozen=True)
class RoomPlan:
    cleanup_active: bool
    use_tail_gate: bool
    tail_gate_strength: float
    echo_notch_cut_db: float


def plan_room_cleanup(
    *, enabled: bool, room_risk: str, noise_risk: str, confidence: float, echo: float, instability: float
) -> RoomPlan:
    active = enabled and (confidence >= 0.4 or echo >= 0.58 or room_risk != "low")
    # unstable-but-clean speech: its decays are sentence endings, not room tail
    preserve_endings = (
        noise_risk == "low" and instability >= PRESERVE_ENDINGS_INSTABILITY and echo < PRESERVE_ENDINGS_MAX_ECHO
    )
    force_for_echo = active and room_risk == "high" and echo >= 0.62 and not preserve_endings
    use_gate = (
        active
        and not preserve_endings
        and (force_for_echo or (confidence >= 0.52 and (room_risk == "high" or (room_risk == "medium" and echo >= 0.5))))
    )

    strength = 0.0
    if use_gate:
        if room_risk == "high":
            strength = clamp(0.09 + echo * 0.1 + confidence * 0.06, 0.09, 0.22)
        else:
            strength = clamp(0.06 + echo * 0.08, 0.06, 0.14)

    notch = 0.0
    if active:
        weight = {"high": 1.02, "medium": 0.68, "low": 0.42}[room_risk]
        notch = clamp(echo * weight + (0.12 if room_risk == "high" else 0.0), 0, 1.45)
    return RoomPlan(active, use_gate, strength, notch)


def leveler_trim(noise_guard: bool, noise_risk: str, room_risk: str, instability: float) -> float:
    base = {"high": 3.0, "medium": 2.0, "low": 0.0}[noise_risk] if noise_guard else 0.0
    room = {"high": 1.4, "medium": 0.7, "low": 0.0}[room_risk]
    assist = instability * {"low": 0.9, "medium": 0.4, "high": 0.15}[noise_risk]
    return max(0.0, base + room - assist)


def click_tame_strength(click: float, noise_risk: str) -> float:
    return clamp(click * {"high": 1.0, "medium": 0.88, "low": 0.78}[noise_risk] * 0.72, 0, 1)


def scene_blend(
    *,
    enabled: bool,
    dryness: float,
    room_risk: str,
    noise_risk: str,
    echo: float,
    instability: float,
    confidence: float,
) -> Tuple[float, float, int, int]:
    """(indoor gain, outdoor gain, indoor delay ms, outdoor delay ms).

    Every risk axis multiplies the blend amount down, so one bad axis is
    enough to collapse the reflections toward silence.
    """
    risk_damp = {"high": 0.03, "medium": 0.2, "low": 1.0}[room_risk]
    echo_damp = clamp(1 - echo * 0.85, 0.08, 1)
    noise_damp = {"high": 0.22, "medium": 0.55, "low": 1.0}[noise_risk]
    instability_damp = 0.65 if instability >= 0.7 else 1.0
    confidence_scale = clamp(0.35 + confidence * 0.65, 0.35, 1)
    base = clamp(0.022 + dryness * 0.022, 0.016, 0.045)

    amount = base * risk_damp * confidence_scale * echo_damp * noise_damp * instability_damp if enabled else 0.0
    if room_risk == "high" or echo >= 0.72:
        amount = min(amount, BLEND_HARD_CAP)

    return (
        clamp(amount * 0.62, 0, 0.07),
        clamp(amount * 0.42, 0, 0.055),
        round_half_up(clamp(24 + (1 - dryness) * 8, 22, 36)),
        round_half_up(clamp(52 + (1 - dryness) * 18, 48, 74)),
    )


def clamp_profile(profile: AdaptiveProfile) -> AdaptiveProfile:
    """Final guard: every numeric field finite and inside PROFILE_RANGES."""
    values = {}
    for name, (lo, hi) in PROFILE_RANGES.items():
        v = getattr(profile, name)
        if not isinstance(v, (int, float)) or not math.isfinite(v):
            v = lo
        v = clamp(v, lo, hi)
        values[name] = round_half_up(v) if name in _INT_FIELDS else float(v)
    return replace(profile, **values)


def build_adaptive_profile(
    metrics: Optional[SignalMetrics],
    reference: Optional[BatchReference],
    toggles: ProfileToggles,
) -> Optional[AdaptiveProfile]:
    if not toggles.any_enabled or metrics is None:
        return None

    inp = _sanitize(metrics, reference)
    m = inp.m
    tone = max(0.0, toggles.tone)
    dynamics = max(0.0, toggles.dynamics)

    low_diff, high_diff = tilt_deltas(inp)
    highpass, low_mid, presence, air = tone_moves(low_diff, high_diff, tone)

    lra = m.input_lra if m.input_lra is not None else inp.ref_lra
    lra_diff = lra - inp.ref_lra
    ratio_offset, threshold_offset = dynamics_offsets(lra_diff, dynamics)

    noise_risk, noise_floor, speech_threshold = classify_noise_risk(m)
    protection, need, harsh_cut, air_cut = emotion_scores(m.input_tp, high_diff, lra, lra_diff, tone, dynamics)

    confidence = m.analysis_confidence if m.analysis_confidence is not None else DEFAULT_CONFIDENCE
    room_risk, scaled_room = classify_room_risk(m.room_score or 0.0, confidence)
    presence, air = trim_boosts_under_risk(presence, air, noise_risk, room_risk)

    echo = m.echo_score or 0.0
    instability = clamp(m.instability_score or 0.0, 0, 1)
    click = clamp(m.click_score or 0.0, 0, 1)
    room = plan_room_cleanup(
        enabled=toggles.room_cleanup,
        room_risk=room_risk,
        noise_risk=noise_risk,
        confidence=confidence,
        echo=echo,
        instability=instability,
    )

    dryness = m.dryness_score if m.dryness_score is not None else clamp(1 - scaled_room, 0, 1)
    indoor_gain, outdoor_gain, indoor_delay, outdoor_delay = scene_blend(
        enabled=toggles.scene_blend,
        dryness=clamp(dryness, 0, 1),
        room_risk=room_risk,
        noise_risk=noise_risk,
        echo=echo,
        instability=instability,
        confidence=confidence,
    )

    profile = AdaptiveProfile(
        highpass_hz=highpass,
        low_mid_gain_db=low_mid,
        presence_gain_db=presence,
        air_gain_db=air,
        emotional_harshness_cut_db=harsh_cut,
        top_end_harshness_cut_db=air_cut,
        leveling_need=need,
        emotion_protection=protection,
        compressor_ratio_offset=ratio_offset,
        compressor_threshold_offset_db=threshold_offset,
        dyna_trim=leveler_trim(toggles.noise_guard, noise_risk, room_risk, instability),
        floor_guard_filter=FLOOR_GUARD_STRONG if noise_risk == "high" else FLOOR_GUARD,
        noise_risk=noise_risk,
        noise_floor_db=noise_floor,
        speech_threshold_db=speech_threshold,
        room_risk=room_risk,
        use_tail_gate=room.use_tail_gate,
        tail_gate_strength=room.tail_gate_strength,
        echo_notch_cut_db=room.echo_notch_cut_db,
        instability_score=instability,
        click_score=click,
        click_tame_strength=click_tame_strength(click, noise_risk),
        blend_indoor_gain=indoor_gain,
        blend_outdoor_gain=outdoor_gain,
        blend_indoor_delay_ms=indoor_delay,
        blend_outdoor_delay_ms=outdoor_delay,
    )
    return clamp_profile(profile)
