"""Preset tables and fixed filter strings.

All numbers here are empirically tuned values carried over from the tool's
listening tests; they are kept together so they can be recalibrated against
measurement data in one place.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class LoudnessPreset:
    label: str
    integrated: str
    true_peak: str
    lra: str
    suffix: str


@dataclass(frozen=True)
class DynaPreset:
    f: int
    g: int
    m: int


@dataclass(frozen=True)
class LevelerPreset:
    label: str
    dyna: Optional[DynaPreset]
    comp_threshold_db: float
    comp_ratio: float
    consistency: float


@dataclass(frozen=True)
class SmartMatchPreset:
    label: str
    tone: float
    dynamics: float


LOUDNESS_PRESETS: Dict[str, Optional[LoudnessPreset]] = {
    "atsc_a85": LoudnessPreset("ATSC A/85 (-24 LKFS, -2 dBTP)", "-24", "-2", "7", "A85"),
    "ebu_r128": LoudnessPreset("EBU R128 (-23 LUFS, -1 dBTP)", "-23", "-1", "7", "R128"),
    "mix_ready_only": None,
}

BREATH_COMPAND: Dict[str, Optional[str]] = {
    "off": None,
    "light": "compand=attacks=0.2:decays=0.8:points=-90/-90|-60/-66|-40/-40|-20/-20|0/0",
    "medium": "compand=attacks=0.2:decays=0.8:points=-90/-90|-60/-70|-40/-40|-20/-20|0/0",
}

FLOOR_GUARD = "compand=attacks=0.05:decays=0.2:points=-90/-95|-70/-74|-60/-60|-50/-50|-20/-20|0/0"
FLOOR_GUARD_STRONG = "compand=attacks=0.04:decays=0.18:points=-90/-100|-75/-82|-64/-65|-52/-53|-20/-20|0/0"

LEVELER_PRESETS: Dict[str, LevelerPreset] = {
    "minimal": LevelerPreset("Minimal (no auto-leveler)", None, -27.0, 1.7, 0.15),
    "gentle": LevelerPreset("Gentle", DynaPreset(181, 5, 5), -26.0, 2.05, 0.45),
    "balanced": LevelerPreset("Balanced", DynaPreset(221, 7, 7), -24.0, 2.25, 0.65),
    "firm": LevelerPreset("Firm", DynaPreset(271, 9, 9), -22.0, 2.45, 0.85),
}

SMART_MATCH_PRESETS: Dict[str, SmartMatchPreset] = {
    "off": SmartMatchPreset("Off", 0.0, 0.0),
    "gentle": SmartMatchPreset("Gentle", 0.45, 0.3),
    "balanced": SmartMatchPreset("Balanced", 0.7, 0.5),
}

LIMITER_FILTER = "alimiter=limit=-2dB:level=disabled"

# Analysis-only loudness pass; the target values do not matter for measurement.
ANALYSIS_LOUDNORM = "loudnorm=I=-24:TP=-2:LRA=7:print_format=json"

ANALYSIS_BANDS: Dict[str, str] = {
    "low": "highpass=f=50,lowpass=f=220",
    "mid": "highpass=f=300,lowpass=f=2400",
    "high": "highpass=f=2800,lowpass=f=9000",
}
