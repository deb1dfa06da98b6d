"""Filter chain compiler.

Turns (settings, adaptive profile, fallback options) into an ordered list of
ffmpeg filter stages. Stage order:

  tonal cleanup -> noise reduction -> click tamer -> leveler
  -> one floor-control stage -> merged presence/air EQ -> echo/room cuts
  -> compressor -> limiter
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from voleveler.adaptive.presets import FLOOR_GUARD, LIMITER_FILTER
from voleveler.adaptive.profile import AdaptiveProfile
from voleveler.common.config import LevelerSettings
from voleveler.common.utils import clamp, from_db, round_half_up, to_odd_int


FLOOR_CONTROL_KINDS = ("tail_gate", "breath_compand", "floor_guard")

CLICK_TAMER_MIN_STRENGTH = 0.46
INSTABILITY_FAST_RIDE = 0.35
INSTABILITY_STRONG = 0.62
MIN_EQ_MOVE_DB = 0.2
ECHO_NOTCH_MIN_DB = 0.25

# dynaudnorm: gaussian window must be odd, max gain is a plain float in the same bounds
GAUSS_WINDOW_RANGE = (3, 301)
MAX_GAIN_RANGE = (3.0, 301.0)


@dataclass(frozen=True)
class FilterStage:
    name: str
    params: Tuple[Tuple[str, str], ...] = ()
    kind: str = ""

    @classmethod
    def parse(cls, text: str, kind: str = "") -> "FilterStage":
        """Split 'name=k=v:k=v' into a stage; option values keep their own '=' and '|'."""
        name, _, rest = text.partition("=")
        params = []
        for part in rest.split(":") if rest else []:
            key, _, value = part.partition("=")
            params.append((key, value))
        return cls(name, tuple(params), kind)

    def render(self) -> str:
        if not self.params:
            return self.name
        return self.name + "=" + ":".join(f"{k}={v}" for k, v in self.params)


@dataclass(frozen=True)
class ChainOptions:
    disable_room_cleanup: bool = False
    disable_noise_reduction: bool = False
    minimal_stability_chain: bool = False
    disable_limiter: bool = False


def render_chain(stages: List[FilterStage]) -> str:
    return ",".join(s.render() for s in stages)


def _stage(name: str, kind: str, **params: str) -> FilterStage:
    return FilterStage(name, tuple(params.items()), kind)


def _eq(freq: int, width: float, gain_db: float, kind: str = "eq") -> FilterStage:
    return _stage("equalizer", kind, f=str(freq), width_type="q", width=f"{width:g}", g=f"{gain_db:.2f}")


def tail_gate_stage(strength: float) -> FilterStage:
    threshold_db = clamp(-58 + strength * 3.4, -58, -54.5)
    return _stage(
        "agate",
        "tail_gate",
        mode="downward",
        threshold=f"{from_db(threshold_db):.5f}",
        ratio=f"{clamp(1.01 + strength * 0.5, 1.01, 1.22):.2f}",
        range=f"{clamp(0.9 - strength * 0.16, 0.72, 0.9):.3f}",
        attack=str(round_half_up(clamp(24 - strength * 6, 18, 26))),
        release=str(round_half_up(clamp(760 - strength * 160, 520, 760))),
        makeup="1.00",
        detection="rms",
        link="average",
    )


def click_tamer_stage(strength: float) -> FilterStage:
    return _stage(
        "alimiter",
        "click_tamer",
        limit=f"{clamp(-3.6 + strength * 0.7, -3.6, -2.8):.1f}dB",
        attack=str(round_half_up(clamp(2 + strength * 4, 2, 6))),
        release=str(round_half_up(clamp(20 + strength * 30, 20, 52))),
        level="disabled",
    )


def spectral_denoise_stage(noise_risk: str, noise_floor_db: Optional[float]) -> Optional[FilterStage]:
    """afftdn tuned by noise risk; None for low-risk material."""
    if noise_risk == "low":
        return None

    floor = noise_floor_db if noise_floor_db is not None else (-49.0 if noise_risk == "high" else -55.0)
    severe = noise_risk == "high" and floor > -46
    if severe:
        nf, nr, ad, gs = clamp(floor + 3.2, -46, -34), 12, 0.55, 12
    elif noise_risk == "high":
        nf, nr, ad, gs = clamp(floor + 4.5, -50, -37), 10, 0.42, 10
    else:
        nf, nr, ad, gs = clamp(floor + 5.2, -56, -40), 7, 0.32, 8
    return _stage("afftdn", "noise_reduction", nf=f"{nf:.1f}", nr=str(nr), tn="1", ad=f"{ad:.2f}", gs=str(gs))


@dataclass
class _LevelerWindow:
    f: float
    g: float
    m: float
    threshold_amp: float = 0.0


def _apply_instability(w: _LevelerWindow, p: AdaptiveProfile, noise_guard: bool) -> None:
    """Unstable takes want a faster ride and more gain headroom."""
    score = p.instability_score
    if score >= INSTABILITY_FAST_RIDE:
        if p.noise_risk == "low":
            norm = clamp((score - INSTABILITY_FAST_RIDE) / 0.65, 0, 1)
            w.f = round_half_up(clamp(w.f - norm * 80, 161, 261))
            w.g += score * 1.8
            w.m += score * 1.4
        else:
            w.f = max(w.f, round_half_up(261 + score * 90))

    if score >= INSTABILITY_STRONG and p.noise_risk != "high":
        norm = clamp((score - INSTABILITY_STRONG) / 0.38, 0, 1)
        w.f = round_half_up(clamp(w.f - norm * 48, 201, 261))
        w.g = min(7.5, w.g + norm * 1.2)
        w.m = min(9.5, w.m + norm * 1.0)
        if noise_guard and p.noise_risk != "low":
            gate_db = clamp(p.speech_threshold_db - 8.2, -58, -43)
            w.threshold_amp = max(w.threshold_amp, from_db(gate_db))


def _apply_noise_constraints(w: _LevelerWindow, p: AdaptiveProfile) -> None:
    """Runs after _apply_instability so noisy takes keep a slow, low-lift window."""
    if p.noise_risk == "high" or p.noise_floor_db > -46:
        w.f = max(w.f, 281)
        w.g = min(w.g, 3)
        w.m = min(w.m, 3)
        w.threshold_amp = max(w.threshold_amp, from_db(clamp(p.noise_floor_db + 7.2, -54, -34)))
    elif p.noise_risk == "medium" or p.noise_floor_db > -52:
        w.f = max(w.f, 241)
        w.g = min(w.g, 4)
        w.m = min(w.m, 5)
        w.threshold_amp = max(w.threshold_amp, from_db(clamp(p.noise_floor_db + 6.0, -56, -36)))


class FilterChainCompiler:
    def __init__(self, settings: LevelerSettings) -> None:
        self.settings = settings

    def noise_reduction_stage(
        self, profile: Optional[AdaptiveProfile], options: Optional[ChainOptions] = None
    ) -> Optional[FilterStage]:
        options = options or ChainOptions()
        if not self.settings.noise_guard or profile is None:
            return None
        if options.minimal_stability_chain or options.disable_noise_reduction:
            return None
        return spectral_denoise_stage(profile.noise_risk, profile.noise_floor_db)

    def has_room_filters(self, profile: Optional[AdaptiveProfile]) -> bool:
        if not self.settings.room_cleanup or profile is None:
            return False
        return profile.use_tail_gate or profile.echo_notch_cut_db >= ECHO_NOTCH_MIN_DB

    def has_noise_reduction(self, profile: Optional[AdaptiveProfile]) -> bool:
        return self.noise_reduction_stage(profile) is not None

    def _leveler_stage(self, profile: Optional[AdaptiveProfile], minimal: bool) -> Optional[FilterStage]:
        dyn = self.settings.leveler_preset.dyna
        if dyn is None:
            return None

        if minimal or profile is None:
            w = _LevelerWindow(dyn.f, dyn.g, dyn.m)
            if not minimal and self.settings.noise_guard:
                w.g, w.m = max(3, dyn.g - 1), max(3, dyn.m - 1)
        else:
            g = max(3, dyn.g - 1) if self.settings.noise_guard else dyn.g
            m = max(3, dyn.m - 1) if self.settings.noise_guard else dyn.m
            lift = profile.leveling_need * 1.8 - profile.dyna_trim - profile.emotion_protection * 1.2
            w = _LevelerWindow(dyn.f, max(3, g + lift), max(3, m + lift))
            _apply_instability(w, profile, self.settings.noise_guard)
            if self.settings.noise_guard:
                _apply_noise_constraints(w, profile)

        params = [
            ("f", str(round_half_up(w.f))),
            ("g", str(to_odd_int(w.g, *GAUSS_WINDOW_RANGE))),
            ("m", f"{clamp(w.m, *MAX_GAIN_RANGE):.2f}"),
        ]
        if w.threshold_amp > 0:
            params.append(("t", f"{clamp(w.threshold_amp, from_db(-60), from_db(-36)):.5f}"))
        return FilterStage("dynaudnorm", tuple(params), "leveler")

    def _floor_control_stage(self, profile: Optional[AdaptiveProfile], room_cleanup: bool) -> Optional[FilterStage]:
        """At most one of tail gate, breath compand, floor guard."""
        s = self.settings
        if room_cleanup and profile is not None and profile.use_tail_gate:
            return tail_gate_stage(profile.tail_gate_strength)

        noise_risk = profile.noise_risk if profile is not None else None
        breath = s.breath_filter
        prefer_floor_guard = s.floor_guard and (
            noise_risk == "high" or (s.noise_guard and noise_risk == "medium")
        )
        if s.floor_guard and (breath is None or prefer_floor_guard):
            guard = profile.floor_guard_filter if profile is not None else FLOOR_GUARD
            return FilterStage.parse(guard, "floor_guard")
        if breath is not None:
            return FilterStage.parse(breath, "breath_compand")
        return None

    def _tone_eq_stages(self, profile: Optional[AdaptiveProfile]) -> List[FilterStage]:
        """Static harshness softening merged with smart-match offsets, one gain per band."""
        soften = self.settings.soften_harshness
        presence = profile.presence_gain_db if profile else 0.0
        air = profile.air_gain_db if profile else 0.0
        harsh = profile.emotional_harshness_cut_db if profile else 0.0
        top = profile.top_end_harshness_cut_db if profile else 0.0

        net_presence = clamp((-2.0 if soften else 0.0) + presence - harsh, -4.0, 0.7)
        net_air = clamp((-1.1 if soften else 0.0) + air - top, -2.7, 0.45)

        stages = []
        if abs(net_presence) >= MIN_EQ_MOVE_DB:
            stages.append(_eq(3500, 1.15, net_presence))
        if abs(net_air) >= MIN_EQ_MOVE_DB:
            stages.append(_eq(8000, 0.75, net_air))
        if top >= 0.45:
            stages.append(_eq(11200, 0.7, clamp(-0.35 - top * 0.55, -1.1, -0.35)))
        return stages

    def _room_eq_stages(self, profile: AdaptiveProfile) -> List[FilterStage]:
        stages = []
        notch = profile.echo_notch_cut_db
        if notch >= ECHO_NOTCH_MIN_DB:
            cut = clamp(notch, 0.25, 1.25)
            stages.append(_eq(2450, 1.35, -cut, "room_eq"))
            if cut >= 0.55:
                stages.append(_eq(1280, 1.0, -clamp(cut * 0.62, 0.3, 0.9), "room_eq"))
            if cut >= 0.9:
                stages.append(_eq(3620, 1.6, -clamp(cut * 0.45, 0.25, 0.7), "room_eq"))

        if profile.room_risk == "high":
            factor = clamp(notch / 1.45, 0.25, 1)
            stages.append(_eq(460, 0.95, -clamp(0.45 + factor * 0.55, 0.45, 1.05), "room_eq"))
            stages.append(_eq(1650, 1.2, -clamp(0.35 + factor * 0.65, 0.35, 1.15), "room_eq"))
            if notch >= 0.95:
                stages.append(_eq(2850, 1.5, -clamp(0.25 + factor * 0.45, 0.25, 0.8), "room_eq"))
        return stages

    def _compressor_stage(self, profile: Optional[AdaptiveProfile], upstream: List[FilterStage]) -> FilterStage:
        preset = self.settings.leveler_preset
        consistency = preset.consistency
        kinds = {s.kind for s in upstream}

        threshold_adj = profile.compressor_threshold_offset_db if profile else 0.0
        ratio_adj = profile.compressor_ratio_offset if profile else 0.0
        need = profile.leveling_need if profile else 0.0
        protection = profile.emotion_protection if profile else 0.0

        # every active upstream stage relaxes the compressor a little
        if "leveler" in kinds:
            threshold_adj += 0.25
            ratio_adj -= 0.08
        if kinds & {"breath_compand", "floor_guard"}:
            threshold_adj += 0.15
            ratio_adj -= 0.05
        if "tail_gate" in kinds:
            threshold_adj += 0.22
            ratio_adj -= 0.08

        room_relax = 0.0
        echo_pressure = 0.0
        instability_relax = 0.0
        if profile is not None:
            if profile.room_risk == "high":
                threshold_adj += 0.6
                ratio_adj -= 0.24
                room_relax = 1.0
            elif profile.room_risk == "medium":
                threshold_adj += 0.32
                ratio_adj -= 0.13
                room_relax = 0.45
            echo_pressure = clamp(profile.echo_notch_cut_db / 1.25, 0, 1)
            instability_relax = profile.instability_score * {"high": 0.9, "medium": 0.75}.get(profile.noise_risk, 0.65)
        threshold_adj += echo_pressure * 0.25 + instability_relax * 0.9
        ratio_adj -= echo_pressure * 0.12 + instability_relax * 0.35

        tighten = consistency * (0.55 + need * 0.75)
        threshold = clamp(preset.comp_threshold_db + threshold_adj - tighten + protection * 0.65, -32.5, -17.2)
        ratio = clamp(preset.comp_ratio + ratio_adj + consistency * 0.22 + need * 0.3 - protection * 0.35, 1.55, 3.0)
        attack = round_half_up(clamp(
            24 - consistency * 8 + protection * 8 + room_relax * 4 + echo_pressure * 2 + instability_relax * 3,
            14,
            36,
        ))
        release = round_half_up(clamp(
            170 - consistency * 45 + protection * 75 + room_relax * 40 + echo_pressure * 30 + instability_relax * 55,
            95,
            320,
        ))
        mix = clamp(
            0.9 + need * 0.07 - protection * 0.24 - room_relax * 0.08 - echo_pressure * 0.04 - instability_relax * 0.12,
            0.58,
            0.95,
        )
        return _stage(
            "acompressor",
            "compressor",
            threshold=f"{threshold:.1f}dB",
            ratio=f"{ratio:.2f}",
            attack=str(attack),
            release=str(release),
            mix=f"{mix:.2f}",
            detection="rms",
        )

    def compile(self, profile: Optional[AdaptiveProfile], options: Optional[ChainOptions] = None) -> List[FilterStage]:
        options = options or ChainOptions()
        s = self.settings
        minimal = options.minimal_stability_chain
        # the stability-safe chain runs without any adaptive modifiers
        adaptive = None if minimal else profile
        room_cleanup = s.room_cleanup and not options.disable_room_cleanup and not minimal

        stages: List[FilterStage] = []
        if s.eq_cleanup and not minimal:
            stages.append(_stage("highpass", "tone", f=str(adaptive.highpass_hz if adaptive else 80)))
            stages.append(_eq(250, 1.0, adaptive.low_mid_gain_db if adaptive else -2.0, "tone"))

        nr = self.noise_reduction_stage(profile, options)
        if nr is not None:
            stages.append(nr)

        if adaptive is not None and adaptive.click_tame_strength >= CLICK_TAMER_MIN_STRENGTH:
            stages.append(click_tamer_stage(adaptive.click_tame_strength))

        leveler = self._leveler_stage(profile, minimal)
        if leveler is not None:
            stages.append(leveler)

        if not minimal:
            floor_control = self._floor_control_stage(profile, room_cleanup)
            if floor_control is not None:
                stages.append(floor_control)
            stages.extend(self._tone_eq_stages(profile))
            if room_cleanup and profile is not None:
                stages.extend(self._room_eq_stages(profile))

        stages.append(self._compressor_stage(adaptive, stages))
        if not options.disable_limiter:
            stages.append(FilterStage.parse(LIMITER_FILTER, "limiter"))
        return stages

    def render(self, profile: Optional[AdaptiveProfile], options: Optional[ChainOptions] = None) -> str:
        return render_chain(self.compile(profile, options))


def build_blend_graph(profile: Optional[AdaptiveProfile]) -> str:
    """Scene blend: two delayed, band-limited reflections gated and mixed under the dry signal."""
    indoor_gain = profile.blend_indoor_gain if profile else 0.015
    outdoor_gain = profile.blend_outdoor_gain if profile else 0.01
    indoor_delay = round_half_up(profile.blend_indoor_delay_ms if profile else 28)
    outdoor_delay = round_half_up(profile.blend_outdoor_delay_ms if profile else 58)

    wet = indoor_gain + outdoor_gain
    dry_gain = clamp(1 - wet * 0.55, 0.93, 1)
    gate_threshold = clamp(0.00045 + wet * 0.028, 0.00055, 0.0024)
    gate_ratio = clamp(1.16 + wet * 8, 1.16, 1.34)
    gate_range = clamp(0.86 - wet * 2.6, 0.68, 0.86)

    return ";".join([
        "asplit=3[dry][ind_src][out_src]",
        f"[ind_src]adelay={indoor_delay}:all=1,highpass=f=280,lowpass=f=4600,volume={indoor_gain:.4f}[ind]",
        f"[out_src]adelay={outdoor_delay}:all=1,highpass=f=220,lowpass=f=3000,volume={outdoor_gain:.4f}[out]",
        f"[ind][out]amix=inputs=2:normalize=0,agate=mode=downward:threshold={gate_threshold:.5f}"
        f":ratio={gate_ratio:.2f}:range={gate_range:.3f}:attack=10:release=180:makeup=1.00"
        ":detection=rms:link=average[wet]",
        f"[dry]volume={dry_gain:.4f}[dryv]",
        f"[dryv][wet]amix=inputs=2:normalize=0,{LIMITER_FILTER}",
    ])
