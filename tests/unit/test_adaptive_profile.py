from __future__ import annotations

import math
import random
import unittest
from dataclasses import fields

from voleveler.adaptive.presets import FLOOR_GUARD, FLOOR_GUARD_STRONG
from voleveler.adaptive.profile import (
    PROFILE_RANGES,
    RISK_LEVELS,
    ProfileToggles,
    build_adaptive_profile,
    classify_noise_risk,
    classify_room_risk,
    plan_room_cleanup,
    scene_blend,
    tone_moves,
)
from voleveler.analysis.metrics import SignalMetrics
from voleveler.analysis.reference import BatchReference
from voleveler.common.config import LevelerSettings


BALANCED = ProfileToggles(tone=0.7, dynamics=0.5, room_cleanup=True, scene_blend=True, noise_guard=True)

_METRIC_SPANS = {
    "input_i": (-70, 0),
    "input_lra": (0, 30),
    "input_tp": (-40, 6),
    "input_thresh": (-80, -10),
    "low_rms": (-120, 0),
    "mid_rms": (-120, 0),
    "high_rms": (-120, 0),
    "noise_floor_db": (-120, 0),
    "near_speech_noise_floor_db": (-120, 0),
    "speech_threshold_db": (-90, 0),
    "reverb_score": (-0.5, 1.5),
    "echo_score": (-0.5, 1.5),
    "room_score": (-0.5, 1.5),
    "echo_delay_ms": (0, 400),
    "analysis_confidence": (-0.5, 1.5),
    "dryness_score": (-0.5, 1.5),
    "instability_score": (-0.5, 1.5),
    "click_score": (-0.5, 1.5),
}


def _random_metrics(rng: random.Random) -> SignalMetrics:
    values = {}
    for name, (lo, hi) in _METRIC_SPANS.items():
        roll = rng.random()
        if roll < 0.2:
            values[name] = None
        elif roll < 0.25:
            values[name] = rng.choice([math.nan, math.inf, -math.inf])
        else:
            values[name] = rng.uniform(lo, hi)
    return SignalMetrics(**values)


class TestProfileGate(unittest.TestCase):
    def test_none_when_nothing_enabled(self) -> None:
        m = SignalMetrics(input_lra=8.0)
        self.assertIsNone(build_adaptive_profile(m, None, ProfileToggles()))
        self.assertIsNone(build_adaptive_profile(m, None, ProfileToggles(noise_guard=True)))

    def test_none_without_metrics(self) -> None:
        self.assertIsNone(build_adaptive_profile(None, None, BALANCED))

    def test_from_settings(self) -> None:
        t = ProfileToggles.from_settings(LevelerSettings(smart_match="balanced", scene_blend=False))
        self.assertEqual((t.tone, t.dynamics), (0.7, 0.5))
        self.assertFalse(t.scene_blend)
        self.assertTrue(t.any_enabled)


class TestProfileRanges(unittest.TestCase):
    def _assert_in_range(self, profile) -> None:
        for name, (lo, hi) in PROFILE_RANGES.items():
            v = getattr(profile, name)
            self.assertTrue(math.isfinite(v), name)
            self.assertGreaterEqual(v, lo, name)
            self.assertLessEqual(v, hi, name)
        self.assertIn(profile.noise_risk, RISK_LEVELS)
        self.assertIn(profile.room_risk, RISK_LEVELS)
        self.assertIn(profile.floor_guard_filter, (FLOOR_GUARD, FLOOR_GUARD_STRONG))

    def test_fuzzed_metrics_stay_in_range(self) -> None:
        rng = random.Random(1234)
        for _ in range(500):
            toggles = ProfileToggles(
                tone=rng.choice([0.0, 0.45, 0.7, 3.0]),
                dynamics=rng.choice([0.0, 0.3, 0.5, 3.0]),
                room_cleanup=rng.random() < 0.5,
                scene_blend=rng.random() < 0.5,
                noise_guard=rng.random() < 0.5,
            )
            reference = rng.choice([
                None,
                BatchReference(rng.uniform(-30, 10), rng.uniform(-30, 10), rng.uniform(0, 25)),
                BatchReference(math.nan, math.inf, -math.inf),
            ])
            profile = build_adaptive_profile(_random_metrics(rng), reference, toggles)
            if not toggles.any_enabled:
                self.assertIsNone(profile)
                continue
            self._assert_in_range(profile)

    def test_all_null_metrics_give_neutral_profile(self) -> None:
        p = build_adaptive_profile(SignalMetrics.empty(), None, BALANCED)
        self._assert_in_range(p)
        self.assertEqual(p.highpass_hz, 80)
        self.assertEqual(p.low_mid_gain_db, -2.0)
        self.assertEqual(p.noise_risk, "low")
        self.assertEqual(p.room_risk, "low")
        self.assertFalse(p.use_tail_gate)
        self.assertEqual(p.floor_guard_filter, FLOOR_GUARD)

    def test_profile_fields_are_all_set(self) -> None:
        p = build_adaptive_profile(SignalMetrics(noise_floor_db=-50.0), None, BALANCED)
        self.assertEqual(set(p.as_dict()), {f.name for f in fields(p)})


class TestScoringSteps(unittest.TestCase):
    def test_tone_moves(self) -> None:
        hp, low_mid, presence, air = tone_moves(0.0, 0.0, 0.7)
        self.assertEqual((hp, low_mid, presence, air), (80, -2.0, 0.0, 0.0))
        hp, _, presence, air = tone_moves(10.0, -4.0, 1.0)
        self.assertEqual(hp, 102)
        self.assertAlmostEqual(presence, 1.8)
        self.assertAlmostEqual(air, 1.0)

    def test_noise_risk_levels(self) -> None:
        self.assertEqual(classify_noise_risk(SignalMetrics(noise_floor_db=-50.0))[0], "high")
        self.assertEqual(classify_noise_risk(SignalMetrics(noise_floor_db=-60.0))[0], "medium")
        self.assertEqual(classify_noise_risk(SignalMetrics(noise_floor_db=-75.0))[0], "low")
        # near-speech floor wins when louder
        self.assertEqual(classify_noise_risk(SignalMetrics(noise_floor_db=-75.0, near_speech_noise_floor_db=-51.0))[0], "high")

    def test_noise_risk_escalates_on_loud_speech_threshold(self) -> None:
        self.assertEqual(classify_noise_risk(SignalMetrics(noise_floor_db=-75.0, speech_threshold_db=-42.0))[0], "medium")
        self.assertEqual(classify_noise_risk(SignalMetrics(noise_floor_db=-75.0, speech_threshold_db=-38.0))[0], "high")

    def test_gating_threshold_only_without_envelope(self) -> None:
        self.assertEqual(classify_noise_risk(SignalMetrics(input_thresh=-30.0))[0], "high")
        self.assertEqual(classify_noise_risk(SignalMetrics(input_thresh=-36.0))[0], "medium")
        self.assertEqual(classify_noise_risk(SignalMetrics(input_thresh=-30.0, noise_floor_db=-75.0))[0], "low")

    def test_room_risk_downgraded_on_low_confidence(self) -> None:
        self.assertEqual(classify_room_risk(0.7, 0.9)[0], "high")
        self.assertEqual(classify_room_risk(0.8, 0.2)[0], "medium")
        self.assertEqual(classify_room_risk(0.4, 0.2)[0], "low")

    def test_unstable_clean_speech_keeps_endings(self) -> None:
        plan = plan_room_cleanup(enabled=True, room_risk="high", noise_risk="low", confidence=0.9, echo=0.7, instability=0.8)
        self.assertFalse(plan.use_tail_gate)
        self.assertGreater(plan.echo_notch_cut_db, 0.0)

        plan = plan_room_cleanup(enabled=True, room_risk="high", noise_risk="medium", confidence=0.9, echo=0.7, instability=0.8)
        self.assertTrue(plan.use_tail_gate)
        self.assertGreaterEqual(plan.tail_gate_strength, 0.09)

    def test_room_cleanup_disabled(self) -> None:
        plan = plan_room_cleanup(enabled=False, room_risk="high", noise_risk="high", confidence=1.0, echo=1.0, instability=0.0)
        self.assertFalse(plan.cleanup_active)
        self.assertEqual(plan.echo_notch_cut_db, 0.0)

    def test_scene_blend_collapses_under_room_risk(self) -> None:
        kw = dict(dryness=0.9, noise_risk="low", echo=0.1, instability=0.0, confidence=1.0)
        indoor_low, outdoor_low, _, _ = scene_blend(enabled=True, room_risk="low", **kw)
        indoor_high, _, _, _ = scene_blend(enabled=True, room_risk="high", **kw)
        self.assertGreater(indoor_low, 0.01)
        self.assertGreater(outdoor_low, 0.0)
        self.assertLessEqual(indoor_high, 0.0018 * 0.62 + 1e-12)
        self.assertEqual(scene_blend(enabled=False, room_risk="low", **kw)[:2], (0.0, 0.0))


if __name__ == "__main__":
    unittest.main()
