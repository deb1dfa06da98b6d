from __future__ import annotations

import unittest
from dataclasses import fields

import numpy as np

from voleveler.analysis.metrics import (
    EnvelopeMetrics,
    SignalMetrics,
    compute_envelope_metrics,
    samples_from_f32le,
)

from tests._helpers import FAKE_RATE, sine


def _speech_bursts(seconds: float, *, on_ms: int = 400) -> np.ndarray:
    """220 Hz bursts gated on/off every on_ms."""
    x = sine(seconds, amp=0.3)
    block = FAKE_RATE * on_ms // 1000
    gate = (np.arange(len(x)) // block) % 2 == 0
    return (x * gate).astype(np.float32)


class TestShortInput(unittest.TestCase):
    def test_short_buffers_are_all_none(self) -> None:
        for n in (0, 1, 199, 3000):
            m = compute_envelope_metrics(np.zeros(n, dtype=np.float32) + 0.1, sample_rate=FAKE_RATE)
            self.assertEqual(m, EnvelopeMetrics())
            self.assertTrue(all(getattr(m, f.name) is None for f in fields(m)))

    def test_non_finite_samples_do_not_raise(self) -> None:
        x = sine(1.0)
        x[::97] = np.nan
        m = compute_envelope_metrics(x, sample_rate=FAKE_RATE)
        self.assertIsNotNone(m.noise_floor_db)

    def test_decode_drops_partial_sample(self) -> None:
        data = np.array([0.5, -0.25], dtype="<f4").tobytes() + b"\x01\x02"
        self.assertEqual(samples_from_f32le(data).tolist(), [0.5, -0.25])
        self.assertEqual(len(samples_from_f32le(b"\x00")), 0)


class TestNoiseFloor(unittest.TestCase):
    def test_noise_floor_monotonic_in_noise_level(self) -> None:
        speech = _speech_bursts(8.0)
        noise = np.random.default_rng(7).standard_normal(len(speech)).astype(np.float32)
        floors = []
        for scale in (0.0005, 0.001, 0.002, 0.004, 0.008):
            m = compute_envelope_metrics(speech + noise * np.float32(scale), sample_rate=FAKE_RATE)
            floors.append(m.noise_floor_db)
        self.assertTrue(all(f is not None for f in floors))
        for lo, hi in zip(floors, floors[1:]):
            self.assertLessEqual(lo, hi)
        self.assertLess(floors[0], floors[-1])

    def test_speech_threshold_tracks_floor(self) -> None:
        m = compute_envelope_metrics(_speech_bursts(6.0), sample_rate=FAKE_RATE)
        self.assertAlmostEqual(m.speech_threshold_db, max(-58.0, min(-26.0, m.noise_floor_db + 10.5)))


class TestInstability(unittest.TestCase):
    def test_flat_speech_is_stable(self) -> None:
        m = compute_envelope_metrics(sine(6.0, amp=0.3), sample_rate=FAKE_RATE)
        self.assertLess(m.instability_score, 0.05)

    def test_frame_to_frame_jumps_are_unstable(self) -> None:
        x = sine(6.0, amp=1.0)
        frame = FAKE_RATE // 100
        loud = (np.arange(len(x)) // frame) % 2 == 0
        # both levels stay above the speech threshold, 20 dB apart
        x = x * np.where(loud, 0.9, 0.09).astype(np.float32)
        m = compute_envelope_metrics(x, sample_rate=FAKE_RATE)
        self.assertGreater(m.instability_score, 0.5)

    def test_slow_level_changes_stay_stable(self) -> None:
        x = sine(6.0, amp=1.0)
        half_second = FAKE_RATE // 2
        loud = (np.arange(len(x)) // half_second) % 2 == 0
        x = x * np.where(loud, 0.9, 0.09).astype(np.float32)
        m = compute_envelope_metrics(x, sample_rate=FAKE_RATE)
        self.assertLess(m.instability_score, 0.1)


class TestClicks(unittest.TestCase):
    def test_impulses_in_silence_score_high(self) -> None:
        rng = np.random.default_rng(3)
        x = (rng.standard_normal(FAKE_RATE * 4) * 0.01).astype(np.float32)
        clean = compute_envelope_metrics(x, sample_rate=FAKE_RATE)
        self.assertEqual(clean.click_score, 0.0)

        clicky = x.copy()
        clicky[FAKE_RATE // 40::FAKE_RATE // 20] += np.float32(0.316)
        m = compute_envelope_metrics(clicky, sample_rate=FAKE_RATE)
        self.assertGreater(m.click_score, 0.3)


class TestSignalMetrics(unittest.TestCase):
    def test_tilts_need_mid_band(self) -> None:
        m = SignalMetrics(low_rms=-30.0, mid_rms=-20.0, high_rms=-34.0)
        self.assertEqual(m.low_tilt, -10.0)
        self.assertEqual(m.high_tilt, -14.0)
        self.assertIsNone(SignalMetrics(low_rms=-30.0).low_tilt)

    def test_with_envelope_and_empty(self) -> None:
        self.assertTrue(SignalMetrics.empty().is_empty())
        m = SignalMetrics(input_i=-24.0).with_envelope(EnvelopeMetrics(noise_floor_db=-60.0))
        self.assertEqual(m.noise_floor_db, -60.0)
        self.assertEqual(m.input_i, -24.0)
        self.assertFalse(m.is_empty())


if __name__ == "__main__":
    unittest.main()
