from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import List, Optional

import numpy as np

from voleveler.common.utils import (
    DB_FLOOR,
    clamp,
    median,
    percentile,
    round_half_up,
    to_db_array,
)


ENVELOPE_FRAME_MS = 10
MIN_ANALYSIS_FRAMES = 20

NOISE_FLOOR_MIN_DB = -90.0
NOISE_FLOOR_MAX_DB = -28.0
SPEECH_THRESHOLD_MIN_DB = -58.0
SPEECH_THRESHOLD_MAX_DB = -26.0
INITIAL_SPEECH_MARGIN_DB = 12.0
SPEECH_MARGIN_DB = 10.5
NEAR_SPEECH_CONTEXT_SEC = 0.35

REVERB_MIN_SPEECH_RUN = 8
REVERB_EVENT_SATURATION = 6
ECHO_MIN_LAG_FRAMES = 4
ECHO_MAX_LAG_FRAMES = 18
ECHO_CORR_FLOOR = 0.16
ECHO_CORR_SPAN = 0.34

INSTABILITY_MIN_FRAMES = 12
INSTABILITY_P85_FLOOR_DB = 1.7
INSTABILITY_P85_SPAN_DB = 3.8
INSTABILITY_P95_FLOOR_DB = 2.7
INSTABILITY_P95_SPAN_DB = 5.4

CLICK_CREST_DB = 20.0
CLICK_PEAK_DB = -20.0
SPEECH_CLICK_CREST_DB = 25.0
SPEECH_CLICK_PEAK_DB = -13.0
CLICK_DENSITY_GAIN = 3.2


@dataclass(frozen=True)
class EnvelopeMetrics:
    noise_floor_db: Optional[float] = None
    near_speech_noise_floor_db: Optional[float] = None
    speech_threshold_db: Optional[float] = None
    reverb_score: Optional[float] = None
    echo_score: Optional[float] = None
    room_score: Optional[float] = None
    echo_delay_ms: Optional[float] = None
    analysis_confidence: Optional[float] = None
    dryness_score: Optional[float] = None
    instability_score: Optional[float] = None
    click_score: Optional[float] = None


@dataclass(frozen=True)
class SignalMetrics:
    """Per-file measurements. Every field may be None (measurement unavailable)."""

    input_i: Optional[float] = None
    input_lra: Optional[float] = None
    input_tp: Optional[float] = None
    input_thresh: Optional[float] = None
    low_rms: Optional[float] = None
    mid_rms: Optional[float] = None
    high_rms: Optional[float] = None
    noise_floor_db: Optional[float] = None
    near_speech_noise_floor_db: Optional[float] = None
    speech_threshold_db: Optional[float] = None
    reverb_score: Optional[float] = None
    echo_score: Optional[float] = None
    room_score: Optional[float] = None
    echo_delay_ms: Optional[float] = None
    analysis_confidence: Optional[float] = None
    dryness_score: Optional[float] = None
    instability_score: Optional[float] = None
    click_score: Optional[float] = None

    @classmethod
    def empty(cls) -> "SignalMetrics":
        return cls()

    def with_envelope(self, envelope: EnvelopeMetrics) -> "SignalMetrics":
        return replace(self, **{f.name: getattr(envelope, f.name) for f in fields(EnvelopeMetrics)})

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    @property
    def low_tilt(self) -> Optional[float]:
        if self.low_rms is None or self.mid_rms is None:
            return None
        return self.low_rms - self.mid_rms

    @property
    def high_tilt(self) -> Optional[float]:
        if self.high_rms is None or self.mid_rms is None:
            return None
        return self.high_rms - self.mid_rms


def samples_from_f32le(data: bytes) -> np.ndarray:
    """Decode raw little-endian float32 bytes; a trailing partial sample is dropped."""
    usable = len(data) - (len(data) % 4)
    if usable <= 0:
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(data[:usable], dtype="<f4").astype(np.float32)


def _mean_slice(values: np.ndarray, start: int, end: int) -> Optional[float]:
    lo = max(0, start)
    hi = min(len(values), end)
    if hi <= lo:
        return None
    return float(np.mean(values[lo:hi]))


def _near_speech_mask(speech: np.ndarray, context: int) -> np.ndarray:
    """True for frames that have a speech frame within +-context frames."""
    n = len(speech)
    counts = np.concatenate([[0], np.cumsum(speech.astype(np.int64))])
    idx = np.arange(n)
    lo = np.clip(idx - context, 0, n - 1)
    hi = np.clip(idx + context, 0, n - 1)
    return (counts[hi + 1] - counts[lo]) > 0


def _reverb_events(frame_db: np.ndarray, speech: np.ndarray, noise_floor_db: float) -> tuple[List[float], int]:
    events: List[float] = []
    active = 0
    run = 0
    for i in range(len(frame_db) - 1):
        if speech[i]:
            active += 1
            run += 1
        else:
            run = 0

        if run < REVERB_MIN_SPEECH_RUN or not speech[i] or speech[i + 1]:
            continue

        pre_db = _mean_slice(frame_db, i - 6, i + 1)
        short_db = _mean_slice(frame_db, i + 2, i + 10)
        long_db = _mean_slice(frame_db, i + 14, i + 30)
        if pre_db is None or short_db is None or long_db is None:
            continue

        long_drop = pre_db - long_db
        decay = short_db - long_db
        tail_lift = long_db - noise_floor_db
        score = (
            clamp((20 - long_drop) / 20, 0, 1) * 0.55
            + clamp((8 - decay) / 8, 0, 1) * 0.35
            + clamp((tail_lift - 4) / 12, 0, 1) * 0.1
        )
        events.append(clamp(score, 0, 1))
    return events, active


def _echo_autocorrelation(frame_rms: np.ndarray) -> tuple[float, int]:
    centered = frame_rms - frame_rms.mean()
    best_corr = 0.0
    best_lag = 0
    for lag in range(ECHO_MIN_LAG_FRAMES, ECHO_MAX_LAG_FRAMES + 1):
        if lag >= len(centered):
            break
        a = centered[:-lag]
        b = centered[lag:]
        denom = float(np.sqrt(np.dot(a, a) * np.dot(b, b))) + 1e-12
        corr = float(np.dot(a, b)) / denom
        if corr > best_corr:
            best_corr = corr
            best_lag = lag
    return best_corr, best_lag


def _instability_score(speech_db: np.ndarray, speech_coverage: float) -> float:
    """Frame-to-frame loudness jumpiness inside speech.

    The score comes from the upper percentiles of absolute dB deltas between
    consecutive speech-active frames.
    """
    if len(speech_db) < INSTABILITY_MIN_FRAMES:
        return 0.0
    jumps = np.abs(np.diff(speech_db))
    p85 = percentile(jumps, 85) or 0.0
    p95 = percentile(jumps, 95) or 0.0
    score = (
        clamp((p85 - INSTABILITY_P85_FLOOR_DB) / INSTABILITY_P85_SPAN_DB, 0, 1) * 0.65
        + clamp((p95 - INSTABILITY_P95_FLOOR_DB) / INSTABILITY_P95_SPAN_DB, 0, 1) * 0.35
    )
    return clamp(score * clamp(0.8 + speech_coverage * 0.2, 0.8, 1), 0, 1)


def _click_score(frame_rms: np.ndarray, frame_peak: np.ndarray, speech: np.ndarray) -> float:
    crest_db = to_db_array((frame_peak + 1e-9) / (frame_rms + 1e-9))
    peak_db = np.maximum(DB_FLOOR, to_db_array(frame_peak + 1e-12))
    quiet = ~speech
    quiet_clicks = np.count_nonzero(quiet & (crest_db > CLICK_CREST_DB) & (peak_db > CLICK_PEAK_DB))
    # transients riding on speech count at half weight
    speech_clicks = np.count_nonzero(speech & (crest_db > SPEECH_CLICK_CREST_DB) & (peak_db > SPEECH_CLICK_PEAK_DB))
    density = (quiet_clicks + 0.5 * speech_clicks) / max(int(np.count_nonzero(quiet)), 1)
    return clamp(density * CLICK_DENSITY_GAIN, 0, 1)


def compute_envelope_metrics(samples: np.ndarray, *, sample_rate: int = 16000) -> EnvelopeMetrics:
    """Frame-based room/noise/stability descriptors of a mono float buffer.

    Inputs shorter than MIN_ANALYSIS_FRAMES frames yield an all-None record.
    """
    frame_size = max(1, round_half_up(sample_rate * ENVELOPE_FRAME_MS / 1000))
    frame_count = len(samples) // frame_size
    if frame_count < MIN_ANALYSIS_FRAMES:
        return EnvelopeMetrics()

    frames = np.nan_to_num(np.asarray(samples[: frame_count * frame_size], dtype=np.float64)).reshape(frame_count, frame_size)
    frame_rms = np.sqrt(np.mean(frames * frames, axis=1))
    frame_peak = np.max(np.abs(frames), axis=1)
    frame_db = np.maximum(DB_FLOOR, to_db_array(frame_rms + 1e-12))

    p20 = percentile(frame_db, 20)
    initial_floor = clamp(-68.0 if p20 is None else p20, NOISE_FLOOR_MIN_DB, NOISE_FLOOR_MAX_DB)
    initial_threshold = clamp(initial_floor + INITIAL_SPEECH_MARGIN_DB, SPEECH_THRESHOLD_MIN_DB, SPEECH_THRESHOLD_MAX_DB)
    speech = frame_db > initial_threshold

    context = round_half_up(NEAR_SPEECH_CONTEXT_SEC / (ENVELOPE_FRAME_MS / 1000))
    quiet = ~speech
    near = quiet & _near_speech_mask(speech, context)

    near_floor: Optional[float] = None
    if near.any():
        near_floor = clamp(float(np.percentile(frame_db[near], 72)), NOISE_FLOOR_MIN_DB, NOISE_FLOOR_MAX_DB)
    quiet_p65 = percentile(frame_db[quiet], 65)
    quiet_floor = clamp(initial_floor if quiet_p65 is None else quiet_p65, NOISE_FLOOR_MIN_DB, NOISE_FLOOR_MAX_DB)
    # Floors sampled far from speech underestimate what is heard between words.
    noise_floor = clamp(
        max(initial_floor, quiet_floor, DB_FLOOR if near_floor is None else near_floor),
        NOISE_FLOOR_MIN_DB,
        NOISE_FLOOR_MAX_DB,
    )
    speech_threshold = clamp(noise_floor + SPEECH_MARGIN_DB, SPEECH_THRESHOLD_MIN_DB, SPEECH_THRESHOLD_MAX_DB)

    events, active_frames = _reverb_events(frame_db, speech, noise_floor)
    best_corr, best_lag = _echo_autocorrelation(frame_rms)

    p90 = percentile(frame_db, 90)
    spread = max(0.0, (-28.0 if p90 is None else p90) - noise_floor)
    fallback_reverb = clamp((16 - spread) / 16, 0, 0.55)
    reverb_score = clamp(median(events) if events else fallback_reverb, 0, 1)
    echo_score = clamp((best_corr - ECHO_CORR_FLOOR) / ECHO_CORR_SPAN, 0, 1)
    noise_indicator = clamp((noise_floor + 48) / 20, 0, 1)
    room_score = clamp(reverb_score * 0.62 + echo_score * 0.28 + noise_indicator * 0.1, 0, 1)

    speech_coverage = clamp(active_frames / max(frame_count * 0.2, 1), 0, 1)
    event_coverage = clamp(len(events) / REVERB_EVENT_SATURATION, 0, 1)
    confidence = clamp(event_coverage * 0.65 + speech_coverage * 0.35, 0, 1)
    dryness = clamp(1 - room_score - noise_indicator * 0.15, 0, 1)

    return EnvelopeMetrics(
        noise_floor_db=noise_floor,
        near_speech_noise_floor_db=near_floor,
        speech_threshold_db=speech_threshold,
        reverb_score=reverb_score,
        echo_score=echo_score,
        room_score=room_score,
        echo_delay_ms=float(best_lag * ENVELOPE_FRAME_MS) if best_lag > 0 else None,
        analysis_confidence=confidence,
        dryness_score=dryness,
        instability_score=_instability_score(frame_db[speech], speech_coverage),
        click_score=_click_score(frame_rms, frame_peak, speech),
    )

