from __future__ import annotations

import math
import re
from typing import Optional, Sequence

import numpy as np


DB_FLOOR = -120.0


def sanitize_base(name: str) -> str:
    """Strip the extension and replace anything outside [A-Za-z0-9-_] with '_'."""
    s = re.sub(r"\.[^/.]+$", "", name)
    return re.sub(r"[^a-zA-Z0-9\-_]+", "_", s)


def clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def to_odd_int(value: float, lo: int, hi: int) -> int:
    """Round into [lo, hi] and step to the nearest odd integer inside the range."""
    rounded = round_half_up(clamp(value, lo, hi))
    if rounded % 2 == 0:
        rounded += -1 if rounded >= hi else 1
    return rounded


def is_finite(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def finite_or(value: Optional[float], default):
    """Return value when it is a finite number, else default (which may be None)."""
    return float(value) if is_finite(value) else default


def median(values: Sequence[float]) -> Optional[float]:
    if len(values) == 0:
        return None
    return float(np.median(np.asarray(values, dtype=np.float64)))


def percentile(values: Sequence[float], percent: float) -> Optional[float]:
    """Linear-interpolated percentile; None for an empty sequence."""
    if len(values) == 0:
        return None
    return float(np.percentile(np.asarray(values, dtype=np.float64), clamp(percent, 0.0, 100.0)))


def robust_median(values: Sequence[float], *, cutoff: float = 2.8) -> Optional[float]:
    """Median after dropping values further than `cutoff` scaled MADs from the median."""
    if len(values) == 0:
        return None
    base = median(values)
    if base is None:
        return None

    mad = median([abs(v - base) for v in values]) or 0.0
    if mad <= 1e-6:
        return base

    scale = 1.4826 * mad
    kept = [v for v in values if abs(v - base) / scale <= cutoff]
    return median(kept if kept else values)


def to_db(value: float) -> float:
    if value <= 0:
        return DB_FLOOR
    return 20.0 * math.log10(value)


def to_db_array(values: np.ndarray) -> np.ndarray:
    out = np.full(values.shape, DB_FLOOR, dtype=np.float64)
    pos = values > 0
    out[pos] = 20.0 * np.log10(values[pos])
    return out


def from_db(db: float) -> float:
    return math.pow(10.0, db / 20.0)


def parse_maybe_number(value: object) -> Optional[float]:
    if is_finite(value):
        return float(value)  # type: ignore[arg-type]
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def format_signed(value: float, decimals: int = 1) -> str:
    return f"{'+' if value >= 0 else ''}{value:.{decimals}f}"
