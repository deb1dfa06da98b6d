from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from voleveler.analysis.metrics import SignalMetrics
from voleveler.common.utils import is_finite, robust_median


DEFAULT_LOW_TILT_DB = -11.0
DEFAULT_HIGH_TILT_DB = -13.0
DEFAULT_LRA = 6.0


@dataclass(frozen=True)
class BatchReference:
    low_tilt: float
    high_tilt: float
    lra: float

    def as_dict(self) -> dict:
        return {"low_tilt": self.low_tilt, "high_tilt": self.high_tilt, "lra": self.lra}


def build_batch_reference(analyses: Iterable[SignalMetrics]) -> Optional[BatchReference]:
    """Outlier-trimmed median tone/dynamics target across a batch.

    Only files with the needed measurements contribute to each field. Returns
    None when no file contributed anything; a field with no contributors
    falls back to its default.
    """
    low_tilts: List[float] = []
    high_tilts: List[float] = []
    lras: List[float] = []

    for m in analyses:
        if is_finite(m.low_tilt):
            low_tilts.append(m.low_tilt)  # type: ignore[arg-type]
        if is_finite(m.high_tilt):
            high_tilts.append(m.high_tilt)  # type: ignore[arg-type]
        if is_finite(m.input_lra):
            lras.append(m.input_lra)  # type: ignore[arg-type]

    low = robust_median(low_tilts)
    high = robust_median(high_tilts)
    lra = robust_median(lras)
    if low is None and high is None and lra is None:
        return None

    return BatchReference(
        low_tilt=DEFAULT_LOW_TILT_DB if low is None else low,
        high_tilt=DEFAULT_HIGH_TILT_DB if high is None else high,
        lra=DEFAULT_LRA if lra is None else lra,
    )
