from voleveler.analysis.metrics import (
    EnvelopeMetrics,
    SignalMetrics,
    compute_envelope_metrics,
    samples_from_f32le,
)
from voleveler.analysis.reference import (
    BatchReference,
    build_batch_reference,
)
from voleveler.analysis.analyze import analyze_file

__all__ = [
    "EnvelopeMetrics",
    "SignalMetrics",
    "compute_envelope_metrics",
    "samples_from_f32le",
    "BatchReference",
    "build_batch_reference",
    "analyze_file",
]
