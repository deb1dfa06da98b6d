from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from voleveler.common.utils import DB_FLOOR


FATAL_LOG_RE = re.compile(r"memory access out of bounds|runtimeerror", re.IGNORECASE)
IMPORTANT_LOG_RE = re.compile(r"error|failed|invalid|aborted|out of bounds", re.IGNORECASE)

# Signatures of a filter graph the engine build cannot construct (missing filter,
# unknown option, graph configuration rejected).
STAGE_INCOMPATIBLE_RE = re.compile(
    r"no such filter"
    r"|error initializing filter"
    r"|error (?:re)?initializing complex filters?"
    r"|error (?:configuring|reinitializing) filters?"
    r"|option '?[\w-]+'? not found"
    r"|failed to configure (?:input|output) pad",
    re.IGNORECASE,
)

_RMS_RE = re.compile(r"RMS level dB:\s*(-?(?:\d+(?:\.\d+)?|inf))", re.IGNORECASE)
_DURATION_RE = re.compile(r"Duration:\s*(\d{2}):(\d{2}):(\d{2}(?:\.\d+)?)", re.IGNORECASE)
_JSON_BLOCK_RE = re.compile(r"\{[\s\S]*?\}")

MAX_REASON_CHARS = 180


def parse_loudnorm_json(text: str) -> Optional[Dict[str, Any]]:
    """Return the last JSON object printed by loudnorm (print_format=json)."""
    matches = _JSON_BLOCK_RE.findall(text or "")
    if not matches:
        return None
    try:
        data = json.loads(matches[-1])
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def parse_rms_from_astats(text: str) -> Optional[float]:
    """Last 'RMS level dB' value from astats output; -inf maps to the dB floor."""
    matches = _RMS_RE.findall(text or "")
    if not matches:
        return None
    raw = matches[-1].strip().lower()
    if raw in ("-inf", "inf"):
        return DB_FLOOR
    try:
        return float(raw)
    except ValueError:
        return None


def parse_duration_seconds(text: str) -> Optional[float]:
    m = _DURATION_RE.search(text or "")
    if not m:
        return None
    try:
        hours = int(m.group(1))
        minutes = int(m.group(2))
        seconds = float(m.group(3))
    except ValueError:
        return None
    return hours * 3600 + minutes * 60 + seconds


def log_lines(text: str) -> List[str]:
    return [ln.strip() for ln in (text or "").splitlines() if ln.strip()]


def summarize_failure_log(text: str, max_lines: int = 3) -> str:
    lines = log_lines(text)
    important = [ln for ln in lines if IMPORTANT_LOG_RE.search(ln)]
    selected = (important if important else lines)[-max_lines:]
    return " | ".join(selected)


def summarize_failure_reason(error: BaseException | str) -> str:
    compact = re.sub(r"\s+", " ", str(error)).strip()
    if len(compact) <= MAX_REASON_CHARS:
        return compact
    return compact[: MAX_REASON_CHARS - 3] + "..."


def has_fatal_signal(text: str) -> bool:
    return bool(FATAL_LOG_RE.search(text or ""))


def looks_like_stage_incompatibility(text: str) -> bool:
    return bool(STAGE_INCOMPATIBLE_RE.search(text or ""))


def base_args(threads: int, *, filter_threads: bool = True) -> List[str]:
    args = ["-hide_banner", "-nostdin", "-threads", str(threads)]
    if filter_threads:
        args += ["-filter_threads", str(threads)]
    return args


def pcm_output_args(output_name: str) -> List[str]:
    return ["-ar", "48000", "-ac", "1", "-c:a", "pcm_f32le", output_name]
