from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from voleveler.adaptive.presets import (
    BREATH_COMPAND,
    LEVELER_PRESETS,
    LOUDNESS_PRESETS,
    SMART_MATCH_PRESETS,
    LevelerPreset,
    LoudnessPreset,
    SmartMatchPreset,
)


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class LevelerSettings:
    loudness_target: str = "atsc_a85"
    keep_mix_ready: bool = True
    smart_match: str = "gentle"
    eq_cleanup: bool = True
    breath_control: str = "light"
    leveler: str = "balanced"
    room_cleanup: bool = True
    scene_blend: bool = True
    soften_harshness: bool = True
    noise_guard: bool = True
    floor_guard: bool = True

    @property
    def loudness_preset(self) -> Optional[LoudnessPreset]:
        return LOUDNESS_PRESETS[self.loudness_target]

    @property
    def leveler_preset(self) -> LevelerPreset:
        return LEVELER_PRESETS[self.leveler]

    @property
    def smart_match_preset(self) -> SmartMatchPreset:
        return SMART_MATCH_PRESETS[self.smart_match]

    @property
    def breath_filter(self) -> Optional[str]:
        return BREATH_COMPAND[self.breath_control]

    @property
    def smart_match_enabled(self) -> bool:
        p = self.smart_match_preset
        return p.tone > 0 or p.dynamics > 0

    @property
    def needs_analysis(self) -> bool:
        return self.smart_match_enabled or self.room_cleanup or self.scene_blend


_CHOICES: Dict[str, Dict[str, Any]] = {
    "loudness_target": LOUDNESS_PRESETS,
    "smart_match": SMART_MATCH_PRESETS,
    "breath_control": BREATH_COMPAND,
    "leveler": LEVELER_PRESETS,
}


def _read_yaml(path: Path) -> Dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def settings_from_dict(raw: Dict[str, Any]) -> LevelerSettings:
    known = {f.name: f for f in fields(LevelerSettings)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ConfigError(f"unknown settings: {', '.join(unknown)}")

    values: Dict[str, Any] = {}
    for name, value in raw.items():
        default = known[name].default
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"{name} must be true/false, got {value!r}")
            values[name] = value
            continue
        key = str(value).strip().lower()
        if key not in _CHOICES[name]:
            raise ConfigError(f"{name}: unknown preset {value!r} (choose from {', '.join(_CHOICES[name])})")
        values[name] = key
    return LevelerSettings(**values)


def load_settings(cfg_path: str) -> LevelerSettings:
    data = _read_yaml(Path(cfg_path))
    return settings_from_dict(data.get("settings", {}) or {})


def dump_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2)
