from __future__ import annotations

import argparse
import shutil
import subprocess
from pathlib import Path

from voleveler.common.config import ConfigError, load_settings
from voleveler.common.env import Env
from voleveler.common.profile import load_profile_env


REQUIRED_FILTERS = (
    "loudnorm",
    "astats",
    "dynaudnorm",
    "acompressor",
    "alimiter",
    "agate",
    "compand",
    "equalizer",
    "afftdn",
    "adelay",
    "amix",
    "asplit",
)


def _ok(msg: str) -> None:
    print(f"[OK] {msg}")


def _warn(msg: str) -> None:
    print(f"[WARN] {msg}")


def _fail(msg: str) -> None:
    print(f"[FAIL] {msg}")
    raise SystemExit(2)


def missing_filters(filters_output: str) -> list[str]:
    """Required filter names absent from `ffmpeg -filters` output."""
    available = set()
    for line in filters_output.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            available.add(parts[1])
    return [f for f in REQUIRED_FILTERS if f not in available]


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--profile", default="local")
    args = parser.parse_args()

    loaded = load_profile_env(args.profile)
    if loaded:
        _ok(f"Loaded env file: {loaded}")
    else:
        _warn("No env file loaded. Create deploy/env.<profile> (or deploy/env).")

    env = Env.load()

    ffmpeg = shutil.which(env.ffmpeg_bin)
    if not ffmpeg:
        _fail(f"ffmpeg not found ({env.ffmpeg_bin}). Install ffmpeg or set VOLEVELER_FFMPEG_BIN.")
    _ok(f"ffmpeg found: {ffmpeg}")

    p = subprocess.run([ffmpeg, "-hide_banner", "-filters"], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    missing = missing_filters(p.stdout)
    if missing:
        _warn(f"ffmpeg build lacks filters: {', '.join(missing)} (renders will fall back)")
    else:
        _ok("All required filters available")

    try:
        settings = load_settings(env.settings_path)
    except (ConfigError, OSError) as e:
        _fail(f"Settings invalid ({env.settings_path}): {e}")
    _ok(f"Settings OK: leveler={settings.leveler} smart_match={settings.smart_match} loudness={settings.loudness_target}")

    storage = Path(env.storage_root)
    for sub in ["engine", "outbox", "logs"]:
        (storage / sub).mkdir(parents=True, exist_ok=True)
    _ok(f"Storage OK: {storage.resolve()}")

    _ok("Doctor finished.")


if __name__ == "__main__":
    main()
