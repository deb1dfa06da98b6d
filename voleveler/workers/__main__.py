from __future__ import annotations

import argparse
import asyncio
import sys
import uuid
from pathlib import Path
from typing import List

from voleveler.common.config import ConfigError, load_settings
from voleveler.common.env import Env
from voleveler.common.logging_setup import get_logger, setup_logging
from voleveler.common.profile import load_profile_env
from voleveler.workers.batch import STATUS_DONE, STATUS_FAILED, BatchRunner, write_manifest


EXIT_CODES = {STATUS_DONE: 0, STATUS_FAILED: 2}


def collect_inputs(paths: List[str]) -> List[Path]:
    """Expand directories; keep .wav files only, in the order given."""
    out: List[Path] = []
    for raw in paths:
        p = Path(raw)
        candidates = sorted(p.iterdir()) if p.is_dir() else [p]
        for c in candidates:
            if c.is_file() and c.suffix.lower() == ".wav":
                out.append(c)
    return out


def main(argv: List[str] | None = None) -> int:
    load_profile_env()
    env = Env.load()

    parser = argparse.ArgumentParser(prog="voleveler")
    parser.add_argument("inputs", nargs="+", help="wav files or directories")
    parser.add_argument("--settings", default=env.settings_path)
    parser.add_argument("--batch-id", default="")
    args = parser.parse_args(argv)

    setup_logging(env, service="leveler")
    log = get_logger("workers")

    try:
        settings = load_settings(args.settings)
    except (ConfigError, OSError) as e:
        log.error("settings load failed path=%s err=%s", args.settings, e)
        return 2

    sources = collect_inputs(args.inputs)
    if not sources:
        log.error("no .wav inputs found")
        return 2

    batch_id = args.batch_id or uuid.uuid4().hex[:8]
    runner = BatchRunner(env=env, settings=settings, batch_id=batch_id)
    result = asyncio.run(runner.run(sources))
    manifest = write_manifest(env, result)

    log.info("batch=%s status=%s outputs=%d failures=%d manifest=%s",
             batch_id, result.status, len(result.outputs), len(result.failures), manifest)
    for f in result.failures:
        log.warning("failed file=%s reason=%s", f.file_name, f.reason)
    return EXIT_CODES.get(result.status, 1)


if __name__ == "__main__":
    sys.exit(main())
