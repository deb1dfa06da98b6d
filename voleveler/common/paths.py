from __future__ import annotations

from pathlib import Path
from voleveler.common.env import Env


def storage_root(env: Env) -> Path:
    return Path(env.storage_root).resolve()


def engine_workdir(env: Env, batch_id: str, generation: int) -> Path:
    """Private working directory of one engine instance (its virtual file system)."""
    return storage_root(env) / "engine" / f"batch_{batch_id}" / f"gen_{generation}"


def outbox_dir(env: Env, batch_id: str) -> Path:
    return storage_root(env) / "outbox" / f"batch_{batch_id}"


def logs_path(env: Env, batch_id: str) -> Path:
    return storage_root(env) / "logs" / f"batch_{batch_id}.log"


def manifest_path(env: Env, batch_id: str) -> Path:
    return outbox_dir(env, batch_id) / "manifest.json"
