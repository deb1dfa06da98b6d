from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv


DEFAULT_PROFILE = "local"


def profile_env_candidates(profile: Optional[str] = None, *, deploy_dir: Path = Path("deploy")) -> List[Path]:
    name = (profile if profile is not None else os.environ.get("VOLEVELER_PROFILE", "")).strip() or DEFAULT_PROFILE
    return [deploy_dir / f"env.{name}", deploy_dir / "env"]


def load_profile_env(profile: Optional[str] = None) -> str:
    """Load the first existing deploy/env.<profile>, then deploy/env.

    Variables already set in the process environment win. Returns the loaded
    path, or "" when neither file exists.
    """
    for cand in profile_env_candidates(profile):
        if cand.exists():
            load_dotenv(str(cand), override=False)
            return str(cand)
    return ""
