"""CLI utilities for finding and checking the meta-ralph entry script."""

import os
from pathlib import Path
from typing import Optional

SCRIPT_NAME = "meta-ralph.sh"


def find_meta_ralph(configured: Optional[Path] = None) -> Optional[str]:
    """Find the meta-ralph.sh script.

    Checks the following locations in order:
    1. The configured path (Config.script_path)
    2. META_RALPH_PATH environment variable
    3. ./meta-ralph.sh
    4. ../meta-ralph.sh

    Returns:
        Path to meta-ralph.sh or None if not found.
    """
    candidates: list[Path] = []
    if configured:
        candidates.append(Path(configured).expanduser())

    env_path = os.environ.get("META_RALPH_PATH")
    if env_path:
        candidates.append(Path(env_path).expanduser())

    candidates.append(Path.cwd() / SCRIPT_NAME)
    candidates.append(Path.cwd().parent / SCRIPT_NAME)

    for candidate in candidates:
        if candidate.is_file():
            return str(candidate.resolve())

    return None


def check_meta_ralph_available(configured: Optional[Path] = None) -> tuple[bool, str]:
    """Check if the meta-ralph script is available.

    Returns:
        Tuple of (is_available, message).
    """
    path = find_meta_ralph(configured)
    if path:
        return True, f"meta-ralph found at: {path}"
    else:
        return False, (
            f"{SCRIPT_NAME} not found. "
            "Set META_RALPH_PATH or script_path in ralph.yaml."
        )
