"""Utility helpers for the git runner."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_PREFIX",
    "GIT_COMMON_DIR",
}

_FIXED_VARS = {
    # stderr is matched against English messages
    "LC_ALL": "C",
    "GIT_TERMINAL_PROMPT": "0",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return an environment that keeps git bound to the ``cwd`` it is run in.

    Hooks and wrapper scripts frequently export ``GIT_DIR`` and friends, which
    would silently redirect every worktree command at another repository.
    """

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    env.update(_FIXED_VARS)
    if additional:
        env.update(additional)
    return env
