"""Blocking subprocess execution with captured output."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

__all__ = ["run_command", "Runner"]

Runner = Callable[..., subprocess.CompletedProcess]


def run_command(
    cmd: Sequence,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> subprocess.CompletedProcess:
    """Run ``cmd`` to completion, merging stderr into the captured stdout.

    No timeout is applied. If the caller is interrupted,
    ``subprocess.run`` kills the child before re-raising.
    """
    argv = [str(arg) for arg in cmd]
    logger.debug("running: %s", " ".join(argv))
    result = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        env=dict(env) if env is not None else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        check=False,
    )
    result.stdout = result.stdout.decode(errors="replace") if result.stdout else ""
    return result
