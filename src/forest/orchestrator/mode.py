"""Execution mode detection.

A clock attached to an interactive terminal runs every periodic job. When
stdin is not a TTY the process is embedded in a host (typically an MCP
client driving the tool server over stdio) and background timers compete
with the host's request/response loop.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable, Optional, TextIO

from .models import ExecutionMode

logger = logging.getLogger(__name__)

ModeDetector = Callable[[], ExecutionMode]


def detect_execution_mode(stream: Optional[TextIO] = None) -> ExecutionMode:
    """Inspect ``stream`` (stdin by default) for an attached terminal.

    Any failure to query the stream resolves to embedded mode.
    """
    target = stream if stream is not None else sys.stdin
    if target is None:
        return ExecutionMode.EMBEDDED
    try:
        interactive = target.isatty()
    except (AttributeError, ValueError, OSError) as exc:
        logger.debug(f"TTY check unavailable, assuming embedded mode: {exc}")
        return ExecutionMode.EMBEDDED
    return ExecutionMode.INTERACTIVE if interactive else ExecutionMode.EMBEDDED


def fixed_mode(mode: ExecutionMode) -> ModeDetector:
    """Detector that always reports ``mode``."""

    def _detect() -> ExecutionMode:
        return mode

    return _detect
