"""
Capture stage logs to disk and stream them to the logger.
"""

import logging
import os
from typing import List, Optional

from controller.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

EXCERPT_HEAD_LINES = 20
EXCERPT_TAIL_LINES = 30

def create_log_excerpt(full_log: str, head: int = EXCERPT_HEAD_LINES, tail: int = EXCERPT_TAIL_LINES) -> str:
    """Keep the first and last lines of a long log."""
    lines = full_log.splitlines()
    if len(lines) <= head + tail:
        return full_log

    omitted = len(lines) - head - tail
    return "\n".join(lines[:head] + [f"... ({omitted} lines omitted) ..."] + lines[-tail:])

class StageLog:
    """
    Log capture for one stage of one run.

    Lines are kept in memory for excerpts and appended to
    <log_dir>/<run_id>/<stage>.log, whose path is the stage's log reference.
    """

    def __init__(self, run_id: str, stage: str, log_dir: Optional[str] = None):
        self.run_id = run_id
        self.stage = stage
        directory = os.path.join(log_dir or settings.log_dir, run_id)
        os.makedirs(directory, exist_ok=True)
        self.path = os.path.join(directory, f"{stage}.log")
        self._lines: List[str] = []
        self._file = open(self.path, "a", encoding="utf-8")

    def write(self, text: str):
        for line in text.splitlines():
            self._lines.append(line)
            logger.debug(f"[{self.run_id}/{self.stage}] {line}")
            # A stage abandoned on timeout may still be writing after close.
            if not self._file.closed:
                self._file.write(line + "\n")
        if not self._file.closed:
            self._file.flush()

    def text(self) -> str:
        return "\n".join(self._lines)

    def excerpt(self, since: int = 0) -> str:
        return create_log_excerpt("\n".join(self._lines[since:]))

    def mark(self) -> int:
        """Current line count, for excerpts of a single phase."""
        return len(self._lines)

    def close(self):
        if not self._file.closed:
            self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
