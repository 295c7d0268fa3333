"""Per-run log channel — mirrors one run's agent output into its own file."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import IO, Optional

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class RunLog:
    """Append-only log file for a single test run."""

    def __init__(self, log_dir: Path, test_id: str, test_name: str = ""):
        self.log_dir = log_dir
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.test_name = test_name or test_id
        self.path = log_dir / f"{_UNSAFE_CHARS.sub('_', test_id)}.log"
        self._file: Optional[IO[str]] = open(self.path, "w", encoding="utf-8")

    @property
    def closed(self) -> bool:
        return self._file is None

    def write(self, text: str) -> None:
        if self._file is None:
            return
        try:
            self._file.write(text)
            self._file.flush()
        except OSError as e:
            logger.warning("Writing run log %s failed: %s", self.path, e)

    def write_line(self, line: str) -> None:
        self.write(line + "\n")

    def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        if self._file is None:
            return
        self.write_line("\nTest execution ended - channel closing.")
        try:
            self._file.close()
        finally:
            self._file = None
