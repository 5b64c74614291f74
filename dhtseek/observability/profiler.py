"""CPU profiling for a whole session run."""

from __future__ import annotations

import contextlib
import cProfile
import logging
from pathlib import Path
from typing import Iterator

from dhtseek.utils.exceptions import ProfilingError

logger = logging.getLogger(__name__)


class CPUProfiler:
    """cProfile-based profiler writing ``pstats`` data to a file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.profiler = cProfile.Profile()
        self.enabled = False

    def prepare(self) -> None:
        """Create the output file up front so a bad path fails early.

        Raises:
            ProfilingError: if the file cannot be created.

        """
        try:
            self.path.touch()
        except OSError as e:
            msg = f"Cannot create CPU profile file {self.path}: {e}"
            raise ProfilingError(msg, {"path": str(self.path)}) from e

    def start(self) -> None:
        """Start cProfile profiling."""
        self.profiler.enable()
        self.enabled = True

    def stop(self) -> None:
        """Stop profiling and write the collected stats."""
        if self.enabled:
            self.profiler.disable()
            self.enabled = False
        try:
            self.profiler.dump_stats(str(self.path))
        except OSError:
            logger.exception("Failed to write CPU profile to %s", self.path)
            return
        logger.info("CPU profile written to %s", self.path)


@contextlib.contextmanager
def cpu_profile(path: str | Path | None) -> Iterator[CPUProfiler | None]:
    """Profile the enclosed block and write the stats to ``path`` on exit.

    With no path this does nothing and yields None. The stats are written on
    every exit, including exceptions and ``KeyboardInterrupt``.
    """
    if not path:
        yield None
        return

    profiler = CPUProfiler(path)
    profiler.prepare()
    profiler.start()
    try:
        yield profiler
    finally:
        profiler.stop()
