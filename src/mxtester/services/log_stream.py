"""Concurrent log draining for containers and scripts.

Every stream is drained by its own daemon thread, so that a blocked reader
on one pipe never stalls the other pipe or the orchestrator. Each line is
appended to a file, flushed immediately, and mirrored to the logger.
"""

import logging
import os
import threading
from pathlib import Path
from typing import IO, List, Optional, Union


class LogStreamService:
    """Spawns and tracks the threads that pump output into log files."""

    def __init__(self, logger):
        self.logger = logger

    def spawn(
        self,
        name: str,
        stream: IO,
        dest_path: Union[str, Path],
        level: int = logging.DEBUG,
    ) -> threading.Thread:
        thread = threading.Thread(
            target=self._pump,
            args=(name, stream, Path(dest_path), level),
            name=f"mx-tester-log-{name}",
            daemon=True,
        )
        thread.start()
        return thread

    def stream_process(
        self,
        process,
        name: str,
        out_path: Union[str, Path],
        err_path: Optional[Union[str, Path]] = None,
        level: int = logging.DEBUG,
    ) -> List[threading.Thread]:
        """Drain the pipes of `process`. Stderr goes to `out_path` if `err_path` is unset."""
        threads = []
        if process.stdout is not None:
            threads.append(self.spawn(name, process.stdout, out_path, level))
        if process.stderr is not None:
            threads.append(self.spawn(name, process.stderr, err_path or out_path, level))
        return threads

    @staticmethod
    def join(threads: List[threading.Thread], timeout: Optional[float] = None):
        for thread in threads:
            thread.join(timeout)

    def _pump(self, name: str, stream: IO, dest_path: Path, level: int):
        try:
            os.makedirs(dest_path.parent, exist_ok=True)
            file_obj = open(dest_path, "a", encoding="utf-8")
        except OSError as exc:
            self.logger.error("%s: could not open log file %s: %s", name, dest_path, exc)
            self._drain(stream)
            return

        with file_obj:
            try:
                while True:
                    raw_line = stream.readline()
                    if not raw_line:
                        break
                    line = _decode(raw_line).rstrip("\r\n")
                    self.logger.log(level, "%s: %s", name, line)
                    file_obj.write(line + "\n")
                    file_obj.flush()
            except (OSError, ValueError) as exc:
                self.logger.error("%s: %s", name, exc)
                try:
                    file_obj.write(f"ERROR: {exc}\n")
                    file_obj.flush()
                except (OSError, ValueError):
                    pass
            finally:
                try:
                    stream.close()
                except (OSError, ValueError):
                    pass

    @staticmethod
    def _drain(stream: IO):
        try:
            while stream.readline():
                pass
        except (OSError, ValueError):
            pass


def _decode(line: Union[str, bytes]) -> str:
    if isinstance(line, bytes):
        return line.decode("utf-8", errors="replace")
    return line
