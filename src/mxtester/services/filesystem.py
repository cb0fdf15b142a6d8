"""Filesystem helpers for mx-tester."""

import logging
import os
import shutil
from pathlib import Path
from typing import Iterable

from rich.console import Console

from mxtester.errors import TesterError


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def cleanup_dir(self, path: Path):
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except Exception as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)

    def ensure_dirs(self, paths: Iterable[Path]):
        for path in paths:
            try:
                os.makedirs(path, exist_ok=True)
            except OSError as exc:
                raise TesterError(f"Could not create directory {path}: {exc}") from exc

    def remove_file(self, path: Path):
        """Remove `path`, if it exists."""
        try:
            Path(path).unlink()
            self.logger.debug("Removed file: %s", path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise TesterError(f"Could not remove {path}: {exc}") from exc

    def copy_tree(self, source: Path, destination: Path):
        try:
            shutil.copytree(source, destination, dirs_exist_ok=True)
        except (OSError, shutil.Error) as exc:
            raise TesterError(f"Failed to copy {source} to {destination}: {exc}") from exc

    def write_text(self, path: Path, content: str):
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8", newline="\n") as file_obj:
                file_obj.write(content)
        except OSError as exc:
            raise TesterError(f"Could not write {path}: {exc}") from exc
