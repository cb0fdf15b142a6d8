"""Build-context archive helpers for mx-tester."""

import os
import tarfile
from pathlib import Path

from mxtester.errors import TesterError


class ArchiveService:
    """Packs a directory into the tar stream fed to `docker build -`."""

    def is_within_dir(self, base_dir: Path, candidate: Path) -> bool:
        try:
            return os.path.commonpath([str(base_dir), str(candidate)]) == str(base_dir)
        except ValueError:
            return False

    def create_build_context(self, source_dir: Path, archive_path: Path) -> Path:
        source = Path(source_dir).resolve()
        archive = Path(archive_path).resolve()
        if not source.is_dir():
            raise TesterError(f"Cannot create build context: {source} is not a directory.")
        if self.is_within_dir(source, archive):
            raise TesterError(
                f"Build context archive {archive} must not be written inside {source}."
            )

        archive.parent.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(archive, "w") as tar:
                tar.add(str(source), arcname=".", recursive=True)
        except (OSError, tarfile.TarError) as exc:
            raise TesterError(f"Failed to create build context {archive}: {exc}") from exc
        return archive
