import pytest

from mxtester.errors import TesterError
from mxtester.services.filesystem import FileSystemService


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


def _service():
    return FileSystemService(logger=DummyLogger(), console=DummyConsole())


def test_cleanup_and_recreate_directories(tmp_path):
    root = tmp_path / "demo"
    (root / "old").mkdir(parents=True)
    service = _service()

    service.cleanup_dir(root)
    service.ensure_dirs([root / "synapse" / "data", root / "logs" / "docker"])

    assert not (root / "old").exists()
    assert (root / "synapse" / "data").is_dir()
    assert (root / "logs" / "docker").is_dir()


def test_remove_file_ignores_missing_file(tmp_path):
    service = _service()
    path = tmp_path / "homeserver.yaml"
    path.write_text("x", encoding="utf-8")

    service.remove_file(path)
    service.remove_file(path)

    assert not path.exists()


def test_copy_tree_merges_into_existing_directory(tmp_path):
    source = tmp_path / "resources"
    (source / "conf").mkdir(parents=True)
    (source / "workers_start.py").write_text("#!/usr/bin/env python\n", encoding="utf-8")
    destination = tmp_path / "synapse"
    destination.mkdir()
    (destination / "Dockerfile").write_text("", encoding="utf-8")

    _service().copy_tree(source, destination)

    assert (destination / "workers_start.py").exists()
    assert (destination / "conf").is_dir()
    assert (destination / "Dockerfile").exists()


def test_copy_tree_reports_missing_source(tmp_path):
    with pytest.raises(TesterError, match="Failed to copy"):
        _service().copy_tree(tmp_path / "missing", tmp_path / "destination")
