import pytest

from mxtester.models import TestConfig
from mxtester.services.cleanup import Cleanup, disarm_all
from mxtester.services.docker_runtime import DockerOutcome, DockerResult


class DummyLogger:
    def __init__(self):
        self.warnings = []

    def warning(self, message, *args, **_kwargs):
        self.warnings.append(message % args if args else message)


class FakeDockerRuntime:
    def __init__(self):
        self.cleaned = []
        self.removed_networks = []

    def cleanup_containers(self, names):
        self.cleaned.extend(names)
        return [DockerResult(DockerOutcome.SUCCESS)]

    def remove_network(self, name):
        self.removed_networks.append(name)
        return DockerResult(DockerOutcome.ALREADY_ABSENT, "not found")


def _config(**kwargs):
    return TestConfig(name="demo", **kwargs)


def test_guard_tears_down_containers_when_block_fails():
    runtime = FakeDockerRuntime()
    logger = DummyLogger()

    with pytest.raises(RuntimeError, match="boom"):
        with Cleanup(_config(), runtime, logger):
            raise RuntimeError("boom")

    assert runtime.cleaned == ["mx-tester-synapse-setup-demo", "mx-tester-synapse-run-demo"]
    assert runtime.removed_networks == []
    assert "Auto-cleanup..." in logger.warnings
    assert "Auto-cleanup... DONE" in logger.warnings


def test_disarmed_guard_does_nothing():
    runtime = FakeDockerRuntime()

    with Cleanup(_config(), runtime, DummyLogger()) as guard:
        guard.cleanup_network(True)
        guard.disarm()

    assert runtime.cleaned == []
    assert runtime.removed_networks == []


def test_guard_removes_network_when_requested():
    runtime = FakeDockerRuntime()
    config = _config()

    with Cleanup(config, runtime, DummyLogger()) as guard:
        guard.cleanup_network(True)

    assert runtime.removed_networks == [config.network]


def test_guard_tears_down_at_most_once():
    runtime = FakeDockerRuntime()
    guard = Cleanup(_config(), runtime, DummyLogger())

    guard.close()
    guard.close()

    assert len(runtime.cleaned) == 2


def test_guard_never_raises_when_teardown_fails():
    class BrokenRuntime(FakeDockerRuntime):
        def remove_network(self, name):
            raise RuntimeError("daemon gone")

    logger = DummyLogger()
    guard = Cleanup(_config(), BrokenRuntime(), logger, cleanup_network=True)

    guard.close()

    assert any("daemon gone" in warning for warning in logger.warnings)


def test_for_config_respects_autoclean_setting():
    runtime = FakeDockerRuntime()

    assert Cleanup.for_config(_config(autoclean_on_error=False), runtime, DummyLogger()) is None
    assert isinstance(Cleanup.for_config(_config(), runtime, DummyLogger()), Cleanup)


def test_disarm_all_continues_past_failures():
    class ExplodingGuard:
        def disarm(self):
            raise RuntimeError("first")

    runtime = FakeDockerRuntime()
    guard = Cleanup(_config(), runtime, DummyLogger())

    with pytest.raises(RuntimeError, match="first"):
        disarm_all([ExplodingGuard(), None, guard])

    assert guard.is_armed is False
