import sys

import pytest

from mxtester.errors import TesterError
from mxtester.services.command_runner import CommandRunner


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


def test_command_runner_raises_with_stderr():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(TesterError, match="boom"):
        runner.run(
            [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(1)"],
            check=True,
            capture_output=True,
        )


def test_command_runner_returns_when_check_disabled():
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [sys.executable, "-c", "import sys; sys.exit(1)"],
        check=False,
        capture_output=True,
    )

    assert result.returncode == 1


def test_command_runner_feeds_input_data():
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [sys.executable, "-c", "import sys; sys.stdout.write(sys.stdin.read().upper())"],
        input_data="secret",
    )

    assert result.stdout == "SECRET"


def test_command_runner_reports_missing_binary():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(TesterError, match="Required command not found"):
        runner.run(["definitely-not-a-real-binary-mx-tester"])


def test_command_runner_timeout_raises_tester_error():
    runner = CommandRunner(logger=DummyLogger(), default_timeout=0.5)

    with pytest.raises(TesterError, match="timed out"):
        runner.run([sys.executable, "-c", "import time; time.sleep(5)"])
