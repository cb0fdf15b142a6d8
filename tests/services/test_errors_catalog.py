import pytest

from mxtester.errors import TeardownError, TesterError
from mxtester.errors_catalog import actionable_error


def test_actionable_error_formats_message_with_suggested_action():
    message = actionable_error("image_build_failed", tag="mx-tester-synapse-demo", log_path="/tmp/build.log")

    assert "Building image `mx-tester-synapse-demo` failed." in message
    assert "Suggested action:" in message
    assert "/tmp/build.log" in message


def test_actionable_error_rejects_unknown_code():
    with pytest.raises(KeyError, match="Unknown error catalog key"):
        actionable_error("no_such_error")


def test_teardown_error_lists_every_error():
    error = TeardownError([TesterError("first"), TesterError("second")])

    assert isinstance(error, TesterError)
    assert len(error.errors) == 2
    assert "2 error(s)" in str(error)
    assert "- first" in str(error)
    assert "- second" in str(error)
