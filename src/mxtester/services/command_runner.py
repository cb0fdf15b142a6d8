"""Subprocess execution service for mx-tester."""

import subprocess
from typing import IO, List, Mapping, Optional, Union

from mxtester.errors import TesterError


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = True,
        timeout: Optional[float] = None,
        input_data: Optional[Union[str, bytes]] = None,
        stdin: Optional[IO] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout

        try:
            result = subprocess.run(
                cmd,
                text=not isinstance(input_data, bytes),
                capture_output=capture_output,
                timeout=effective_timeout,
                input=input_data,
                stdin=stdin,
                env=dict(env) if env is not None else None,
            )
        except FileNotFoundError as exc:
            raise TesterError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise TesterError(f"Command timed out after {effective_timeout}s: {cmd_str}") from exc
        except OSError as exc:
            raise TesterError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", _as_text(result.stdout).strip())

        if result.returncode == 0 or not check:
            return result

        stderr = _as_text(result.stderr or "").strip() if capture_output else ""
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr:
            message = f"{message}\n{stderr}"
        raise TesterError(message)


def _as_text(value: Union[str, bytes]) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
