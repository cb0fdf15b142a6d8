"""Execution of the shell scripts declared in mx-tester.yml."""

import enum
import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, Mapping

from rich.markup import escape

from mxtester.errors import TesterError
from mxtester.models import Script


class ScriptEnv(str, enum.Enum):
    """Environment variables passed to every script."""

    # Where a given module should be copied. `build` scripts only.
    MODULE_DIR = "MX_TEST_MODULE_DIR"
    # Where modules are placed, in subdirectories.
    SYNAPSE_DIR = "MX_TEST_SYNAPSE_DIR"
    # A temporary directory where scripts can store data.
    SCRIPT_TMPDIR = "MX_TEST_SCRIPT_TMPDIR"
    # The directory from which the test was launched.
    CWD = "MX_TEST_CWD"
    # Defined only if workers are enabled.
    WORKERS_ENABLED = "MX_TEST_WORKERS_ENABLED"
    NETWORK_NAME = "MX_TEST_NETWORK_NAME"
    SETUP_CONTAINER_NAME = "MX_TEST_SETUP_CONTAINER_NAME"
    UP_RUN_DOWN_CONTAINER_NAME = "MX_TEST_UP_RUN_DOWN_CONTAINER_NAME"


class ScriptRunner:
    """Runs scripts line by line, capturing output in `<stage>.out` / `<stage>.log`."""

    def __init__(self, logger, console, log_stream_service, subprocess_module=subprocess):
        self.logger = logger
        self.console = console
        self.log_stream_service = log_stream_service
        self.subprocess = subprocess_module

    def run(self, script: Script, stage: str, log_dir: Path, env: Mapping[str, str]):
        log_dir = Path(log_dir)
        out_path = log_dir / f"{stage}.out"
        err_path = log_dir / f"{stage}.log"
        self.logger.debug("Running with environment variables %s", dict(env))
        self.console.print(
            f"[blue]** running {stage} script. See stdout and stderr captures in {log_dir / stage}[/blue]"
        )
        os.makedirs(log_dir, exist_ok=True)
        for path in (out_path, err_path):
            if path.exists():
                path.unlink()

        full_env: Dict[str, str] = dict(os.environ)
        full_env.update(env)

        for line in script.lines:
            self.console.print(f"[dim]*** {escape(line)}[/dim]")
            self._run_line(line, stage, out_path, err_path, full_env)

        self.console.print(f"[green]** running {stage} script success[/green]")

    def _run_line(self, line: str, stage: str, out_path: Path, err_path: Path, env: Dict[str, str]):
        try:
            process = self.subprocess.Popen(
                line,
                shell=True,
                env=env,
                stdin=self.subprocess.DEVNULL,
                stdout=self.subprocess.PIPE,
                stderr=self.subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise TesterError(f"Could not spawn process for `{line}`: {exc}") from exc

        threads = self.log_stream_service.stream_process(
            process, stage, out_path, err_path, level=logging.INFO
        )
        returncode = process.wait()
        self.log_stream_service.join(threads)

        if returncode != 0:
            raise TesterError(f"Error within line {line}: `{stage}` exited with status {returncode}")
