"""Docker runtime services for mx-tester.

All daemon access goes through the `docker` CLI. Calls whose failure may
simply mean "already gone" return a `DockerResult` so that callers match on
`DockerOutcome` instead of parsing error messages themselves.
"""

import enum
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from mxtester.errors import TesterError
from mxtester.errors_catalog import actionable_error
from mxtester.models import Credentials, PortMapping


class DockerOutcome(enum.Enum):
    SUCCESS = "success"
    ALREADY_ABSENT = "already_absent"
    FAILURE = "failure"


@dataclass(frozen=True)
class DockerResult:
    outcome: DockerOutcome
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is not DockerOutcome.FAILURE


@dataclass
class ContainerSpec:
    name: str
    image: str
    command: List[str]
    env: List[str] = field(default_factory=list)
    hostname: Optional[str] = None
    ports: List[PortMapping] = field(default_factory=list)
    binds: List[str] = field(default_factory=list)
    network: Optional[str] = None
    user: Optional[str] = None
    extra_hosts: List[str] = field(default_factory=list)
    restart_policy: Optional[str] = None
    memory_reservation: Optional[str] = None
    memory_swap: Optional[str] = None
    log_driver: Optional[str] = "json-file"

    def to_create_args(self) -> List[str]:
        args = ["docker", "create", "--name", self.name]
        if self.hostname:
            args += ["--hostname", self.hostname]
        for item in self.env:
            args += ["--env", item]
        for mapping in self.ports:
            args += ["--publish", f"{mapping.host}:{mapping.guest}/tcp"]
        for bind in self.binds:
            args += ["--volume", bind]
        for host in self.extra_hosts:
            args += ["--add-host", host]
        if self.network:
            args += ["--network", self.network]
        if self.user:
            args += ["--user", self.user]
        if self.restart_policy:
            args += ["--restart", self.restart_policy]
        if self.memory_reservation:
            args += ["--memory-reservation", self.memory_reservation]
        if self.memory_swap:
            args += ["--memory-swap", self.memory_swap]
        if self.log_driver:
            args += ["--log-driver", self.log_driver]
        return args + [self.image] + list(self.command)


class DockerRuntimeService:
    """Wraps the Docker calls needed by the lifecycle phases."""

    ABSENT_PATTERNS = (
        re.compile(r"no such (container|network|image)", re.IGNORECASE),
        re.compile(r"network \S+ not found", re.IGNORECASE),
        re.compile(r"container \S+ is not running", re.IGNORECASE),
        re.compile(r"removal of container \S+ is already in progress", re.IGNORECASE),
    )

    def __init__(self, logger, command_runner, subprocess_module=subprocess, sleep=time.sleep):
        self.logger = logger
        self.command_runner = command_runner
        self.subprocess = subprocess_module
        self.sleep = sleep

    def _run(self, cmd: List[str], **kwargs) -> subprocess.CompletedProcess:
        return self.command_runner.run(cmd, check=False, capture_output=True, **kwargs)

    def classify(self, result: subprocess.CompletedProcess) -> DockerResult:
        stderr = (result.stderr or "").strip()
        if result.returncode == 0:
            return DockerResult(DockerOutcome.SUCCESS, (result.stdout or "").strip())
        if any(pattern.search(stderr) for pattern in self.ABSENT_PATTERNS):
            return DockerResult(DockerOutcome.ALREADY_ABSENT, stderr)
        return DockerResult(DockerOutcome.FAILURE, stderr or f"exit code {result.returncode}")

    def _checked(self, cmd: List[str], what: str, **kwargs) -> subprocess.CompletedProcess:
        result = self._run(cmd, **kwargs)
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
            if "cannot connect to the docker daemon" in detail.lower():
                raise TesterError(actionable_error("docker_unavailable", detail=detail))
            raise TesterError(f"{what}: {detail}")
        return result

    def check_daemon(self):
        result = self._run(["docker", "version", "--format", "{{.Server.Version}}"])
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
            raise TesterError(actionable_error("docker_unavailable", detail=detail))
        self.logger.debug("Docker daemon version %s", (result.stdout or "").strip())

    def _names(self, cmd: List[str], what: str) -> List[str]:
        result = self._checked(cmd, what)
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def network_exists(self, name: str) -> bool:
        # `name=` filters by substring, double-check.
        names = self._names(
            ["docker", "network", "ls", "--filter", f"name={name}", "--format", "{{.Name}}"],
            f"Could not list networks matching {name}",
        )
        return name in names

    def create_network(self, name: str):
        self._checked(
            ["docker", "network", "create", "--attachable", name],
            f"Could not create network {name}",
        )

    def remove_network(self, name: str) -> DockerResult:
        return self.classify(self._run(["docker", "network", "rm", name]))

    def container_running(self, name: str) -> bool:
        names = self._names(
            ["docker", "ps", "--filter", f"name={name}", "--format", "{{.Names}}"],
            f"Could not list containers matching {name}",
        )
        return name in names

    def container_exists(self, name: str) -> bool:
        names = self._names(
            ["docker", "ps", "--all", "--filter", f"name={name}", "--format", "{{.Names}}"],
            f"Could not list containers matching {name}",
        )
        return name in names

    def stop_container(self, name: str) -> DockerResult:
        return self.classify(self._run(["docker", "stop", name]))

    def remove_container(self, name: str) -> DockerResult:
        return self.classify(self._run(["docker", "rm", name]))

    def remove_image(self, tag: str) -> DockerResult:
        return self.classify(self._run(["docker", "rmi", tag]))

    def wait_container_removed(self, name: str, poll_interval: float = 1.0):
        while self.container_exists(name):
            self.logger.debug("Waiting until container %s is removed", name)
            self.sleep(poll_interval)

    def wait_container_stopped(self, name: str, poll_interval: float):
        while self.container_running(name):
            self.logger.debug("Waiting until container %s is down before relaunching it", name)
            self.sleep(poll_interval)

    def create_container(self, spec: ContainerSpec):
        self.logger.debug("Creating container %s", spec.name)
        result = self._checked(spec.to_create_args(), f"Failed to create container {spec.name}")
        for warning in (result.stderr or "").strip().splitlines():
            self.logger.warning("creating-container: %s", warning)

    def start_container(self, name: str):
        self._checked(["docker", "start", name], f"Failed to start container {name}")

    def start_attached(self, name: str):
        """Start `name` and return the process attached to its output."""
        return self._popen(["docker", "start", "--attach", name])

    def follow_logs(self, name: str, tail: str = "10"):
        return self._popen(["docker", "logs", "--follow", "--tail", tail, name])

    def spawn_stop_watcher(self, name: str) -> threading.Thread:
        """Log when `name` stops running, to find out when/why it stopped."""

        def watch():
            self.logger.debug("%s container started", name)
            try:
                process = self._popen(["docker", "wait", name])
                stdout, stderr = process.communicate()
            except TesterError as exc:
                self.logger.debug("Could not wait for %s: %s", name, exc)
                return
            self.logger.debug(
                "%s container is now down: %s", name, (stdout or stderr or "").strip()
            )

        thread = threading.Thread(target=watch, name=f"mx-tester-wait-{name}", daemon=True)
        thread.start()
        return thread

    def login(self, credentials: Credentials):
        if not credentials.serveraddress or not credentials.username:
            return
        self.logger.info("Logging into Docker registry %s", credentials.serveraddress)
        self._checked(
            [
                "docker",
                "login",
                credentials.serveraddress,
                "--username",
                credentials.username,
                "--password-stdin",
            ],
            f"Could not log into {credentials.serveraddress}",
            input_data=credentials.password or "",
        )

    def build_image(self, tag: str, context_tar: Path, log_path: Path, log_stream_service):
        """Build `tag` from a tar build context, logging to `log_path`."""
        self.logger.debug("Building image with tag %s", tag)
        with open(context_tar, "rb") as context_file:
            process = self._popen(
                ["docker", "build", "--pull", "--no-cache", "--rm", "--tag", tag, "-"],
                stdin=context_file,
            )
            threads = log_stream_service.stream_process(process, "docker-build", log_path)
            returncode = process.wait()
            log_stream_service.join(threads)

        if returncode != 0:
            raise TesterError(
                actionable_error("image_build_failed", tag=tag, log_path=str(log_path))
            )

    def _popen(self, cmd: Sequence[str], stdin=None):
        self.logger.debug("Spawning: %s", " ".join(cmd))
        try:
            return self.subprocess.Popen(
                list(cmd),
                stdin=stdin if stdin is not None else self.subprocess.DEVNULL,
                stdout=self.subprocess.PIPE,
                stderr=self.subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise TesterError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except OSError as exc:
            raise TesterError(f"Failed to spawn `{' '.join(cmd)}`: {exc}") from exc

    def cleanup_containers(self, names: Sequence[str]) -> List[DockerResult]:
        """Best-effort stop and removal of `names`, never raising."""
        results = []
        for name in names:
            for action in (self.stop_container, self.remove_container):
                try:
                    result = action(name)
                except Exception as exc:
                    result = DockerResult(DockerOutcome.FAILURE, str(exc))
                if result.outcome is DockerOutcome.FAILURE:
                    self.logger.warning("%s %s: %s", action.__name__, name, result.detail)
                results.append(result)
        return results

