import contextlib
import logging
import os
import subprocess
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import requests
from rich.console import Console

from .errors import TeardownError, TesterError
from .errors_catalog import actionable_error
from .models import HARDCODED_GUEST_PORT, PortMapping, Status, TestConfig
from .services.archive import ArchiveService
from .services.cleanup import Cleanup, disarm_all
from .services.command_runner import CommandRunner
from .services.config_patcher import ConfigPatcher
from .services.docker_runtime import ContainerSpec, DockerOutcome, DockerRuntimeService
from .services.dockerfile import WORKER_POSTGRES_SQL, DockerfileService
from .services.filesystem import FileSystemService
from .services.log_stream import LogStreamService
from .services.registration import RegistrationService
from .services.script_runner import ScriptEnv, ScriptRunner

console = Console()
logger = logging.getLogger("mxtester")

# Two instances of `event_persister`, to launch two event persisters.
WORKER_TYPES = [
    "event_persister",
    "event_persister",
    "background_worker",
    "frontend_proxy",
    "event_creator",
    "user_dir",
    "media_repository",
    "federation_inbound",
    "federation_reader",
    "federation_sender",
    "synchrotron",
    "appservice",
    "pusher",
]

# Synapse has a tendency to not start correctly or to stop shortly after startup.
MAX_SYNAPSE_RESTART_COUNT = 20

MEMORY_RESERVATION = "4g"

BUILD = "build"
UP = "up"
RUN = "run"
DOWN = "down"
VALID_COMMANDS = [BUILD, UP, RUN, DOWN]
DEFAULT_COMMANDS = [UP, RUN, DOWN]


class MxTester:
    def __init__(
        self,
        config: TestConfig,
        logger: logging.Logger = logger,
        console: Console = console,
        command_runner: Optional[CommandRunner] = None,
        docker_runtime: Optional[DockerRuntimeService] = None,
        log_stream_service: Optional[LogStreamService] = None,
        script_runner: Optional[ScriptRunner] = None,
        registration_service: Optional[RegistrationService] = None,
        filesystem_service: Optional[FileSystemService] = None,
        archive_service: Optional[ArchiveService] = None,
        dockerfile_service: Optional[DockerfileService] = None,
        cwd: Optional[str] = None,
    ):
        self.config = config
        self.logger = logger
        self.console = console
        self.cwd = cwd or os.getcwd()

        self.command_runner = command_runner or CommandRunner(logger=logger)
        self.docker_runtime = docker_runtime or DockerRuntimeService(
            logger=logger,
            command_runner=self.command_runner,
            subprocess_module=subprocess,
        )
        self.log_stream_service = log_stream_service or LogStreamService(logger=logger)
        self.script_runner = script_runner or ScriptRunner(
            logger=logger,
            console=console,
            log_stream_service=self.log_stream_service,
        )
        self.registration_service = registration_service or RegistrationService(
            logger=logger,
            requests_module=requests,
        )
        self.filesystem_service = filesystem_service or FileSystemService(logger=logger, console=console)
        self.archive_service = archive_service or ArchiveService()
        self.dockerfile_service = dockerfile_service or DockerfileService()

        self._shared_env: Optional[Dict[str, str]] = None
        self._run_log_threads: List = []

    @property
    def docker_logs_dir(self) -> Path:
        return self.config.logs_dir / "docker"

    @property
    def run_log_path(self) -> Path:
        return self.docker_logs_dir / "up-run-down.log"

    def shared_env(self) -> Dict[str, str]:
        """Environment variables passed to every script, resolved once."""
        if self._shared_env is None:
            config = self.config
            env = {
                ScriptEnv.SYNAPSE_DIR.value: str(config.synapse_root),
                ScriptEnv.SCRIPT_TMPDIR.value: str(config.synapse_root / "scripts"),
                ScriptEnv.CWD.value: str(self.cwd),
                ScriptEnv.NETWORK_NAME.value: config.network,
                ScriptEnv.SETUP_CONTAINER_NAME.value: config.setup_container_name,
                ScriptEnv.UP_RUN_DOWN_CONTAINER_NAME.value: config.run_container_name,
            }
            if config.workers.enabled:
                env[ScriptEnv.WORKERS_ENABLED.value] = "true"
            self._shared_env = env
        return dict(self._shared_env)

    def _test_dirs(self) -> List[Path]:
        config = self.config
        return [
            config.synapse_root,
            config.synapse_root / "scripts",
            config.synapse_data_dir,
            config.synapse_workers_dir,
            config.etc_dir / "nginx",
            config.etc_dir / "supervisor",
            self.docker_logs_dir,
            config.scripts_logs_dir,
            config.logs_dir / "nginx",
            config.logs_dir / "workers",
        ]

    def build(self):
        """Rebuild the Synapse image with the modules of the test."""
        config = self.config
        self.console.print("[bold blue]* build step: starting[/bold blue]")
        self.docker_runtime.check_daemon()

        self.docker_runtime.cleanup_containers(
            [config.setup_container_name, config.run_container_name]
        )
        result = self.docker_runtime.remove_image(config.tag)
        if result.outcome is DockerOutcome.FAILURE:
            self.logger.warning("Could not remove image %s: %s", config.tag, result.detail)

        self.filesystem_service.cleanup_dir(config.test_root)
        self.filesystem_service.ensure_dirs(self._test_dirs())

        for module in config.modules:
            module_dir = config.synapse_root / module.name
            self.filesystem_service.ensure_dirs([module_dir])
            env = self.shared_env()
            env[ScriptEnv.MODULE_DIR.value] = str(module_dir)
            self.script_runner.run(
                module.build,
                "build",
                config.scripts_logs_dir / "modules" / module.name,
                env,
            )

        if config.workers.enabled:
            self._copy_worker_resources()

        dockerfile = self.dockerfile_service.build_dockerfile(
            config.synapse.docker_tag,
            config.modules,
            config.workers.enabled,
        )
        self.logger.debug("Dockerfile:\n%s", dockerfile)
        self.filesystem_service.write_text(config.synapse_root / "Dockerfile", dockerfile)

        context_tar = self.archive_service.create_build_context(
            config.synapse_root,
            config.test_root / "tar" / "docker.tar",
        )

        self.docker_runtime.login(config.credentials)

        log_path = self.docker_logs_dir / "build.log"
        self.console.print(f"[blue]** building Docker image. Logs will be stored at {log_path}[/blue]")
        self.docker_runtime.build_image(config.tag, context_tar, log_path, self.log_stream_service)
        self.console.print("[green]** building Docker image success[/green]")
        self.console.print("[bold green]* build step: success[/bold green]")

    def _copy_worker_resources(self):
        resources = self.config.workers.resources
        if resources is None or not (Path(resources) / "workers_start.py").is_file():
            raise TesterError(actionable_error("worker_resources_missing", path=str(resources)))
        self.filesystem_service.copy_tree(resources, self.config.synapse_root)
        self.filesystem_service.write_text(
            self.config.synapse_root / "conf" / "postgres.sql",
            WORKER_POSTGRES_SQL,
        )

    def container_spec(self, name: str, command: List[str], publish: bool) -> ContainerSpec:
        config = self.config
        env = [
            f"SYNAPSE_SERVER_NAME={config.homeserver.server_name}",
            "SYNAPSE_REPORT_STATS=no",
            "SYNAPSE_CONFIG_DIR=/data",
            f"SYNAPSE_HTTP_PORT={config.guest_http_port}",
        ]
        if config.workers.enabled:
            env.append(f"SYNAPSE_WORKER_TYPES={', '.join(WORKER_TYPES)}")
            env.append("SYNAPSE_WORKERS_WRITE_LOGS_TO_DISK=1")

        ports = []
        if publish:
            ports = list(config.docker.port_mapping) + [
                PortMapping(host=config.homeserver.host_port, guest=HARDCODED_GUEST_PORT)
            ]

        return ContainerSpec(
            name=name,
            image=config.tag,
            command=command,
            env=env,
            hostname=config.docker.hostname,
            ports=ports,
            binds=[
                f"{config.synapse_data_dir}:/data:rw",
                f"{config.synapse_workers_dir}:/conf/workers:rw",
                f"{config.etc_dir / 'nginx'}:/etc/nginx/conf.d:rw",
                f"{config.etc_dir / 'supervisor'}:/etc/supervisor/conf.d:rw",
                f"{config.logs_dir / 'nginx'}:/var/log/nginx:rw",
                f"{config.logs_dir / 'workers'}:/var/log/workers:rw",
            ],
            network=config.network,
            user=str(os.getuid()) if hasattr(os, "getuid") else None,
            extra_hosts=(
                ["host.docker.internal:host-gateway"] if sys.platform.startswith("linux") else []
            ),
            restart_policy=f"on-failure:{MAX_SYNAPSE_RESTART_COUNT}",
            memory_reservation=MEMORY_RESERVATION,
            memory_swap="-1",
        )

    def up(self):
        """Bring the homeserver up, register users, run the `up` scripts."""
        self.console.print("[bold blue]* up step: starting[/bold blue]")
        guard = Cleanup.for_config(self.config, self.docker_runtime, self.logger)
        with guard or contextlib.nullcontext():
            self._up(guard)
            disarm_all([guard])
        self.console.print("[bold green]* up step: success[/bold green]")

    def _up(self, guard: Optional[Cleanup]):
        config = self.config
        self.filesystem_service.ensure_dirs(self._test_dirs())

        if self.docker_runtime.network_exists(config.network):
            self.logger.debug("Network %s already exists", config.network)
        else:
            self.logger.debug("Creating network %s", config.network)
            self.docker_runtime.create_network(config.network)
            if guard is not None:
                guard.cleanup_network(True)

        if config.up is not None and config.up.before is not None:
            self.script_runner.run(config.up.before, "up", config.scripts_logs_dir, self.shared_env())

        self.filesystem_service.remove_file(config.synapse_data_dir / "homeserver.yaml")
        self._generate_config()
        ConfigPatcher(config, self.logger).patch_files()

        self.docker_runtime.wait_container_stopped(
            config.setup_container_name, config.timeouts.container_poll_interval
        )
        self._start_homeserver()
        self._register_users()

        if config.up is not None and config.up.after is not None:
            self.script_runner.run(config.up.after, "up-after", config.scripts_logs_dir, self.shared_env())

    def _generate_config(self):
        config = self.config
        name = config.setup_container_name
        self._remove_stale_container(name)

        command = ["/workers_start.py", "generate"] if config.workers.enabled else ["/start.py", "generate"]
        self.console.print("[blue]** generating homeserver configuration[/blue]")
        self.docker_runtime.create_container(self.container_spec(name, command, publish=False))

        process = self.docker_runtime.start_attached(name)
        threads = self.log_stream_service.stream_process(
            process,
            name,
            self.docker_logs_dir / "build.out",
            self.docker_logs_dir / "build.log",
        )
        returncode = process.wait()
        self.log_stream_service.join(threads)
        if returncode != 0:
            self.logger.warning("Setup container %s exited with status %s", name, returncode)

        self._remove_stale_container(name)

    def _remove_stale_container(self, name: str):
        self.docker_runtime.cleanup_containers([name])
        self.docker_runtime.wait_container_removed(name)

    def _start_homeserver(self):
        config = self.config
        name = config.run_container_name
        self._remove_stale_container(name)

        command = ["/workers_start.py", "start"] if config.workers.enabled else ["/start.py"]
        self.console.print(f"[blue]** starting Synapse. Logs will be stored at {self.run_log_path}[/blue]")
        self.docker_runtime.create_container(self.container_spec(name, command, publish=True))
        self.docker_runtime.start_container(name)

        # Detached: `docker logs --follow` exits once the container is removed.
        process = self.docker_runtime.follow_logs(name)
        self._run_log_threads = self.log_stream_service.stream_process(process, name, self.run_log_path)
        self.docker_runtime.spawn_stop_watcher(name)

    def _register_users(self):
        config = self.config
        timeout = config.registration_timeout
        base_url = f"http://localhost:{config.homeserver.host_port}"
        self.console.print("[blue]** registering users[/blue]")

        cancelled = threading.Event()
        errors: List[Exception] = []

        def register():
            try:
                self.registration_service.handle_user_registration(
                    base_url,
                    config.homeserver.registration_shared_secret,
                    config.users,
                    cancelled=cancelled,
                )
            except Exception as exc:
                errors.append(exc)

        # A registration abandoned after the timeout must not delay exit.
        thread = threading.Thread(target=register, name="mx-tester-registration", daemon=True)
        thread.start()
        thread.join(timeout)
        if thread.is_alive():
            cancelled.set()
            if self.docker_runtime.container_running(config.run_container_name):
                message = actionable_error(
                    "registration_timeout_running",
                    timeout=f"{timeout:g}",
                    log_path=str(self.run_log_path),
                )
            else:
                message = actionable_error(
                    "registration_timeout_stopped",
                    timeout=f"{timeout:g}",
                    container=config.run_container_name,
                    log_path=str(self.run_log_path),
                )
            raise TesterError(message)
        if errors:
            raise errors[0]
        self.console.print("[green]** registering users success[/green]")

    def run(self):
        """Run the `run` script, if any."""
        self.console.print("[bold blue]* run step: starting[/bold blue]")
        if self.config.run is None:
            self.logger.info("No `run` script")
        else:
            self.script_runner.run(self.config.run, "run", self.config.scripts_logs_dir, self.shared_env())
        self.console.print("[bold green]* run step: success[/bold green]")

    def down(self, status: Status):
        """Run the `down` scripts, then tear down the run container and network.

        Containers or networks that are already gone are not errors, so
        calling this twice succeeds. Every failure is collected and raised
        as a single `TeardownError` once teardown has been attempted entirely.
        """
        config = self.config
        self.console.print(f"[bold blue]* down step: starting (status: {status.value})[/bold blue]")
        errors: List[Exception] = []

        if config.down is not None:
            scripts = [
                (config.down.for_status(status), f"down-{status.value}"),
                (config.down.finally_, "down-finally"),
            ]
            for script, stage in scripts:
                if script is None:
                    continue
                try:
                    self.script_runner.run(script, stage, config.scripts_logs_dir, self.shared_env())
                except TesterError as exc:
                    self.logger.error("Error during `%s` script: %s", stage, exc)
                    errors.append(exc)

        name = config.run_container_name
        steps = [
            (f"stop container {name}", lambda: self.docker_runtime.stop_container(name)),
            (f"remove container {name}", lambda: self.docker_runtime.remove_container(name)),
            (f"remove network {config.network}", lambda: self.docker_runtime.remove_network(config.network)),
        ]
        for description, action in steps:
            try:
                result = action()
            except TesterError as exc:
                errors.append(TesterError(f"Could not {description}: {exc}"))
                continue
            if result.outcome is DockerOutcome.ALREADY_ABSENT:
                self.logger.debug("Could not %s, already gone: %s", description, result.detail)
            elif result.outcome is DockerOutcome.FAILURE:
                errors.append(TesterError(f"Could not {description}: {result.detail}"))

        self.log_stream_service.join(self._run_log_threads, timeout=5)
        self._run_log_threads = []

        if errors:
            raise TeardownError(errors)
        self.console.print("[bold green]* down step: success[/bold green]")

    def run_commands(self, commands: Sequence[str]):
        """Execute `commands` in order, feeding the outcome of `run` to `down`."""
        commands = list(commands) or list(DEFAULT_COMMANDS)
        for command in commands:
            if command not in VALID_COMMANDS:
                raise TesterError(
                    f"Unknown command `{command}`. Expected one of: {', '.join(VALID_COMMANDS)}."
                )

        status = Status.MANUAL
        run_error: Optional[TesterError] = None
        for index, command in enumerate(commands):
            if command == BUILD:
                self.build()
            elif command == UP:
                self.up()
            elif command == RUN:
                try:
                    self.run()
                except TesterError as exc:
                    self.logger.error("Error during `run`: %s", exc)
                    status = Status.FAILURE
                    run_error = exc
                    if DOWN not in commands[index + 1:]:
                        raise
                else:
                    status = Status.SUCCESS
            elif command == DOWN:
                try:
                    self.down(status)
                except TesterError as exc:
                    if run_error is None:
                        raise
                    # Errors due to `run` are reported before errors due to `down`.
                    self.logger.error("Error during `down`: %s", exc)
                if run_error is not None:
                    pending, run_error = run_error, None
                    raise pending
