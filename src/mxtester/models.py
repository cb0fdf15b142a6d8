"""Shared domain models for mx-tester."""

import enum
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from mxtester.errors import TesterError

DEFAULT_SYNAPSE_VERSION = "matrixdotorg/synapse:latest"

# The port used by the homeserver inside the container.
# In worker mode, nginx listens there and forwards to the main process.
HARDCODED_GUEST_PORT = 8008

# In worker mode, the port of the main process inside the container.
HARDCODED_MAIN_PROCESS_HTTP_LISTENER_PORT = 8080

HARDCODED_REPLICATION_PORT = 9093


class Status(enum.Enum):
    """Outcome of `run`, as seen by `down`."""

    SUCCESS = "success"
    FAILURE = "failure"
    MANUAL = "manual"


def _expect_mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TesterError(f"Expected a mapping for `{where}`, got {type(value).__name__}.")
    return value


def _expect_list(value: Any, where: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise TesterError(f"Expected a list for `{where}`, got {type(value).__name__}.")
    return value


def _reject_unknown(data: Mapping[str, Any], known: set, where: str):
    unknown = sorted(set(data.keys()) - known)
    if unknown:
        raise TesterError(f"Unknown keys in `{where}`: {', '.join(map(str, unknown))}")


@dataclass(frozen=True)
class Script:
    """Shell lines, each executed in its own subprocess."""

    lines: List[str] = field(default_factory=list)

    @classmethod
    def from_value(cls, value: Any, where: str) -> "Script":
        lines = _expect_list(value, where)
        for line in lines:
            if not isinstance(line, str):
                raise TesterError(f"Every line of script `{where}` must be a string.")
        return cls(lines=list(lines))


@dataclass(frozen=True)
class UpScript:
    """`before` runs once the network is up, `after` once users are registered.

    A plain list in `mx-tester.yml` is a `before` script.
    """

    before: Optional[Script] = None
    after: Optional[Script] = None

    @classmethod
    def from_value(cls, value: Any) -> Optional["UpScript"]:
        if value is None:
            return None
        if isinstance(value, list):
            return cls(before=Script.from_value(value, "up"))
        data = _expect_mapping(value, "up")
        _reject_unknown(data, {"before", "after"}, "up")
        return cls(
            before=Script.from_value(data["before"], "up.before") if data.get("before") is not None else None,
            after=Script.from_value(data["after"], "up.after") if data.get("after") is not None else None,
        )


@dataclass(frozen=True)
class DownScript:
    success: Optional[Script] = None
    failure: Optional[Script] = None
    manual: Optional[Script] = None
    finally_: Optional[Script] = None

    @classmethod
    def from_value(cls, value: Any) -> Optional["DownScript"]:
        if value is None:
            return None
        data = _expect_mapping(value, "down")
        _reject_unknown(data, {"success", "failure", "manual", "finally"}, "down")
        scripts = {}
        for key in ("success", "failure", "manual", "finally"):
            if data.get(key) is not None:
                scripts[key] = Script.from_value(data[key], f"down.{key}")
        return cls(
            success=scripts.get("success"),
            failure=scripts.get("failure"),
            manual=scripts.get("manual"),
            finally_=scripts.get("finally"),
        )

    def for_status(self, status: Status) -> Optional[Script]:
        return {
            Status.SUCCESS: self.success,
            Status.FAILURE: self.failure,
            Status.MANUAL: self.manual,
        }[status]


@dataclass(frozen=True)
class ModuleConfig:
    """A Synapse module, built on the host and installed in the image."""

    name: str
    build: Script
    config: Any
    install: Optional[Script] = None
    env: Dict[str, str] = field(default_factory=dict)
    copy: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "ModuleConfig":
        data = _expect_mapping(data, "modules[]")
        _reject_unknown(data, {"name", "build", "install", "env", "copy", "config"}, "modules[]")
        for required in ("name", "build", "config"):
            if required not in data:
                raise TesterError(f"Missing key `{required}` in module declaration.")
        name = str(data["name"])
        return cls(
            name=name,
            build=Script.from_value(data["build"], f"modules.{name}.build"),
            install=(
                Script.from_value(data["install"], f"modules.{name}.install")
                if data.get("install") is not None
                else None
            ),
            env={str(k): str(v) for k, v in _expect_mapping(data.get("env"), f"modules.{name}.env").items()},
            copy={str(k): str(v) for k, v in _expect_mapping(data.get("copy"), f"modules.{name}.copy").items()},
            config=data["config"],
        )


@dataclass(frozen=True)
class User:
    localname: str
    admin: bool = False
    password: str = "password"

    @classmethod
    def from_dict(cls, data: Any) -> "User":
        data = _expect_mapping(data, "users[]")
        _reject_unknown(data, {"localname", "admin", "password"}, "users[]")
        if "localname" not in data:
            raise TesterError("Missing key `localname` in user declaration.")
        return cls(
            localname=str(data["localname"]),
            admin=bool(data.get("admin", False)),
            password=str(data.get("password", "password")),
        )


@dataclass(frozen=True)
class PortMapping:
    host: int
    guest: int


@dataclass
class DockerConfig:
    hostname: str = "synapse"
    port_mapping: List[PortMapping] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "DockerConfig":
        data = _expect_mapping(data, "docker")
        _reject_unknown(data, {"hostname", "port_mapping"}, "docker")
        mappings = []
        for item in _expect_list(data.get("port_mapping"), "docker.port_mapping"):
            item = _expect_mapping(item, "docker.port_mapping[]")
            try:
                mappings.append(PortMapping(host=int(item["host"]), guest=int(item["guest"])))
            except (KeyError, TypeError, ValueError) as exc:
                raise TesterError(f"Invalid port mapping {item!r}: expected `host` and `guest` ports.") from exc
        return cls(hostname=str(data.get("hostname", "synapse")), port_mapping=mappings)


@dataclass
class HomeserverConfig:
    """Values applied to the generated homeserver.yaml."""

    host_port: int = 9999
    server_name: str = "localhost:9999"
    public_baseurl: str = "http://localhost:9999"
    registration_shared_secret: str = "MX_TESTER_REGISTRATION_DEFAULT"
    extra_fields: Dict[str, Any] = field(default_factory=dict)

    KNOWN_KEYS = ("host_port", "server_name", "public_baseurl", "registration_shared_secret")

    @classmethod
    def from_dict(cls, data: Any) -> "HomeserverConfig":
        data = dict(_expect_mapping(data, "homeserver"))
        config = cls()
        if "host_port" in data:
            try:
                config.host_port = int(data.pop("host_port"))
            except (TypeError, ValueError) as exc:
                raise TesterError("`homeserver.host_port` must be an integer.") from exc
        for key in ("server_name", "public_baseurl", "registration_shared_secret"):
            if key in data:
                setattr(config, key, str(data.pop(key)))
        config.extra_fields = {str(key): value for key, value in data.items()}
        return config

    def set_host_port(self, port: int):
        """Set the port, resetting server name and public base url."""
        self.host_port = port
        self.server_name = f"localhost:{port}"
        self.public_baseurl = f"http://localhost:{port}"


@dataclass
class WorkersConfig:
    enabled: bool = False
    # Directory holding `workers_start.py` and `conf/`, copied into the image.
    resources: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Any) -> "WorkersConfig":
        data = _expect_mapping(data, "workers")
        _reject_unknown(data, {"enabled", "resources"}, "workers")
        resources = data.get("resources")
        return cls(
            enabled=bool(data.get("enabled", False)),
            resources=Path(os.path.expanduser(str(resources))) if resources else None,
        )


@dataclass
class Credentials:
    """Information for logging into a Docker registry."""

    serveraddress: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Credentials":
        data = _expect_mapping(data, "credentials")
        _reject_unknown(data, {"serveraddress", "username", "password", "email"}, "credentials")
        return cls(**{key: str(value) for key, value in data.items() if value is not None})


@dataclass
class Directories:
    root: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "mx-tester")

    @classmethod
    def from_dict(cls, data: Any) -> "Directories":
        data = _expect_mapping(data, "directories")
        _reject_unknown(data, {"root"}, "directories")
        if data.get("root") is None:
            return cls()
        return cls(root=Path(os.path.expanduser(str(data["root"]))))


@dataclass
class Timeouts:
    """Bounds for waits performed during `up`, in seconds."""

    registration: float = 120.0
    registration_workers: float = 600.0
    container_poll_interval: float = 5.0

    @classmethod
    def from_dict(cls, data: Any) -> "Timeouts":
        data = _expect_mapping(data, "timeouts")
        _reject_unknown(data, {"registration", "registration_workers", "container_poll_interval"}, "timeouts")
        try:
            return cls(**{key: float(value) for key, value in data.items()})
        except (TypeError, ValueError) as exc:
            raise TesterError(f"Invalid timeouts: {exc}") from exc


@dataclass
class SynapseVersion:
    docker_tag: str = DEFAULT_SYNAPSE_VERSION

    @classmethod
    def from_dict(cls, data: Any) -> "SynapseVersion":
        data = _expect_mapping(data, "synapse")
        _reject_unknown(data, {"docker"}, "synapse")
        docker = _expect_mapping(data.get("docker"), "synapse.docker")
        if "tag" not in docker:
            raise TesterError("Expected `synapse.docker.tag`.")
        return cls(docker_tag=str(docker["tag"]))


@dataclass
class TestConfig:
    """The contents of a mx-tester.yml."""

    __test__ = False

    name: str
    modules: List[ModuleConfig] = field(default_factory=list)
    homeserver: HomeserverConfig = field(default_factory=HomeserverConfig)
    up: Optional[UpScript] = None
    run: Optional[Script] = None
    down: Optional[DownScript] = None
    docker: DockerConfig = field(default_factory=DockerConfig)
    users: List[User] = field(default_factory=list)
    synapse: SynapseVersion = field(default_factory=SynapseVersion)
    credentials: Credentials = field(default_factory=Credentials)
    directories: Directories = field(default_factory=Directories)
    workers: WorkersConfig = field(default_factory=WorkersConfig)
    autoclean_on_error: bool = True
    timeouts: Timeouts = field(default_factory=Timeouts)

    SUPPORTED_KEYS = {
        "name",
        "modules",
        "homeserver",
        "up",
        "run",
        "down",
        "docker",
        "users",
        "synapse",
        "credentials",
        "directories",
        "workers",
        "autoclean_on_error",
        "timeouts",
    }

    @classmethod
    def from_dict(cls, data: Any) -> "TestConfig":
        data = _expect_mapping(data, "<root>")
        _reject_unknown(data, cls.SUPPORTED_KEYS, "<root>")
        name = data.get("name")
        if not name or not isinstance(name, str):
            raise TesterError("The test configuration needs a `name`.")
        return cls(
            name=name,
            modules=[ModuleConfig.from_dict(item) for item in _expect_list(data.get("modules"), "modules")],
            homeserver=HomeserverConfig.from_dict(data.get("homeserver")),
            up=UpScript.from_value(data.get("up")),
            run=Script.from_value(data["run"], "run") if data.get("run") is not None else None,
            down=DownScript.from_value(data.get("down")),
            docker=DockerConfig.from_dict(data.get("docker")),
            users=[User.from_dict(item) for item in _expect_list(data.get("users"), "users")],
            synapse=SynapseVersion.from_dict(data["synapse"]) if data.get("synapse") is not None else SynapseVersion(),
            credentials=Credentials.from_dict(data.get("credentials")),
            directories=Directories.from_dict(data.get("directories")),
            workers=WorkersConfig.from_dict(data.get("workers")),
            autoclean_on_error=bool(data.get("autoclean_on_error", True)),
            timeouts=Timeouts.from_dict(data.get("timeouts")),
        )

    @property
    def workers_suffix(self) -> str:
        return "-workers" if self.workers.enabled else ""

    @property
    def tag(self) -> str:
        """A tag for the Docker image we're creating/using."""
        return f"mx-tester-synapse-{self.synapse.docker_tag}-{self.name}{self.workers_suffix}"

    @property
    def network(self) -> str:
        return f"net-{self.tag}"

    @property
    def setup_container_name(self) -> str:
        return f"mx-tester-synapse-setup-{self.name}{self.workers_suffix}"

    @property
    def run_container_name(self) -> str:
        return f"mx-tester-synapse-run-{self.name}{self.workers_suffix}"

    @property
    def test_root(self) -> Path:
        return Path(self.directories.root) / self.name

    @property
    def synapse_root(self) -> Path:
        return self.test_root / "synapse"

    @property
    def synapse_data_dir(self) -> Path:
        return self.synapse_root / "data"

    @property
    def synapse_workers_dir(self) -> Path:
        return self.synapse_root / "workers"

    @property
    def etc_dir(self) -> Path:
        return self.test_root / "etc"

    @property
    def logs_dir(self) -> Path:
        return self.test_root / "logs"

    @property
    def scripts_logs_dir(self) -> Path:
        return self.logs_dir / "mx-tester"

    @property
    def guest_http_port(self) -> int:
        if self.workers.enabled:
            return HARDCODED_MAIN_PROCESS_HTTP_LISTENER_PORT
        return HARDCODED_GUEST_PORT

    @property
    def registration_timeout(self) -> float:
        if self.workers.enabled:
            return self.timeouts.registration_workers
        return self.timeouts.registration
