"""Merge mx-tester.yml settings into the homeserver configuration generated by Synapse."""

import copy
from pathlib import Path
from typing import Any, Dict, List

import yaml

from mxtester.errors import TesterError
from mxtester.errors_catalog import actionable_error
from mxtester.models import HARDCODED_REPLICATION_PORT, TestConfig

# Declaring a rate limit category with this value keeps Synapse's own default.
SYNAPSE_DEFAULT = "synapse-default"

LARGE_VALUE = 1_000_000_000

LISTENERS = "listeners"
MODULES = "modules"


def large_rate_limit() -> Dict[str, int]:
    return {"per_second": LARGE_VALUE, "burst_count": LARGE_VALUE}


def default_rate_limits() -> Dict[str, Dict[str, Any]]:
    return {
        "rc_message": large_rate_limit(),
        "rc_registration": large_rate_limit(),
        "rc_admin_redaction": large_rate_limit(),
        "rc_login": {
            "address": large_rate_limit(),
            "account": large_rate_limit(),
            "failed_attempts": large_rate_limit(),
        },
        "rc_invites": {
            "per_room": large_rate_limit(),
            "per_user": large_rate_limit(),
            "per_sender": large_rate_limit(),
        },
        "rc_joins": {
            "local": large_rate_limit(),
            "remote": large_rate_limit(),
        },
    }


def worker_database() -> Dict[str, Any]:
    # No worker support without postgres, set up by the image's postgres.sql.
    return {
        "name": "psycopg2",
        "txn_limit": 10_000,
        "args": {
            "user": "synapse",
            "password": "password",
            "host": "localhost",
            "port": 5432,
            "cp_min": 5,
            "cp_max": 10,
        },
    }


class ConfigPatcher:
    """Applies a `TestConfig` on top of Synapse's generated configuration."""

    def __init__(self, config: TestConfig, logger):
        self.config = config
        self.logger = logger

    @property
    def homeserver_path(self) -> Path:
        return self.config.synapse_data_dir / "homeserver.yaml"

    @property
    def shared_worker_path(self) -> Path:
        return self.config.synapse_workers_dir / "shared.yaml"

    def patch_files(self):
        """Patch homeserver.yaml (and shared.yaml in worker mode) in place.

        Nothing is written unless every file could be patched.
        """
        self.logger.debug("Patching %s", self.homeserver_path)
        content = self._load(self.homeserver_path)
        self.patch_homeserver_content(content)

        shared_content = None
        if self.config.workers.enabled:
            shared_content = self._load(self.shared_worker_path)
            self.patch_shared_worker_content(shared_content)

        rendered = [(self.homeserver_path, self._render(content))]
        if shared_content is not None:
            rendered.append((self.shared_worker_path, self._render(shared_content)))
        for path, text in rendered:
            self._write(path, text)

    def patch_homeserver_content(self, content: Dict[str, Any]):
        homeserver = self.config.homeserver
        content["public_baseurl"] = homeserver.public_baseurl
        content["server_name"] = homeserver.server_name
        content["registration_shared_secret"] = homeserver.registration_shared_secret
        content["enable_registration_without_verification"] = True

        # Note: this may include `modules` or `listeners`.
        for key, value in homeserver.extra_fields.items():
            content[key] = copy.deepcopy(value)

        self._apply_rate_limits(content)
        self._apply_listeners(content, "homeserver.yaml", with_replication=self.config.workers.enabled)
        self._append_modules(content, "homeserver.yaml")

        if self.config.workers.enabled:
            content.update(
                {
                    "redis": {"enabled": True},
                    "database": worker_database(),
                    # Let workers take over these features.
                    "notify_appservices": False,
                    "send_federation": False,
                    "update_user_directory": False,
                    "start_pushers": False,
                    "url_preview_enabled": False,
                    "url_preview_ip_range_blacklist": ["255.255.255.255/32"],
                    "suppress_key_server_warning": True,
                }
            )

    def patch_shared_worker_content(self, content: Dict[str, Any]):
        self._apply_rate_limits(content)
        self._apply_listeners(content, "shared.yaml", with_replication=False)
        self._append_modules(content, "shared.yaml")
        content.update(
            {
                "redis": {"enabled": True},
                "database": worker_database(),
                "url_preview_enabled": False,
                "url_preview_ip_range_blacklist": ["255.255.255.255/32"],
            }
        )

    def canonical_listeners(self, with_replication: bool) -> List[Dict[str, Any]]:
        listeners = [
            {
                "port": self.config.guest_http_port,
                "tls": False,
                "type": "http",
                "bind_addresses": ["::"],
                "x_forwarded": False,
                "resources": [
                    {"names": ["client"], "compress": True},
                    {"names": ["federation"], "compress": False},
                ],
            }
        ]
        if with_replication:
            listeners.append(
                {
                    "port": HARDCODED_REPLICATION_PORT,
                    "bind_address": "127.0.0.1",
                    "type": "http",
                    "resources": [{"names": ["replication"]}],
                }
            )
        return listeners

    def _apply_rate_limits(self, content: Dict[str, Any]):
        declared = self.config.homeserver.extra_fields
        for key, rate_limit in default_rate_limits().items():
            if key not in declared:
                content[key] = rate_limit
            elif declared[key] == SYNAPSE_DEFAULT:
                content.pop(key, None)
            else:
                content[key] = copy.deepcopy(declared[key])

    def _apply_listeners(self, content: Dict[str, Any], where: str, with_replication: bool):
        listeners = content.get(LISTENERS)
        if listeners is not None and not isinstance(listeners, list):
            raise TesterError(f"In {where}, expected a sequence for key `{LISTENERS}`")
        # `start.py generate` tends to pick a port other than the one we map.
        content[LISTENERS] = self.canonical_listeners(with_replication)

    def _append_modules(self, content: Dict[str, Any], where: str):
        modules = content.get(MODULES)
        if modules is None:
            modules = []
        if not isinstance(modules, list):
            raise TesterError(f"In {where}, expected a sequence for key `{MODULES}`")
        modules.extend(copy.deepcopy(module.config) for module in self.config.modules)
        content[MODULES] = modules

    def _load(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as file_obj:
                content = yaml.safe_load(file_obj)
        except (OSError, yaml.YAMLError) as exc:
            raise TesterError(
                actionable_error("generated_config_invalid", path=str(path), detail=str(exc))
            ) from exc
        if not isinstance(content, dict):
            raise TesterError(
                actionable_error(
                    "generated_config_invalid", path=str(path), detail="expected a YAML mapping"
                )
            )
        return content

    @staticmethod
    def _render(content: Dict[str, Any]) -> str:
        return yaml.safe_dump(content, default_flow_style=False, sort_keys=False)

    @staticmethod
    def _write(path: Path, text: str):
        try:
            with open(path, "w", encoding="utf-8", newline="\n") as file_obj:
                file_obj.write(text)
        except OSError as exc:
            raise TesterError(f"Could not write combined configuration {path}: {exc}") from exc
