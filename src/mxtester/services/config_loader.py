"""Configuration loader for mx-tester."""

from pathlib import Path
from typing import Optional

import yaml

from mxtester.errors import TesterError
from mxtester.errors_catalog import actionable_error
from mxtester.models import TestConfig


class ConfigLoader:
    """Loads `mx-tester.yml` into a `TestConfig`."""

    DEFAULT_PATH = "mx-tester.yml"

    def load(self, config_path: Optional[str] = None) -> TestConfig:
        path = Path(config_path or self.DEFAULT_PATH)
        if not path.exists():
            raise TesterError(actionable_error("config_not_found", path=str(path)))

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise TesterError(f"Invalid config file '{path}': {exc}") from exc

        return self.load_content(parsed)

    def load_text(self, text: str) -> TestConfig:
        try:
            parsed = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise TesterError(f"Invalid configuration: {exc}") from exc
        return self.load_content(parsed)

    def load_content(self, parsed) -> TestConfig:
        if not isinstance(parsed, dict):
            raise TesterError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - TestConfig.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(map(str, unknown))
            raise TesterError(f"Unknown configuration keys: {unknown_list}")

        return TestConfig.from_dict(parsed)
