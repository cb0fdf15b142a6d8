import copy

import pytest
import yaml

from mxtester.errors import TesterError
from mxtester.models import Directories, HomeserverConfig, ModuleConfig, Script, TestConfig, WorkersConfig
from mxtester.services.config_patcher import LARGE_VALUE, ConfigPatcher, default_rate_limits

GENERATED = {
    "server_name": "synapse",
    "listeners": [{"port": 8008, "type": "http"}],
    "modules": [{"module": "already.There", "config": {}}],
    "rc_message": {"per_second": 0.2, "burst_count": 10},
}


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None


def _module(name):
    return ModuleConfig(name=name, build=Script(), config={"module": f"{name}.Module", "config": {}})


def _config(tmp_path, extra_fields=None, modules=None, workers=False):
    return TestConfig(
        name="demo",
        modules=modules or [],
        homeserver=HomeserverConfig(extra_fields=extra_fields or {}),
        directories=Directories(root=tmp_path),
        workers=WorkersConfig(enabled=workers),
    )


def _write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(content), encoding="utf-8")


def _read(path):
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def test_default_rate_limits_are_large(tmp_path):
    content = copy.deepcopy(GENERATED)
    ConfigPatcher(_config(tmp_path), DummyLogger()).patch_homeserver_content(content)

    for key in ("rc_message", "rc_registration", "rc_admin_redaction"):
        assert content[key] == {"per_second": LARGE_VALUE, "burst_count": LARGE_VALUE}
    assert set(content["rc_login"]) == {"address", "account", "failed_attempts"}
    assert set(content["rc_invites"]) == {"per_room", "per_user", "per_sender"}
    assert set(content["rc_joins"]) == {"local", "remote"}
    assert content["rc_login"]["account"]["burst_count"] == LARGE_VALUE


def test_synapse_default_removes_rate_limit(tmp_path):
    content = copy.deepcopy(GENERATED)
    config = _config(tmp_path, extra_fields={"rc_message": "synapse-default"})

    ConfigPatcher(config, DummyLogger()).patch_homeserver_content(content)

    assert "rc_message" not in content
    assert content["rc_registration"]["per_second"] == LARGE_VALUE


def test_declared_rate_limit_is_kept(tmp_path):
    content = copy.deepcopy(GENERATED)
    declared = {"per_second": 1, "burst_count": 2}
    config = _config(tmp_path, extra_fields={"rc_message": declared})

    ConfigPatcher(config, DummyLogger()).patch_homeserver_content(content)

    assert content["rc_message"] == declared


def test_identity_fields_and_canonical_listeners(tmp_path):
    content = copy.deepcopy(GENERATED)

    ConfigPatcher(_config(tmp_path), DummyLogger()).patch_homeserver_content(content)

    assert content["server_name"] == "localhost:9999"
    assert content["public_baseurl"] == "http://localhost:9999"
    assert content["registration_shared_secret"] == "MX_TESTER_REGISTRATION_DEFAULT"
    assert content["enable_registration_without_verification"] is True
    assert len(content["listeners"]) == 1
    assert content["listeners"][0]["port"] == 8008
    assert content["listeners"][0]["bind_addresses"] == ["::"]


def test_declared_listeners_are_replaced_by_canonical_listener(tmp_path):
    content = copy.deepcopy(GENERATED)
    listeners = [{"port": 1234, "type": "http"}]
    config = _config(tmp_path, extra_fields={"listeners": listeners})

    ConfigPatcher(config, DummyLogger()).patch_homeserver_content(content)

    assert [listener["port"] for listener in content["listeners"]] == [8008]


def test_non_list_listeners_are_rejected(tmp_path):
    content = copy.deepcopy(GENERATED)

    with pytest.raises(TesterError, match="In homeserver.yaml, expected a sequence for key `listeners`"):
        ConfigPatcher(_config(tmp_path, extra_fields={"listeners": "nope"}), DummyLogger()).patch_homeserver_content(
            content
        )


def test_modules_are_appended_in_declaration_order(tmp_path):
    content = dict(GENERATED, modules=[{"module": "already.There", "config": {}}])
    config = _config(tmp_path, modules=[_module("first"), _module("second")])

    ConfigPatcher(config, DummyLogger()).patch_homeserver_content(content)

    assert [module["module"] for module in content["modules"]] == [
        "already.There",
        "first.Module",
        "second.Module",
    ]


def test_missing_or_null_modules_become_a_list(tmp_path):
    content = {"modules": None}

    ConfigPatcher(_config(tmp_path, modules=[_module("only")]), DummyLogger()).patch_homeserver_content(content)

    assert content["modules"] == [{"module": "only.Module", "config": {}}]


def test_non_list_modules_are_rejected(tmp_path):
    with pytest.raises(TesterError, match="expected a sequence for key `modules`"):
        ConfigPatcher(_config(tmp_path), DummyLogger()).patch_homeserver_content({"modules": {"a": 1}})


def test_patch_files_rewrites_homeserver_yaml(tmp_path):
    config = _config(tmp_path, modules=[_module("mine")])
    _write(config.synapse_data_dir / "homeserver.yaml", GENERATED)

    ConfigPatcher(config, DummyLogger()).patch_files()

    patched = _read(config.synapse_data_dir / "homeserver.yaml")
    assert patched["modules"][-1]["module"] == "mine.Module"
    assert patched["rc_joins"] == default_rate_limits()["rc_joins"]


def test_patch_files_rejects_invalid_yaml_without_writing(tmp_path):
    config = _config(tmp_path)
    path = config.synapse_data_dir / "homeserver.yaml"
    path.parent.mkdir(parents=True)
    path.write_text("- not\n- a mapping\n", encoding="utf-8")

    with pytest.raises(TesterError, match="expected a YAML mapping"):
        ConfigPatcher(config, DummyLogger()).patch_files()

    assert path.read_text(encoding="utf-8") == "- not\n- a mapping\n"


def test_worker_mode_patches_shared_configuration(tmp_path):
    config = _config(tmp_path, modules=[_module("mine")], workers=True)
    _write(config.synapse_data_dir / "homeserver.yaml", GENERATED)
    _write(config.synapse_workers_dir / "shared.yaml", {"modules": []})

    ConfigPatcher(config, DummyLogger()).patch_files()

    main = _read(config.synapse_data_dir / "homeserver.yaml")
    shared = _read(config.synapse_workers_dir / "shared.yaml")

    assert [listener["port"] for listener in main["listeners"]] == [8080, 9093]
    assert main["redis"] == {"enabled": True}
    assert main["database"]["name"] == "psycopg2"
    assert main["send_federation"] is False
    assert main["suppress_key_server_warning"] is True

    assert [listener["port"] for listener in shared["listeners"]] == [8080]
    assert shared["modules"] == [{"module": "mine.Module", "config": {}}]
    assert shared["database"]["args"]["user"] == "synapse"
    assert shared["rc_message"]["per_second"] == LARGE_VALUE


def test_worker_mode_requires_shared_configuration(tmp_path):
    config = _config(tmp_path, workers=True)
    _write(config.synapse_data_dir / "homeserver.yaml", GENERATED)
    before = (config.synapse_data_dir / "homeserver.yaml").read_text(encoding="utf-8")

    with pytest.raises(TesterError, match="shared.yaml"):
        ConfigPatcher(config, DummyLogger()).patch_files()

    assert (config.synapse_data_dir / "homeserver.yaml").read_text(encoding="utf-8") == before


def test_worker_mode_with_declared_listeners(tmp_path):
    listeners = [{"port": 1234, "type": "http"}]
    config = _config(tmp_path, extra_fields={"listeners": listeners}, workers=True)
    _write(config.synapse_data_dir / "homeserver.yaml", GENERATED)
    _write(config.synapse_workers_dir / "shared.yaml", {"redis": {"enabled": True}})

    ConfigPatcher(config, DummyLogger()).patch_files()

    main = _read(config.synapse_data_dir / "homeserver.yaml")
    shared = _read(config.synapse_workers_dir / "shared.yaml")
    assert [listener["port"] for listener in main["listeners"]] == [8080, 9093]
    assert [listener["port"] for listener in shared["listeners"]] == [8080]


def test_shared_configuration_error_leaves_homeserver_yaml_untouched(tmp_path, monkeypatch):
    config = _config(tmp_path, workers=True)
    _write(config.synapse_data_dir / "homeserver.yaml", GENERATED)
    _write(config.synapse_workers_dir / "shared.yaml", {"modules": []})
    before = (config.synapse_data_dir / "homeserver.yaml").read_text(encoding="utf-8")
    render = ConfigPatcher._render

    def failing_render(content):
        if "server_name" not in content:
            raise yaml.representer.RepresenterError("cannot represent shared.yaml")
        return render(content)

    monkeypatch.setattr(ConfigPatcher, "_render", staticmethod(failing_render))

    with pytest.raises(yaml.YAMLError, match="shared.yaml"):
        ConfigPatcher(config, DummyLogger()).patch_files()

    assert (config.synapse_data_dir / "homeserver.yaml").read_text(encoding="utf-8") == before
