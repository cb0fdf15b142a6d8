"""Actionable error catalog for mx-tester."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "config_not_found": {
        "what": "Config file not found: {path}",
        "next": "Create `mx-tester.yml` or pass `--config` with the path of your test configuration.",
    },
    "docker_unavailable": {
        "what": "Could not reach the Docker daemon: {detail}",
        "next": "Make sure Docker is installed, running, and that your user may access it.",
    },
    "image_build_failed": {
        "what": "Building image `{tag}` failed.",
        "next": "Inspect `{log_path}` for the output of `docker build`.",
    },
    "generated_config_invalid": {
        "what": "The homeserver configuration generated at {path} is invalid: {detail}",
        "next": "Inspect `logs/docker/build.out` and `logs/docker/build.log` for the output of the setup container.",
    },
    "registration_timeout_running": {
        "what": "User registration is taking more than {timeout}s.",
        "next": "The container is still running, so this is usually an error in Synapse or in a module. "
        "Inspect `{log_path}`.",
    },
    "registration_timeout_stopped": {
        "what": "User registration is taking more than {timeout}s.",
        "next": "For some reason, the container `{container}` has stopped. Inspect `{log_path}`.",
    },
    "worker_resources_missing": {
        "what": "Worker mode requires a directory of worker resources, got: {path}",
        "next": "Set `workers.resources` to a directory containing `workers_start.py` and `conf/`.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
