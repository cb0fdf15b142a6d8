"""Scope guard tearing down Docker resources when a phase fails.

Leaving Docker containers behind after a crash means that Docker may decide
to bring them back up on the next machine startup, so every phase that
creates containers holds a `Cleanup` until it has completed.
"""

from typing import Iterable, Optional


class Cleanup:
    """Tears down the test containers on exit, unless disarmed.

    Usage::

        with Cleanup(config, docker_runtime, logger) as guard:
            ...  # create containers
            guard.disarm()
    """

    def __init__(self, config, docker_runtime, logger, cleanup_network: bool = False):
        self.docker_runtime = docker_runtime
        self.logger = logger
        self.is_armed = True
        # Captured now: teardown must not depend on state the failure may have corrupted.
        self.setup_container_name = config.setup_container_name
        self.run_container_name = config.run_container_name
        self.network_name = config.network
        self._cleanup_network = cleanup_network

    @classmethod
    def for_config(cls, config, docker_runtime, logger) -> Optional["Cleanup"]:
        """A guard, or None if the config disables autocleaning."""
        if not config.autoclean_on_error:
            return None
        return cls(config, docker_runtime, logger)

    def cleanup_network(self, value: bool):
        """Also remove the network on teardown. `disarm()` still prevents all cleanup."""
        self._cleanup_network = value

    def disarm(self):
        self.is_armed = False

    def close(self):
        if not self.is_armed:
            return
        # A second call must not tear down anything that a later phase recreated.
        self.is_armed = False

        self.logger.warning("Auto-cleanup...")
        self.docker_runtime.cleanup_containers(
            [self.setup_container_name, self.run_container_name]
        )
        if self._cleanup_network:
            try:
                result = self.docker_runtime.remove_network(self.network_name)
                if not result.ok:
                    self.logger.warning("remove_network %s: %s", self.network_name, result.detail)
            except Exception as exc:
                self.logger.warning("remove_network %s: %s", self.network_name, exc)
        self.logger.warning("Auto-cleanup... DONE")

    def __enter__(self) -> "Cleanup":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def disarm_all(guards: Iterable[Optional[Cleanup]]):
    """Disarm every guard, carrying on past a guard that fails to disarm."""
    failure = None
    for guard in guards:
        if guard is None:
            continue
        try:
            guard.disarm()
        except Exception as exc:
            if failure is None:
                failure = exc
    if failure is not None:
        raise failure
