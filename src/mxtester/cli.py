import logging
from pathlib import Path

import click
from rich.logging import RichHandler

from . import __version__
from .core import DEFAULT_COMMANDS, VALID_COMMANDS, MxTester, TesterError, console
from .models import SynapseVersion
from .services.config_loader import ConfigLoader

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _apply_overrides(test_config, username, password, server, root, workers, synapse_tag, no_autoclean_on_error):
    if server is not None:
        test_config.credentials.serveraddress = server
    if password is not None:
        test_config.credentials.password = password
    if username is not None:
        test_config.credentials.username = username
    if root is not None:
        test_config.directories.root = root
    if workers:
        test_config.workers.enabled = True
    if synapse_tag is not None:
        test_config.synapse = SynapseVersion(docker_tag=f"matrixdotorg/synapse:{synapse_tag}")
    if no_autoclean_on_error:
        test_config.autoclean_on_error = False
    return test_config


@click.command()
@click.version_option(version=__version__, prog_name="mx-tester")
@click.argument("commands", nargs=-1, type=click.Choice(VALID_COMMANDS))
@click.option(
    "-c",
    "--config",
    default=ConfigLoader.DEFAULT_PATH,
    show_default=True,
    type=click.Path(),
    help="The file containing the test configuration.",
)
@click.option("-u", "--username", required=False, help="A username for logging to the Docker registry.")
@click.option("-p", "--password", required=False, help="A password for logging to the Docker registry.")
@click.option("--server", required=False, help="A server name for the Docker registry.")
@click.option(
    "--root",
    required=False,
    type=click.Path(path_type=Path),
    help="Write all files in subdirectories of this directory (default: the system temporary directory).",
)
@click.option("--workers", is_flag=True, default=False, help="Use workerized Synapse.")
@click.option(
    "--synapse-tag",
    required=False,
    metavar="TAG",
    help="Use the Docker image matrixdotorg/synapse:TAG (default: use mx-tester.yml or tag `latest`).",
)
@click.option(
    "--no-autoclean-on-error",
    is_flag=True,
    default=False,
    help="Do NOT clean up containers in case of error.",
)
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
def main(
    commands,
    config,
    username,
    password,
    server,
    root,
    workers,
    synapse_tag,
    no_autoclean_on_error,
    verbose,
    log_file,
):
    """Build, bring up, run and tear down Synapse test environments.

    COMMANDS is a list of `build`, `up`, `run` and `down`, executed in order
    (default: up run down). The same command may be repeated.
    """
    logger = logging.getLogger("mxtester")

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    try:
        test_config = ConfigLoader().load(config)
    except TesterError as exc:
        raise click.ClickException(str(exc)) from exc

    test_config = _apply_overrides(
        test_config,
        username=username,
        password=password,
        server=server,
        root=root,
        workers=workers,
        synapse_tag=synapse_tag,
        no_autoclean_on_error=no_autoclean_on_error,
    )
    commands = list(commands) or list(DEFAULT_COMMANDS)
    logger.debug("Running %s", commands)
    logger.debug("Root: %s", test_config.test_root)

    try:
        tester = MxTester(config=test_config)
        tester.run_commands(commands)
    except KeyboardInterrupt:
        console.print("[bold red]Operation cancelled by user.[/bold red]")
        logger.info("Operation cancelled by user")
        raise SystemExit(1)
    except TesterError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        logger.error(str(exc))
        raise SystemExit(1)
    except Exception as exc:
        console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
        logger.exception("Unexpected error")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
