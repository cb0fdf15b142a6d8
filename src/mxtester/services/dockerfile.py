"""Dockerfile rendering for the Synapse image under test."""

import os
from typing import List, Optional

from mxtester.models import HARDCODED_GUEST_PORT, ModuleConfig

# Creates the database used by workers, copied to `conf/postgres.sql`.
WORKER_POSTGRES_SQL = """-- Setup a user and a database.

CREATE USER synapse PASSWORD 'password';
CREATE DATABASE synapse OWNER = 'synapse' ENCODING 'UTF8' LC_COLLATE='C' LC_CTYPE='C' template=template0;
"""

VOLUMES = [
    "/data",
    "/conf/workers",
    "/etc/nginx/conf.d",
    "/etc/supervisor/conf.d",
    "/var/log/workers",
]


class DockerfileService:
    """Builds the Dockerfile that layers modules on top of a Synapse release."""

    def build_dockerfile(
        self,
        docker_tag: str,
        modules: List[ModuleConfig],
        workers_enabled: bool,
        uid: Optional[int] = None,
    ) -> str:
        if uid is None:
            uid = os.getuid() if hasattr(os, "getuid") else 0

        # As root, let `useradd` pick a uid: 0 is taken in the guest.
        maybe_uid = f"--uid {uid}" if uid != 0 else ""

        workers_section = ""
        if workers_enabled:
            workers_section = """
# Install dependencies
RUN apt-get update && apt-get install -y postgresql postgresql-client-13 supervisor redis nginx sudo lsof

# For workers, we're not using start.py but workers_start.py
COPY workers_start.py /workers_start.py
COPY conf/* /conf/

RUN chmod ugo+rx /workers_start.py && chown mx-tester /workers_start.py
"""

        setup = "\n".join(
            f"## Setup {module.name}\n" + "\n".join(f"RUN {line}" for line in module.install.lines) + "\n"
            for module in modules
            if module.install
        )
        env = "".join(
            f"ENV {key}={value}\n" for module in modules for key, value in module.env.items()
        )
        copy_modules = "\n".join(
            f"COPY {module.name} /mx-tester/{module.name}" for module in modules
        )
        copy_resources = "".join(
            f"COPY {source} /mx-tester/{module.name}/{dest}\n"
            for module in modules
            for dest, source in module.copy.items()
        )
        install = "\n".join(
            f"RUN /usr/local/bin/python -m pip install /mx-tester/{module.name}" for module in modules
        )
        volumes = ", ".join(f'"{volume}"' for volume in VOLUMES)

        return f"""
# A custom Dockerfile to rebuild synapse from the official release + plugins

FROM {docker_tag}

VOLUME [{volumes}]

# Files written by the container must remain readable and removable by the host user.
# tty is needed to work around https://github.com/moby/moby/issues/31243
RUN useradd mx-tester {maybe_uid} --groups sudo,tty

RUN echo "mx-tester:password" | chpasswd

# Show the Synapse version, to aid with debugging.
RUN pip show matrix-synapse
{workers_section}
# Copy and install custom modules.
RUN mkdir /mx-tester
{setup}
{env}
{copy_modules}
{copy_resources}
{install}

ENTRYPOINT []

EXPOSE {HARDCODED_GUEST_PORT}/tcp 8009/tcp 8448/tcp
""".strip() + "\n"
