from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Mapping

from .errors import AuthenticationError, CommandError, ServiceStartError
from .runner import CommandRunner

VERIFY_IMAGE = "hello-world"

logger = logging.getLogger(__name__)


def compose_command(runner: CommandRunner) -> list[str]:
    if runner.ok(["docker", "compose", "version"]):
        return ["docker", "compose"]
    if runner.exists("docker-compose"):
        return ["docker-compose"]
    raise ServiceStartError("Docker Compose is not installed (tried `docker compose` and `docker-compose`).")


def compose_available(runner: CommandRunner) -> bool:
    return runner.ok(["docker", "compose", "version"]) or runner.exists("docker-compose")


def registry_authenticated(runner: CommandRunner, *, as_user: bool = True) -> bool:
    return runner.ok(["docker", "pull", VERIFY_IMAGE], as_user=as_user)


def docker_login(runner: CommandRunner, username: str, password: str, *, as_user: bool = True) -> None:
    res = runner.run(
        ["docker", "login", "-u", username, "--password-stdin"],
        input=password,
        as_user=as_user,
    )
    if res.returncode == 0:
        return
    stderr = (res.stderr or "").strip()
    raise AuthenticationError(f"Docker login failed: {stderr}" if stderr else "Docker login failed.")


def pull_image(runner: CommandRunner, image: str, *, as_user: bool = True) -> None:
    res = runner.run(["docker", "pull", image], as_user=as_user)
    if res.returncode != 0:
        raise CommandError(["docker", "pull", image], res.returncode, res.stderr)


def run_compose(
        runner: CommandRunner,
        deploy_dir: str | Path,
        args: list[str],
        *,
        env: Mapping[str, str] | None = None,
        compose: list[str] | None = None,
) -> None:
    base = compose or compose_command(runner)
    argv = [*base, *args]
    res = runner.run(argv, cwd=deploy_dir, env=env, as_user=True)
    if res.returncode != 0:
        raise CommandError(argv, res.returncode, res.stderr)


def service_states(
        runner: CommandRunner,
        deploy_dir: str | Path,
        *,
        compose: list[str] | None = None,
) -> dict[str, str]:
    base = compose or compose_command(runner)
    res = runner.run([*base, "ps", "--all", "--format", "json"], cwd=deploy_dir, as_user=True)
    if res.returncode != 0:
        logger.debug("compose ps failed: %s", (res.stderr or "").strip())
        return {}
    return parse_ps_json(res.stdout or "")


def parse_ps_json(output: str) -> dict[str, str]:
    """Map service name to state from `compose ps --format json` output.

    Compose v2 prints either one JSON array or one object per line depending
    on the release.
    """
    text = output.strip()
    if not text:
        return {}
    items: list[dict] = []
    try:
        data = json.loads(text)
    except ValueError:
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                item = json.loads(line)
            except ValueError:
                continue
            if isinstance(item, dict):
                items.append(item)
    else:
        if isinstance(data, list):
            items = [item for item in data if isinstance(item, dict)]
        elif isinstance(data, dict):
            items = [data]
    states: dict[str, str] = {}
    for item in items:
        name = str(item.get("Service") or item.get("Name") or "").strip()
        if not name:
            continue
        states[name] = str(item.get("State") or "").strip().lower()
    return states
