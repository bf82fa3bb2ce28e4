from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Mapping

from .errors import CommandError, SetupError

logger = logging.getLogger(__name__)


class CommandRunner:
    """Runs external commands as argv lists, never through a shell.

    ``as_user=True`` drops privileges to the invoking sudo user, the same
    way the platform's own scripts expect to be run.
    """

    def __init__(self, *, sudo_user: str | None = None):
        self.sudo_user = sudo_user

    def _wrap(self, argv: list[str], *, as_user: bool, keep_env: bool) -> list[str]:
        if not as_user or not self.sudo_user or self.sudo_user == "root":
            return list(argv)
        if not is_root():
            return list(argv)
        prefix = ["sudo"]
        if keep_env:
            prefix.append("-E")
        return [*prefix, "-u", self.sudo_user, *argv]

    def run(
            self,
            argv: list[str],
            *,
            cwd: str | Path | None = None,
            env: Mapping[str, str] | None = None,
            input: str | None = None,
            as_user: bool = False,
            capture: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        cmd = self._wrap(argv, as_user=as_user, keep_env=env is not None)
        full_env = None
        if env is not None:
            full_env = dict(os.environ)
            full_env.update(env)
        logger.debug("run: %s%s", shlex.join(cmd), f" (cwd={cwd})" if cwd else "")
        try:
            return subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                env=full_env,
                input=input,
                text=True,
                capture_output=capture,
                check=False,
            )
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(cmd, 127, "", str(exc))

    def ok(self, argv: list[str], **kwargs) -> bool:
        return self.run(argv, **kwargs).returncode == 0

    def checked(
            self,
            argv: list[str],
            *,
            error: type[SetupError] | None = None,
            message: str | None = None,
            **kwargs,
    ) -> subprocess.CompletedProcess[str]:
        res = self.run(argv, **kwargs)
        if res.returncode == 0:
            return res
        if error is None:
            raise CommandError(argv, res.returncode, res.stderr)
        detail = (res.stderr or res.stdout or "").strip()
        text = message or f"`{shlex.join(argv)}` failed"
        if detail:
            text = f"{text}: {detail.splitlines()[-1]}"
        raise error(text)

    def exists(self, command: str) -> bool:
        return shutil.which(command) is not None


def is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0
