from __future__ import annotations

import subprocess
from typing import Callable

import pytest

from invisible_setup.runner import CommandRunner

Result = int | str | subprocess.CompletedProcess | Callable


class FakeRunner(CommandRunner):
    """Records argv lists and answers from scripted responses.

    ``script(prefix, *results)`` matches calls whose argv starts with
    ``prefix``; each call pops the next result and the last one repeats.
    A result is a return code, a stdout string (exit 0), a
    CompletedProcess, or a callable ``(argv, kwargs) -> result``.
    """

    def __init__(self, *, commands: set[str] | None = None, sudo_user: str | None = None):
        super().__init__(sudo_user=sudo_user)
        self.calls: list[list[str]] = []
        self.kwargs: list[dict] = []
        self.commands = commands if commands is not None else {"docker", "ufw", "jq"}
        self._scripts: list[tuple[tuple[str, ...], list[Result]]] = []

    def script(self, prefix: list[str] | tuple[str, ...], *results: Result) -> None:
        self._scripts.insert(0, (tuple(prefix), list(results)))

    def run(self, argv, **kwargs):
        argv = list(argv)
        self.calls.append(argv)
        self.kwargs.append(kwargs)
        for prefix, results in self._scripts:
            if tuple(argv[: len(prefix)]) != prefix:
                continue
            result = results.pop(0) if len(results) > 1 else results[0]
            return self._complete(argv, kwargs, result)
        return subprocess.CompletedProcess(argv, 0, "", "")

    def _complete(self, argv, kwargs, result):
        if callable(result):
            result = result(argv, kwargs)
        if isinstance(result, subprocess.CompletedProcess):
            return result
        if isinstance(result, int):
            return subprocess.CompletedProcess(argv, result, "", "boom" if result else "")
        return subprocess.CompletedProcess(argv, 0, result or "", "")

    def exists(self, command: str) -> bool:
        return command in self.commands

    def called(self, *prefix: str) -> list[list[str]]:
        return [argv for argv in self.calls if tuple(argv[: len(prefix)]) == prefix]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def state_dir(tmp_path, monkeypatch):
    path = tmp_path / "state"
    monkeypatch.setenv("INVISIBLE_STATE_DIR", str(path))
    return path
