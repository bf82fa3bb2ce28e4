from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .progress import ConfigCache, ProgressStore
from .runner import CommandRunner

PLATFORM_VOLUME_RE = re.compile(r"^(app_|invisible_)(caddy_|supabase_|postgres_)")

logger = logging.getLogger(__name__)


@dataclass
class TeardownReport:
    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _best_effort(runner: CommandRunner, report: TeardownReport, label: str, argv: list[str]) -> str:
    report.steps.append(label)
    res = runner.run(argv)
    if res.returncode != 0:
        detail = (res.stderr or "").strip().splitlines()
        msg = f"{label}: {detail[-1]}" if detail else f"{label}: exit code {res.returncode}"
        logger.warning(msg)
        report.warnings.append(msg)
        return ""
    return res.stdout or ""


def _ids(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def teardown(
        runner: CommandRunner,
        deploy_dir: str | Path,
        *,
        store: ProgressStore | None = None,
        config_cache: ConfigCache | None = None,
) -> TeardownReport:
    """Remove every platform component from the host.

    Each step is non-critical: failures are collected as warnings and the
    next step still runs.
    """
    report = TeardownReport()
    if runner.exists("docker"):
        containers = _ids(_best_effort(runner, report, "List containers", ["docker", "ps", "-aq"]))
        if containers:
            _best_effort(runner, report, "Stop containers", ["docker", "stop", *containers])
            _best_effort(runner, report, "Remove containers", ["docker", "rm", "-f", *containers])
        images = _ids(_best_effort(runner, report, "List images", ["docker", "images", "-aq"]))
        if images:
            _best_effort(runner, report, "Remove images", ["docker", "rmi", "-f", *sorted(set(images))])
        _best_effort(runner, report, "Prune Docker system", ["docker", "system", "prune", "-af", "--volumes"])
        volumes = _ids(_best_effort(runner, report, "List volumes", ["docker", "volume", "ls", "-q"]))
        for volume in volumes:
            if PLATFORM_VOLUME_RE.match(volume):
                _best_effort(runner, report, f"Remove volume {volume}", ["docker", "volume", "rm", volume])
    else:
        report.warnings.append("docker not found; skipping container cleanup")

    path = Path(deploy_dir)
    if path.exists():
        report.steps.append(f"Remove {path}")
        try:
            shutil.rmtree(path)
        except OSError as exc:
            logger.warning("failed to remove %s: %s", path, exc)
            report.warnings.append(f"Remove {path}: {exc}")

    if runner.exists("ufw"):
        _best_effort(runner, report, "Reset firewall rules", ["ufw", "--force", "reset"])

    if store is not None:
        store.clear()
    if config_cache is not None:
        config_cache.clear()
    return report
