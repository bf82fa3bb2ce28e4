from __future__ import annotations

import signal
from contextlib import contextmanager
from typing import Iterator

import typer
from rich.prompt import Confirm
from rich.table import Table

from invisible_setup.access import detect_public_ip, dns_hostnames
from invisible_setup.config_types import DEFAULT_CONFIG_IMAGE, DEFAULT_DEPLOY_DIR, SetupConfig
from invisible_setup.errors import PrivilegeError, SetupError
from invisible_setup.lock import FileRunLock
from invisible_setup.progress import FileConfigCache, FileProgressStore
from invisible_setup.runner import CommandRunner, is_root
from invisible_setup.sequencer import RunResult, Sequencer, parse_stage_number
from invisible_setup.stages import STAGES, StageContext, StageRecord, stage_records
from invisible_setup.teardown import teardown

from .. import console
from ..config import complete_config, confirm_resume, initial_config, resolve_sudo_user

_FORWARDED_SIGNALS = ("SIGTERM", "SIGHUP")


def ensure_root() -> None:
    if not is_root():
        raise PrivilegeError("This command must be run as root (use sudo).")


@contextmanager
def _exit_on_signals() -> Iterator[None]:
    """Turn SIGTERM/SIGHUP into SystemExit so ``finally`` blocks release the lock."""

    def _handler(signum, _frame):
        raise SystemExit(128 + signum)

    previous = {}
    for name in _FORWARDED_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        previous[sig] = signal.signal(sig, _handler)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def print_stages() -> None:
    table = Table(title="Setup stages", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Stage")
    table.add_column("Description")
    for record in stage_records():
        table.add_row(str(record.ordinal), record.name, record.description)
    console.print(table)


def _stage_header(record: StageRecord) -> None:
    console.stage(record.ordinal, record.name)


def _stage_done(record: StageRecord) -> None:
    console.ok(f"Stage {record.ordinal} completed successfully.")


def _make_context(cfg: SetupConfig) -> StageContext:
    return StageContext(
        config=cfg,
        runner=CommandRunner(sudo_user=cfg.sudo_user),
        notify=console.notify,
    )


def build_sequencer(*, non_interactive: bool) -> Sequencer:
    return Sequencer(
        store=FileProgressStore(),
        lock=FileRunLock(),
        config_cache=FileConfigCache(),
        confirm_resume=lambda stage: confirm_resume(stage, non_interactive=non_interactive),
        make_context=_make_context,
        on_stage_start=_stage_header,
        on_stage_done=_stage_done,
    )


def setup(
        docker_username: str | None = typer.Option(None, "--docker-username", "-u", help="Docker Hub username."),
        docker_password: str | None = typer.Option(
            None,
            "--docker-password",
            "-p",
            help="Docker Hub password or access token.",
        ),
        app_domain: str | None = typer.Option(
            None,
            "--app-domain",
            "-d",
            help="Root domain for the application (e.g. example.com).",
        ),
        no_domain: bool = typer.Option(False, "--no-domain", help="Use IP-based access instead of a domain."),
        stage: str | None = typer.Option(None, "--stage", help=f"Start from a specific stage (1-{len(STAGES)})."),
        list_stages: bool = typer.Option(False, "--list-stages", help="List all available stages and exit."),
        reset: bool = typer.Option(False, "--reset", help="Reset setup progress and start fresh."),
        non_interactive: bool = typer.Option(False, "--non-interactive", help="Fail if required inputs are missing."),
        assume_yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt."),
        deploy_dir: str | None = typer.Option(
            None,
            "--deploy-dir",
            help=f"Deployment directory (default: {DEFAULT_DEPLOY_DIR}).",
        ),
        config_image: str | None = typer.Option(
            None,
            "--config-image",
            help=f"Configuration image (default: {DEFAULT_CONFIG_IMAGE}).",
        ),
):
    """Provision the Invisible platform on this host, stage by stage.

    Progress is saved after each stage; re-running resumes where it stopped.

    Examples:
      sudo invisible setup -u myuser -d example.com
      sudo invisible setup --no-domain --non-interactive -u myuser -p <token>
      sudo invisible setup --stage 5
    """
    if list_stages:
        print_stages()
        return

    sequencer = build_sequencer(non_interactive=non_interactive)
    try:
        forced = parse_stage_number(stage, sequencer.total)
        ensure_root()
        cfg = initial_config(
            docker_username=docker_username,
            docker_password=docker_password,
            app_domain=app_domain,
            no_domain=no_domain,
            deploy_dir=deploy_dir,
            config_image=config_image,
        )
        console.rule("[bold]Invisible Platform Setup[/]")
        if reset:
            console.info("Resetting setup progress...")

        def _complete(merged: SetupConfig, done: int) -> SetupConfig:
            console.info(f"Starting from stage {done + 1}...")
            completed = complete_config(merged, done, non_interactive=non_interactive)
            if not (non_interactive or assume_yes) and not confirm_proceed(completed):
                console.info("Setup cancelled.")
                raise typer.Exit(code=0)
            return completed

        with _exit_on_signals():
            result = sequencer.run(
                cfg,
                forced_start_stage=forced,
                reset_requested=reset,
                complete_config=_complete,
            )
    except SetupError as exc:
        console.err(str(exc))
        raise typer.Exit(code=1)

    if not result.ok:
        console.err(result.message)
        console.info(f"Re-run `sudo invisible setup` to resume from stage {result.failed_stage.ordinal}.")
        raise typer.Exit(code=1)
    print_summary(result)


def stages() -> None:
    """List all setup stages."""
    print_stages()


def print_summary(result: RunResult) -> None:
    cfg = result.config or SetupConfig()
    console.rule("[bold]Invisible Platform Setup Complete[/]")
    console.ok("Setup completed successfully.")
    server_ip = result.public_ip or detect_public_ip() or "YOUR_SERVER_IP"
    deploy = cfg.deploy_dir

    if cfg.no_domain:
        console.info("Services are configured for IP-based access (self-signed certificates):")
        console.print(f"  Chat UI: https://{server_ip}/chat")
        console.print(f"  Hub UI:  https://{server_ip}/hub")
        console.print(f"  API:     https://{server_ip}/api")
        console.print(f"  Mailpit: http://{server_ip}:54324")
    else:
        console.info("Configure these DNS A records for your domain (proxy: DNS only):")
        table = Table(show_header=True)
        table.add_column("Type")
        table.add_column("Name")
        table.add_column("Value")
        table.add_column("TTL", justify="right")
        for host in dns_hostnames(cfg.app_domain):
            table.add_row("A", host, server_ip, "3600")
        console.print(table)
        console.info("Caddy provisions certificates on first access; this can take 30-60 seconds.")
        for host in dns_hostnames(cfg.app_domain):
            console.print(f"  https://{host}")

    console.info("Useful commands:")
    console.print(f"  cd {deploy} && docker compose ps")
    console.print(f"  cd {deploy} && docker compose logs -f <service>")
    console.print(f"  cd {deploy} && docker compose pull && docker compose up -d")
    console.print("  sudo ufw status")


def teardown_cmd(
        deploy_dir: str = typer.Option(DEFAULT_DEPLOY_DIR, "--deploy-dir", help="Deployment directory to delete."),
        assume_yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
):
    """DANGEROUS: remove all containers, images, platform data and firewall rules."""
    try:
        ensure_root()
    except SetupError as exc:
        console.err(str(exc))
        raise typer.Exit(code=1)

    console.rule("[bold]Complete System Reset[/]")
    console.warn("This removes all Docker containers, images and volumes on this host,")
    console.warn(f"the deployment directory {deploy_dir}, and all UFW rules.")
    if not assume_yes:
        typed = typer.prompt("Type YES to confirm", default="", show_default=False)
        if typed != "YES":
            console.info("Reset cancelled.")
            raise typer.Exit(code=0)

    report = teardown(
        CommandRunner(sudo_user=resolve_sudo_user()),
        deploy_dir,
        store=FileProgressStore(),
        config_cache=FileConfigCache(),
    )
    for step in report.steps:
        console.info(step)
    for warning in report.warnings:
        console.warn(warning)
    console.ok("System reset completed. Run `sudo invisible setup` to reinstall the platform.")


def confirm_proceed(cfg: SetupConfig) -> bool:
    console.info(f"Docker username: {cfg.docker_username or '(not set)'}")
    console.info(f"Access: {cfg.access_label}")
    return Confirm.ask("Proceed with setup?", default=True)
