from __future__ import annotations

import typer
from rich.table import Table

from invisible_setup.access import apply_domain, apply_ip_access, detect_public_ip, dns_hostnames, validate_ip
from invisible_setup.config_types import DEFAULT_DEPLOY_DIR
from invisible_setup.errors import AccessConfigError, SetupError
from invisible_setup.runner import CommandRunner

from .. import console
from ..config import resolve_sudo_user
from .setup_cmd import ensure_root

app = typer.Typer(help="Switch the platform between domain and IP-based access.")


@app.command("ip")
def access_ip(
        ip: str | None = typer.Argument(None, help="Server IP address (auto-detected when omitted)."),
        deploy_dir: str = typer.Option(DEFAULT_DEPLOY_DIR, "--deploy-dir", help="Deployment directory."),
):
    """Configure the platform for IP-based access with self-signed certificates."""
    try:
        ensure_root()
        if ip:
            server_ip = validate_ip(ip)
        else:
            console.info("Auto-detecting public IP address...")
            server_ip = detect_public_ip()
            if not server_ip:
                raise AccessConfigError(
                    "Could not auto-detect IP address. Pass it explicitly: invisible access ip <IP_ADDRESS>"
                )
            console.info(f"Detected IP: {server_ip}")
        console.rule("[bold]Configure IP Access[/]")
        console.info("Restarting services with IP-based configuration...")
        written = apply_ip_access(CommandRunner(sudo_user=resolve_sudo_user()), deploy_dir, server_ip)
    except SetupError as exc:
        console.err(str(exc))
        raise typer.Exit(code=1)

    for path in written:
        console.ok(f"Wrote {path}")
    console.ok("IP access configuration complete.")
    console.info("Access points (path-based routing):")
    console.print(f"  Chat UI: https://{server_ip}/chat")
    console.print(f"  Hub UI:  https://{server_ip}/hub")
    console.print(f"  API:     https://{server_ip}/api")
    console.print(f"  Supabase Studio: http://{server_ip}:54323")
    console.print(f"  Mailpit: http://{server_ip}:54324")
    console.warn("Browsers will warn about the self-signed certificate; this is expected.")
    console.info("Switch back to a domain later with: sudo invisible access domain <domain>")


@app.command("domain")
def access_domain(
        domain: str | None = typer.Argument(None, help="Root domain (e.g. example.com)."),
        deploy_dir: str = typer.Option(DEFAULT_DEPLOY_DIR, "--deploy-dir", help="Deployment directory."),
):
    """Point the platform at a root domain and refresh the Caddy configuration."""
    try:
        ensure_root()
        if not domain:
            domain = typer.prompt("Root domain for the application (e.g. example.com)", default="", show_default=False)
        console.rule("[bold]Add Domain[/]")
        clean = apply_domain(CommandRunner(sudo_user=resolve_sudo_user()), deploy_dir, domain or "")
    except SetupError as exc:
        console.err(str(exc))
        raise typer.Exit(code=1)

    console.ok(f"Platform is now configured to use: {clean}")
    server_ip = detect_public_ip() or "YOUR_SERVER_IP"
    table = Table(title="Required DNS A records (proxy: DNS only)")
    table.add_column("Type")
    table.add_column("Name")
    table.add_column("Value")
    table.add_column("TTL", justify="right")
    for host in dns_hostnames(clean):
        table.add_row("A", host, server_ip, "3600")
    console.print(table)
    console.info("Caddy provisions certificates automatically on first access.")
