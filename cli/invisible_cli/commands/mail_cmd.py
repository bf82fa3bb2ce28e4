from __future__ import annotations

import typer

from invisible_setup.errors import SetupError
from invisible_setup.mailpit import RECENT_LIMIT, MailpitClient, lookup_auth_details, resolve_endpoint

from .. import console

app = typer.Typer(help="Read verification codes and links from the Mailpit test inbox.")


def _make_client(server: str | None) -> MailpitClient:
    return MailpitClient(resolve_endpoint(server))


@app.command("code")
def mail_code(
        email: str = typer.Argument(..., help="Recipient email address."),
        server: str | None = typer.Argument(None, help="Server IP or domain (default: local Mailpit)."),
):
    """Show the latest verification code and link sent to EMAIL."""
    try:
        with _make_client(server) as client:
            console.info(f"Connecting to Mailpit at: {client.endpoint.api_base}")
            console.info(f"Searching for emails sent to: {email}")
            details = lookup_auth_details(client, email)
            recent = client.messages()[:RECENT_LIMIT] if details is None else []
            ui_url = client.endpoint.ui_url
    except SetupError as exc:
        console.err(str(exc))
        console.info("Make sure Mailpit is running and reachable (port 54324 for remote access).")
        raise typer.Exit(code=1)

    if details is None:
        console.warn(f"No emails found for {email}.")
        if recent:
            console.info("Recent emails in Mailpit:")
            for msg in recent:
                console.print(f"  • {msg.recipient} - {msg.subject}", markup=False)
        return

    console.rule(f"[bold]Authentication details for {email}[/]")
    console.info(f"Email: {details.message.subject}")
    if details.code:
        console.ok(f"Verification code: {details.code}")
    if details.link:
        console.ok("Authentication link:")
        console.print(details.link, markup=False, soft_wrap=True)
    if not details.code and not details.link:
        console.warn("No verification code or link found in this email.")
        console.info(f"View the full email at: {ui_url}")
    if details.others:
        console.info(f"Other recent emails for {email}:")
        for msg in details.others:
            console.print(f"  • {msg.subject} ({msg.date})", markup=False)


@app.command("link")
def mail_link(
        email: str = typer.Argument(..., help="Recipient email address."),
        server: str | None = typer.Argument(None, help="Server IP or domain (default: local Mailpit)."),
):
    """Print only the latest authentication link sent to EMAIL."""
    try:
        with _make_client(server) as client:
            details = lookup_auth_details(client, email)
    except SetupError as exc:
        console.err(str(exc))
        raise typer.Exit(code=1)
    if details is None:
        console.info(f"No emails found for {email}.")
        return
    if not details.link:
        console.err("Could not find a confirmation link in the latest email.")
        raise typer.Exit(code=1)
    console.print(details.link, markup=False, soft_wrap=True)
