from __future__ import annotations

import typer

from invisible_setup.errors import SetupError, SshKeyError
from invisible_setup.ssh_keys import add_authorized_key

from .. import console
from ..config import resolve_sudo_user
from .setup_cmd import ensure_root

app = typer.Typer(help="Manage SSH access to this server.")


@app.command("add-key")
def add_key(
        public_key: str = typer.Argument(..., help="Public key string, e.g. \"ssh-ed25519 AAAA... user@host\"."),
):
    """Add a public SSH key for the user who invoked sudo.

    Print your key on your local machine with `cat ~/.ssh/id_ed25519.pub`
    (generate one with `ssh-keygen -t ed25519` if needed) and pass it in quotes.
    """
    try:
        ensure_root()
        user = resolve_sudo_user()
        if not user:
            raise SshKeyError("SUDO_USER is not set. Run this command with sudo.")
        console.info(f"Adding public key for user: {user}")
        path, added = add_authorized_key(public_key, user)
    except SetupError as exc:
        console.err(str(exc))
        raise typer.Exit(code=1)
    if added:
        console.ok(f"Public key added to {path}")
    else:
        console.info(f"Key already present in {path}")
    console.ok(f"User '{user}' can now access the server with the provided key.")
