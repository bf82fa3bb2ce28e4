from __future__ import annotations

import os
import pwd
import shutil
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import load_ssh_public_key

from .errors import SshKeyError


def normalize_public_key(raw: str) -> str:
    key = " ".join((raw or "").split())
    if not key:
        raise SshKeyError("Public key is empty.")
    if "PRIVATE KEY" in key:
        raise SshKeyError("That looks like a private key. Pass the contents of the .pub file instead.")
    try:
        load_ssh_public_key(key.encode("utf-8"))
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise SshKeyError(f"Invalid public SSH key: {exc}") from exc
    return key


def user_home(user: str) -> Path:
    try:
        return Path(pwd.getpwnam(user).pw_dir)
    except KeyError:
        raise SshKeyError(f"Unknown user: {user}")


def add_authorized_key(public_key: str, user: str, *, home: Path | None = None) -> tuple[Path, bool]:
    """Append ``public_key`` to the user's authorized_keys.

    Returns the file path and whether the key was newly added.
    """
    key = normalize_public_key(public_key)
    ssh_dir = (home or user_home(user)) / ".ssh"
    auth_keys = ssh_dir / "authorized_keys"
    ssh_dir.mkdir(parents=True, exist_ok=True)

    content = auth_keys.read_text(encoding="utf-8") if auth_keys.exists() else ""
    existing = [" ".join(line.split()) for line in content.splitlines()]
    added = key not in existing
    if added:
        with auth_keys.open("a", encoding="utf-8") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write(key + "\n")

    os.chmod(ssh_dir, 0o700)
    os.chmod(auth_keys, 0o600)
    try:
        shutil.chown(ssh_dir, user=user, group=user)
        shutil.chown(auth_keys, user=user, group=user)
    except (LookupError, PermissionError) as exc:
        raise SshKeyError(f"Failed to set ownership for {ssh_dir}: {exc}") from exc
    return auth_keys, added
