from __future__ import annotations

import os
import stat

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from invisible_setup import ssh_keys
from invisible_setup.errors import SshKeyError


def _keypair() -> tuple[str, str]:
    private = Ed25519PrivateKey.generate()
    public = private.public_key().public_bytes(Encoding.OpenSSH, PublicFormat.OpenSSH).decode()
    private_pem = private.private_bytes(Encoding.PEM, PrivateFormat.OpenSSH, NoEncryption()).decode()
    return f"{public} alice@laptop", private_pem


@pytest.fixture
def chowned(monkeypatch):
    calls: list[tuple[str, str]] = []
    monkeypatch.setattr(ssh_keys.shutil, "chown", lambda path, user=None, group=None: calls.append((str(path), user)))
    return calls


def test_add_authorized_key_creates_file(tmp_path, chowned) -> None:
    public, _ = _keypair()
    path, added = ssh_keys.add_authorized_key(public, "alice", home=tmp_path)

    assert added
    assert path == tmp_path / ".ssh" / "authorized_keys"
    assert path.read_text(encoding="utf-8") == public + "\n"
    assert stat.S_IMODE(os.stat(tmp_path / ".ssh").st_mode) == 0o700
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert {user for _, user in chowned} == {"alice"}


def test_add_authorized_key_is_idempotent(tmp_path, chowned) -> None:
    public, _ = _keypair()
    ssh_keys.add_authorized_key(public, "alice", home=tmp_path)
    _, added = ssh_keys.add_authorized_key("  " + public.replace(" ", "   ") + "\n", "alice", home=tmp_path)

    assert not added
    assert (tmp_path / ".ssh" / "authorized_keys").read_text(encoding="utf-8").count("ssh-ed25519") == 1


def test_add_authorized_key_appends_after_unterminated_line(tmp_path, chowned) -> None:
    first, _ = _keypair()
    second, _ = _keypair()
    ssh_dir = tmp_path / ".ssh"
    ssh_dir.mkdir()
    (ssh_dir / "authorized_keys").write_text(first, encoding="utf-8")

    ssh_keys.add_authorized_key(second, "alice", home=tmp_path)
    assert (ssh_dir / "authorized_keys").read_text(encoding="utf-8").splitlines() == [first, second]


def test_rejects_private_and_invalid_keys(tmp_path, chowned) -> None:
    _, private_pem = _keypair()
    with pytest.raises(SshKeyError, match="private key"):
        ssh_keys.add_authorized_key(private_pem, "alice", home=tmp_path)
    with pytest.raises(SshKeyError, match="Invalid public SSH key"):
        ssh_keys.add_authorized_key("ssh-ed25519 not-base64!!", "alice", home=tmp_path)
    with pytest.raises(SshKeyError, match="empty"):
        ssh_keys.add_authorized_key("   ", "alice", home=tmp_path)
    assert not (tmp_path / ".ssh").exists()


def test_unknown_user(monkeypatch) -> None:
    def _missing(name: str):
        raise KeyError(name)

    monkeypatch.setattr(ssh_keys.pwd, "getpwnam", _missing)
    with pytest.raises(SshKeyError, match="Unknown user"):
        ssh_keys.user_home("ghost")
