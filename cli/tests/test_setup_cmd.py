from __future__ import annotations

import httpx
import pytest
from typer.testing import CliRunner

from invisible_cli import main
from invisible_cli.commands import access_cmd, mail_cmd, setup_cmd, ssh_cmd
from invisible_setup.errors import SetupError
from invisible_setup.lock import MemoryRunLock
from invisible_setup.mailpit import MailpitClient, resolve_endpoint
from invisible_setup.progress import MemoryConfigCache, MemoryProgressStore
from invisible_setup.runner import CommandRunner
from invisible_setup.sequencer import Sequencer
from invisible_setup.stages import Stage, StageContext, StageRecord

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated(state_dir, monkeypatch) -> None:
    for name in ("DOCKER_USERNAME", "DOCKER_PASSWORD", "APP_DOMAIN", "SUDO_USER"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(setup_cmd, "detect_public_ip", lambda: "203.0.113.10")
    monkeypatch.setattr(access_cmd, "detect_public_ip", lambda: "203.0.113.10")


def _as_root(monkeypatch, root: bool = True) -> None:
    monkeypatch.setattr(setup_cmd, "is_root", lambda: root)


def _fake_sequencer(monkeypatch, *, fail_at: int | None = None) -> MemoryProgressStore:
    store = MemoryProgressStore()

    def _body(ordinal: int):
        def _run(_ctx: StageContext) -> None:
            if ordinal == fail_at:
                raise SetupError("registry unreachable")

        return _run

    def _build(*, non_interactive: bool) -> Sequencer:
        return Sequencer(
            store=store,
            lock=MemoryRunLock(),
            config_cache=MemoryConfigCache(),
            confirm_resume=lambda _s: True,
            stages=[Stage(StageRecord(i, f"Stage {i}", ""), _body(i)) for i in range(1, 7)],
            make_context=lambda cfg: StageContext(config=cfg, runner=CommandRunner()),
            on_stage_start=setup_cmd._stage_header,
            on_stage_done=setup_cmd._stage_done,
        )

    monkeypatch.setattr(setup_cmd, "build_sequencer", _build)
    return store


def test_help_lists_command_groups() -> None:
    result = runner.invoke(main._build_app(), ["--help"])
    assert result.exit_code == 0
    for name in ("setup", "stages", "teardown", "access", "ssh", "mail"):
        assert name in result.output


def test_list_stages_needs_no_root(monkeypatch) -> None:
    _as_root(monkeypatch, False)
    result = runner.invoke(main.app, ["setup", "--list-stages"])
    assert result.exit_code == 0
    assert "Install Dependencies" in result.output
    assert "Configure Firewall" in result.output


@pytest.mark.parametrize("stage", ["0", "9", "abc"])
def test_invalid_stage_exits_1(stage) -> None:
    result = runner.invoke(main.app, ["setup", "--stage", stage])
    assert result.exit_code == 1
    assert "Invalid stage number" in result.output


def test_setup_requires_root(monkeypatch) -> None:
    _as_root(monkeypatch, False)
    result = runner.invoke(main.app, ["setup", "--non-interactive"])
    assert result.exit_code == 1
    assert "must be run as root" in result.output


def test_non_interactive_missing_flags(monkeypatch) -> None:
    _as_root(monkeypatch)
    _fake_sequencer(monkeypatch)
    result = runner.invoke(main.app, ["setup", "--non-interactive", "-u", "alice"])
    assert result.exit_code == 1
    assert "Missing required flags" in result.output


def test_full_run_prints_ip_summary(monkeypatch) -> None:
    _as_root(monkeypatch)
    store = _fake_sequencer(monkeypatch)
    result = runner.invoke(
        main.app,
        ["setup", "--non-interactive", "-u", "alice", "-p", "token", "--no-domain"],
    )
    assert result.exit_code == 0, result.output
    assert "Stage 6 completed successfully." in result.output
    assert "https://203.0.113.10/chat" in result.output
    assert store.history == [1, 2, 3, 4, 5, 6]


def test_domain_run_prints_dns_records(monkeypatch) -> None:
    _as_root(monkeypatch)
    _fake_sequencer(monkeypatch)
    result = runner.invoke(
        main.app,
        ["setup", "--non-interactive", "-u", "alice", "-p", "token", "-d", "example.com"],
    )
    assert result.exit_code == 0, result.output
    assert "api.example.com" in result.output
    assert "hub.example.com" in result.output


def test_stage_failure_exits_1_with_resume_hint(monkeypatch) -> None:
    _as_root(monkeypatch)
    store = _fake_sequencer(monkeypatch, fail_at=2)
    result = runner.invoke(
        main.app,
        ["setup", "--non-interactive", "-u", "alice", "-p", "token", "--no-domain"],
    )
    assert result.exit_code == 1
    assert "registry unreachable" in result.output
    assert "resume from stage 2" in result.output
    assert store.stage == 1


def test_interactive_setup_can_be_cancelled(monkeypatch) -> None:
    _as_root(monkeypatch)
    store = _fake_sequencer(monkeypatch)
    result = runner.invoke(
        main.app,
        ["setup", "-u", "alice", "-p", "token", "--no-domain"],
        input="n\n",
    )
    assert result.exit_code == 0
    assert "Setup cancelled." in result.output
    assert store.history == []


def test_teardown_declined(monkeypatch) -> None:
    _as_root(monkeypatch)

    def _boom(*_a, **_k):
        raise AssertionError("teardown must not run")

    monkeypatch.setattr(setup_cmd, "teardown", _boom)
    result = runner.invoke(main.app, ["teardown"], input="no\n")
    assert result.exit_code == 0
    assert "Reset cancelled." in result.output


def test_access_ip_rejects_invalid_address(monkeypatch) -> None:
    monkeypatch.setattr(access_cmd, "ensure_root", lambda: None)
    result = runner.invoke(main.app, ["access", "ip", "300.1.2.3"])
    assert result.exit_code == 1
    assert "Invalid IP address" in result.output


def test_access_domain_requires_installation(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(access_cmd, "ensure_root", lambda: None)
    result = runner.invoke(main.app, ["access", "domain", "example.com", "--deploy-dir", str(tmp_path)])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_ssh_add_key_requires_sudo_user(monkeypatch) -> None:
    monkeypatch.setattr(ssh_cmd, "ensure_root", lambda: None)
    result = runner.invoke(main.app, ["ssh", "add-key", "ssh-ed25519 AAAA"])
    assert result.exit_code == 1
    assert "SUDO_USER" in result.output


def _mailpit_client(messages: list[dict], bodies: dict[str, dict]):
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/messages":
            return httpx.Response(200, json={"messages": messages})
        return httpx.Response(200, json=bodies[request.url.path.rsplit("/", 1)[-1]])

    return lambda _server: MailpitClient(resolve_endpoint(None), transport=httpx.MockTransport(_handler))


def test_mail_code_prints_code_and_link(monkeypatch) -> None:
    messages = [{"ID": "a", "Subject": "Your code", "Date": "today", "To": [{"Address": "me@example.com"}]}]
    bodies = {"a": {"HTML": '<b>246810</b> <a href="https://chat.example.com/c?t=1">go</a>', "Text": ""}}
    monkeypatch.setattr(mail_cmd, "_make_client", _mailpit_client(messages, bodies))

    result = runner.invoke(main.app, ["mail", "code", "me@example.com"])
    assert result.exit_code == 0, result.output
    assert "246810" in result.output
    assert "https://chat.example.com/c?t=1" in result.output


def test_mail_code_lists_recent_when_no_match(monkeypatch) -> None:
    messages = [{"ID": "a", "Subject": "Welcome", "Date": "today", "To": [{"Address": "else@example.com"}]}]
    monkeypatch.setattr(mail_cmd, "_make_client", _mailpit_client(messages, {}))

    result = runner.invoke(main.app, ["mail", "code", "me@example.com"])
    assert result.exit_code == 0
    assert "No emails found" in result.output
    assert "Welcome" in result.output


def test_mail_link_without_link_exits_1(monkeypatch) -> None:
    messages = [{"ID": "a", "Subject": "Code only", "Date": "today", "To": [{"Address": "me@example.com"}]}]
    bodies = {"a": {"HTML": "", "Text": "code 135790"}}
    monkeypatch.setattr(mail_cmd, "_make_client", _mailpit_client(messages, bodies))

    result = runner.invoke(main.app, ["mail", "link", "me@example.com"])
    assert result.exit_code == 1
