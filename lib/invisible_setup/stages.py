from __future__ import annotations

import logging
import shutil
import socket
import time
from dataclasses import dataclass, field
from typing import Callable

from .access import detect_public_ip, ip_access_env, write_ip_access_files
from .config_types import SetupConfig
from .docker import (
    compose_available,
    compose_command,
    docker_login,
    pull_image,
    registry_authenticated,
    run_compose,
    service_states,
)
from .errors import (
    AccessConfigError,
    CommandError,
    ConfigExtractionError,
    DependencyInstallError,
    EnvironmentGenerationError,
    FirewallError,
    MissingCredentialError,
    PortConflictError,
    ServiceReadinessTimeout,
    ServiceStartError,
)
from .retry import DEFAULT_BACKOFF_S, DEFAULT_MAX_ATTEMPTS, retry
from .runner import CommandRunner

APT_PACKAGES = ("docker.io", "docker-compose-v2", "jq", "ufw", "curl")
REQUIRED_COMMANDS = ("docker", "ufw", "jq")
REQUIRED_CONFIG_FILES = ("docker-compose.yml", "setup.sh")
CONFIG_SOURCE_PATH = "/config/."
GENERATOR_SCRIPT = "setup.sh"
WEB_PORTS = (80, 443)
CRITICAL_SERVICES = ("caddy", "api", "supabase_auth")
DEFAULT_READINESS_TIMEOUT_S = 60.0
DEFAULT_READINESS_INTERVAL_S = 2.0
FIREWALL_RULES = (
    ("22/tcp", "SSH access"),
    ("80/tcp", "HTTP for Caddy"),
    ("443/tcp", "HTTPS for Caddy"),
    ("443/udp", "HTTP/3 QUIC for Caddy"),
)

logger = logging.getLogger(__name__)


def _log_notify(level: str, message: str) -> None:
    if level == "warn":
        logger.warning(message)
    else:
        logger.info(message)


def port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(1.0)
        return sock.connect_ex((host, port)) == 0


@dataclass(frozen=True)
class StageRecord:
    ordinal: int
    name: str
    description: str


@dataclass
class StageContext:
    config: SetupConfig
    runner: CommandRunner
    notify: Callable[[str, str], None] = _log_notify
    sleep: Callable[[float], None] = time.sleep
    monotonic: Callable[[], float] = time.monotonic
    port_in_use: Callable[[int], bool] = port_in_use
    detect_ip: Callable[[], str | None] = detect_public_ip
    retry_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_s: float = DEFAULT_BACKOFF_S
    readiness_timeout_s: float = DEFAULT_READINESS_TIMEOUT_S
    readiness_interval_s: float = DEFAULT_READINESS_INTERVAL_S
    public_ip: str | None = field(default=None, init=False)

    def retry(self, operation: Callable[[], object], label: str) -> None:
        def _on_retry(attempt: int, exc: BaseException) -> None:
            self.notify(
                "warn",
                f"{label} failed (attempt {attempt}/{self.retry_attempts}): {exc}. "
                f"Retrying in {self.retry_backoff_s:g}s...",
            )

        retry(
            operation,
            max_attempts=self.retry_attempts,
            backoff_s=self.retry_backoff_s,
            sleep=self.sleep,
            on_retry=_on_retry,
        )


@dataclass(frozen=True)
class Stage:
    record: StageRecord
    body: Callable[[StageContext], None]

    @property
    def ordinal(self) -> int:
        return self.record.ordinal

    @property
    def name(self) -> str:
        return self.record.name

    def run(self, ctx: StageContext) -> None:
        self.body(ctx)


def install_dependencies(ctx: StageContext) -> None:
    runner = ctx.runner
    missing = [cmd for cmd in REQUIRED_COMMANDS if not runner.exists(cmd)]
    if not missing and compose_available(runner):
        ctx.notify("info", "All dependencies are already installed.")
        return
    if missing:
        ctx.notify("info", f"Missing: {', '.join(missing)}. Installing packages...")
    else:
        ctx.notify("info", "Docker Compose is missing. Installing packages...")

    apt_env = {"DEBIAN_FRONTEND": "noninteractive"}
    try:
        ctx.retry(lambda: runner.checked(["apt-get", "update"], env=apt_env), "apt-get update")
        ctx.retry(
            lambda: runner.checked(["apt-get", "install", "-y", *APT_PACKAGES], env=apt_env),
            "apt-get install",
        )
    except CommandError as exc:
        raise DependencyInstallError(f"Package installation failed: {exc}") from exc

    if not runner.ok(["systemctl", "enable", "--now", "docker"]):
        ctx.notify("warn", "Could not enable the docker service via systemctl.")

    user = ctx.config.sudo_user
    if user and user != "root":
        res = runner.run(["usermod", "-aG", "docker", user])
        if res.returncode != 0:
            raise DependencyInstallError(f"Failed to add {user} to the docker group.")
    ctx.notify("ok", "Docker, Docker Compose, jq and UFW installed.")


def registry_login(ctx: StageContext) -> None:
    cfg = ctx.config
    if registry_authenticated(ctx.runner):
        ctx.notify("ok", "Already logged into the registry.")
        return
    if not cfg.has_credentials:
        if not cfg.docker_username.strip():
            raise MissingCredentialError("Docker username required for login (--docker-username).")
        raise MissingCredentialError("Docker password required for login (--docker-password).")
    docker_login(ctx.runner, cfg.docker_username.strip(), cfg.docker_password)
    ctx.notify("ok", f"Docker login succeeded for {cfg.docker_username.strip()}.")


def fetch_configuration(ctx: StageContext) -> None:
    cfg = ctx.config
    runner = ctx.runner
    deploy = cfg.deploy_path
    deploy.mkdir(parents=True, exist_ok=True)
    if cfg.sudo_user and cfg.sudo_user != "root":
        try:
            shutil.chown(deploy, user=cfg.sudo_user, group=cfg.sudo_user)
        except (LookupError, PermissionError) as exc:
            ctx.notify("warn", f"Could not chown {deploy} to {cfg.sudo_user}: {exc}")

    ctx.notify("info", f"Pulling configuration image: {cfg.config_image}")
    try:
        ctx.retry(lambda: pull_image(runner, cfg.config_image), f"docker pull {cfg.config_image}")
    except CommandError as exc:
        raise ConfigExtractionError(f"Failed to pull {cfg.config_image}: {exc}") from exc

    res = runner.run(["docker", "create", cfg.config_image], as_user=True)
    lines = (res.stdout or "").strip().splitlines() if res.returncode == 0 else []
    if not lines:
        raise ConfigExtractionError(
            f"Failed to create a container from {cfg.config_image}: {(res.stderr or '').strip()}"
        )
    cid = lines[-1].strip()
    try:
        ctx.notify("info", f"Extracting configuration files to {deploy}...")
        cp = runner.run(["docker", "cp", f"{cid}:{CONFIG_SOURCE_PATH}", str(deploy)], as_user=True)
        if cp.returncode != 0:
            raise ConfigExtractionError(f"docker cp failed: {(cp.stderr or '').strip()}")
        missing = [name for name in REQUIRED_CONFIG_FILES if not (deploy / name).exists()]
        if missing:
            raise ConfigExtractionError(
                f"Configuration incomplete, missing from {deploy}: {', '.join(missing)}"
            )
    finally:
        rm = runner.run(["docker", "rm", "-v", cid], as_user=True)
        if rm.returncode != 0:
            ctx.notify("warn", f"Failed to remove temporary container {cid[:12]}.")
    ctx.notify("ok", "Configuration files extracted.")


def generator_env(cfg: SetupConfig) -> dict[str, str]:
    return {
        "APP_DOMAIN": "" if cfg.no_domain else cfg.app_domain,
        "NO_DOMAIN": "true" if cfg.no_domain else "false",
        "DOCKER_USERNAME": cfg.docker_username,
        "DOCKER_HUB_TOKEN": cfg.docker_password,
    }


def generate_environment(ctx: StageContext) -> None:
    cfg = ctx.config
    deploy = cfg.deploy_path
    script = deploy / GENERATOR_SCRIPT
    if not script.is_file():
        raise EnvironmentGenerationError(f"Configuration generator not found: {script}")
    if not cfg.no_domain and not cfg.app_domain:
        raise EnvironmentGenerationError("App domain is required (or pass --no-domain).")
    ctx.notify("info", "Running configuration script...")
    res = ctx.runner.run([f"./{GENERATOR_SCRIPT}"], cwd=deploy, env=generator_env(cfg), as_user=True)
    if res.stdout:
        logger.debug("%s output:\n%s", GENERATOR_SCRIPT, res.stdout.rstrip())
    if res.returncode != 0:
        detail = (res.stderr or "").strip()
        raise EnvironmentGenerationError(
            f"{GENERATOR_SCRIPT} exited with {res.returncode}" + (f": {detail}" if detail else "")
        )
    if not cfg.env_path.is_file():
        raise EnvironmentGenerationError(f"{GENERATOR_SCRIPT} did not produce {cfg.env_path}")
    ctx.notify("ok", "Configuration generated successfully.")


def start_services(ctx: StageContext) -> None:
    cfg = ctx.config
    runner = ctx.runner
    deploy = cfg.deploy_path
    compose = compose_command(runner)

    running = [name for name, state in service_states(runner, deploy, compose=compose).items() if state == "running"]
    if running:
        ctx.notify("info", "Platform services already running; skipping port check.")
    else:
        busy = [port for port in WEB_PORTS if ctx.port_in_use(port)]
        if busy:
            raise PortConflictError(busy)

    env: dict[str, str] | None = None
    if cfg.no_domain:
        ip = ctx.detect_ip()
        if not ip:
            raise AccessConfigError("Could not auto-detect the public IP address for IP-based access.")
        write_ip_access_files(deploy, ip)
        env = ip_access_env(deploy)
        ctx.public_ip = ip
        ctx.notify("info", f"Configured IP-based access for {ip}.")

    ctx.notify("info", "Pulling Docker images...")
    try:
        ctx.retry(lambda: run_compose(runner, deploy, ["pull"], env=env, compose=compose), "compose pull")
    except CommandError as exc:
        raise ServiceStartError(f"Failed to pull images: {exc}") from exc

    ctx.notify("info", "Starting all services...")
    try:
        run_compose(runner, deploy, ["up", "-d"], env=env, compose=compose)
    except CommandError as exc:
        raise ServiceStartError(f"Failed to start services: {exc}") from exc

    ctx.notify("info", "Waiting for services to initialize...")
    for service in CRITICAL_SERVICES:
        try:
            wait_for_service(ctx, service, compose=compose)
        except ServiceReadinessTimeout as exc:
            ctx.notify("warn", str(exc))
    states = service_states(runner, deploy, compose=compose)
    running = [name for name, state in states.items() if state == "running"]
    if len(running) < len(CRITICAL_SERVICES):
        ctx.notify(
            "warn",
            f"Only {len(running)} service(s) running. Some services may not have started correctly. "
            f"Check with: cd {deploy} && docker compose ps",
        )
    else:
        ctx.notify("ok", f"Services started successfully ({len(running)} running).")


def wait_for_service(ctx: StageContext, service: str, *, compose: list[str] | None = None) -> dict[str, str]:
    deadline = ctx.monotonic() + ctx.readiness_timeout_s
    while True:
        states = service_states(ctx.runner, ctx.config.deploy_path, compose=compose)
        if states.get(service) == "running":
            return states
        if ctx.monotonic() >= deadline:
            raise ServiceReadinessTimeout(service, ctx.readiness_timeout_s)
        ctx.sleep(ctx.readiness_interval_s)


def firewall_active(runner: CommandRunner) -> bool:
    res = runner.run(["ufw", "status"])
    return res.returncode == 0 and "Status: active" in (res.stdout or "")


def configure_firewall(ctx: StageContext) -> None:
    runner = ctx.runner
    active = firewall_active(runner)
    ctx.notify("info", "UFW is already active. Adding rules..." if active else "Enabling UFW with necessary rules...")
    runner.checked(["ufw", "default", "deny", "incoming"], error=FirewallError)
    runner.checked(["ufw", "default", "allow", "outgoing"], error=FirewallError)
    # SSH goes first so enabling never locks out the current session.
    for rule, comment in FIREWALL_RULES:
        runner.checked(["ufw", "allow", rule, "comment", comment], error=FirewallError)
    if active:
        ctx.notify("ok", "UFW rules updated.")
    else:
        runner.checked(["ufw", "--force", "enable"], error=FirewallError)
        ctx.notify("ok", "UFW firewall enabled with rules for SSH, HTTP, and HTTPS.")
    status = runner.run(["ufw", "status", "numbered"])
    if status.returncode == 0 and status.stdout:
        logger.debug("ufw status:\n%s", status.stdout.rstrip())


STAGES: tuple[Stage, ...] = (
    Stage(StageRecord(1, "Install Dependencies", "Docker, Docker Compose, jq and UFW"), install_dependencies),
    Stage(StageRecord(2, "Registry Login", "Docker Hub login"), registry_login),
    Stage(StageRecord(3, "Fetch Configuration", "Configuration files from the config image"), fetch_configuration),
    Stage(StageRecord(4, "Generate Environment", "Environment file via the config generator"), generate_environment),
    Stage(StageRecord(5, "Start Services", "Pull images and start services"), start_services),
    Stage(StageRecord(6, "Configure Firewall", "UFW rules for SSH, HTTP and HTTPS"), configure_firewall),
)


def stage_records(stages: tuple[Stage, ...] = STAGES) -> list[StageRecord]:
    return [stage.record for stage in stages]
