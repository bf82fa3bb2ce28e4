from __future__ import annotations

import ipaddress
import json
import logging
import os
import re
import shutil
import urllib.parse
from pathlib import Path

import httpx
import yaml

from .docker import compose_command, run_compose
from .errors import AccessConfigError, CommandError
from .runner import CommandRunner

IP_ENV_FILENAME = ".env.ip-access"
OVERRIDE_FILENAME = "docker-compose.override.yml"
CORS_FILENAME = "cors-config.json"
SWITCH_SCRIPT_FILENAME = "switch-access-mode.sh"
PREPARE_CADDY_SCRIPT = "prepare-caddy.sh"
PUBLIC_IP_URL = "https://ifconfig.me/ip"
DNS_SUBDOMAINS = ("api", "chat", "hub")
_VAR_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
LOCAL_DEV_ORIGINS = (
    "http://localhost:8080",
    "http://localhost:8081",
    "http://localhost:5173",
    "http://localhost:4200",
)

logger = logging.getLogger(__name__)


def detect_public_ip(*, timeout_s: float = 5.0, client: httpx.Client | None = None) -> str | None:
    try:
        if client is not None:
            response = client.get(PUBLIC_IP_URL, timeout=timeout_s)
        else:
            # IPv4 only: bind the local side to an IPv4 wildcard address.
            transport = httpx.HTTPTransport(local_address="0.0.0.0")
            with httpx.Client(transport=transport, timeout=timeout_s) as own:
                response = own.get(PUBLIC_IP_URL)
    except httpx.HTTPError as exc:
        logger.debug("public IP detection failed: %s", exc)
        return None
    if response.status_code != 200:
        return None
    candidate = response.text.strip()
    try:
        return validate_ip(candidate)
    except AccessConfigError:
        return None


def validate_ip(value: str) -> str:
    text = (value or "").strip()
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        raise AccessConfigError(f"Invalid IP address: {text or '(empty)'}")


def normalize_domain(raw: str) -> str:
    value = (raw or "").strip()
    if not value:
        raise AccessConfigError("Domain cannot be empty.")
    if "://" not in value:
        value = f"http://{value}"
    parsed = urllib.parse.urlparse(value)
    host = (parsed.hostname or "").rstrip(".")
    if not host or "." not in host:
        raise AccessConfigError(f"Invalid domain: {raw.strip()}")
    return host


def dns_hostnames(domain: str) -> list[str]:
    return [f"{sub}.{domain}" for sub in DNS_SUBDOMAINS]


def ensure_installed(deploy_dir: str | Path) -> Path:
    env_path = Path(deploy_dir) / ".env"
    if not env_path.is_file():
        raise AccessConfigError(
            f"Invisible platform not found at {deploy_dir}. Run `invisible setup` first."
        )
    return env_path


def read_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    return read_env_content(path.read_text(encoding="utf-8"))


def read_env_content(content: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        data[key.strip()] = value
    return data


def update_env_values(path: Path, updates: dict[str, str], *, backup: bool = True) -> Path | None:
    """Rewrite ``KEY=`` lines in place; keys not present are appended."""
    content = path.read_text(encoding="utf-8")
    backup_path = None
    if backup:
        backup_path = path.with_name(path.name + ".backup")
        shutil.copy2(path, backup_path)
    pending = dict(updates)
    lines: list[str] = []
    for raw in content.splitlines():
        key = raw.split("=", 1)[0].strip() if "=" in raw and not raw.lstrip().startswith("#") else None
        if key is not None and key in pending:
            lines.append(f"{key}={pending.pop(key)}")
        else:
            lines.append(raw)
    for key, value in pending.items():
        lines.append(f"{key}={value}")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return backup_path


def render_ip_env(ip: str) -> str:
    base = f"https://{ip}"
    lines = [
        "# IP-based access overrides",
        f"APP_BASE_URL={base}",
        f"API_BASE_URL={base}/api",
        f"SUPABASE_URL={base}",
        f"FRONTEND_URL={base}",
        f"FRONTEND_URL_CHAT={base}/chat",
        f"FRONTEND_URL_HUB={base}/hub",
        f"VITE_API_BASE_URL={base}/api",
        f"VITE_CHAT_API_BASE_URL={base}/api",
        f"VITE_SUPABASE_URL={base}",
        "VITE_SUPABASE_ANON_KEY=${ANON_KEY}",
        "VITE_PUBLIC_PATH_CHAT=/chat/",
        "VITE_PUBLIC_PATH_HUB=/hub/",
        f"GOTRUE_EXTERNAL_URL={base}",
        f"GOTRUE_MAILER_URLS_SITE_URL={base}",
        f"API_EXTERNAL_URL={base}",
        f"WS_BASE_URL=wss://{ip}",
        f"GMAIL_REDIRECT_URI={base}/auth/gmail/callback",
        f"SLACK_REDIRECT_URI={base}/auth/slack/callback",
        "USE_HTTPS=true",
        "ALLOW_SELF_SIGNED_CERTS=true",
    ]
    return "\n".join(lines) + "\n"


def render_ip_override(ip: str) -> str:
    base = f"https://{ip}"
    override = {
        "services": {
            "api": {
                "environment": [
                    f"CORS_ORIGINS={base},http://localhost:8080,http://localhost:8081",
                    f"FRONTEND_URL={base}",
                    f"APP_BASE_URL={base}",
                    "USE_HTTPS=true",
                    "NODE_TLS_REJECT_UNAUTHORIZED=0",
                ],
            },
            "ui-chat": {
                "environment": [
                    f"VITE_API_BASE_URL={base}/api",
                    f"VITE_CHAT_API_BASE_URL={base}/api",
                    f"VITE_SUPABASE_URL={base}",
                    "VITE_SUPABASE_ANON_KEY=${ANON_KEY}",
                    "PUBLIC_URL=/chat",
                    "VITE_BASE_PATH=/chat",
                ],
            },
            "ui-hub": {
                "environment": [
                    f"VITE_API_BASE_URL={base}/api",
                    f"VITE_SUPABASE_URL={base}",
                    "VITE_SUPABASE_ANON_KEY=${ANON_KEY}",
                    "PUBLIC_URL=/hub",
                    "VITE_BASE_PATH=/hub",
                ],
            },
            "operations-api": {
                "environment": [f"CORS_ORIGINS={base}"],
            },
            "supabase_auth": {
                "environment": [
                    f"GOTRUE_EXTERNAL_URL={base}",
                    f"GOTRUE_MAILER_URLS_SITE_URL={base}",
                    f"API_EXTERNAL_URL={base}",
                ],
            },
        }
    }
    dumped = yaml.safe_dump(override, sort_keys=False, default_flow_style=False)
    return dumped if dumped.endswith("\n") else dumped + "\n"


def render_cors_config(ip: str) -> str:
    payload = {
        "allowed_origins": [*LOCAL_DEV_ORIGINS, f"https://{ip}"],
        "allowed_methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        "allowed_headers": ["Content-Type", "Authorization", "X-Requested-With"],
        "credentials": True,
    }
    return json.dumps(payload, indent=2) + "\n"


def render_switch_script() -> str:
    return "\n".join(
        [
            "#!/bin/sh",
            "# Switch between domain and IP access modes.",
            'case "$1" in',
            "  domain) exec invisible access domain ;;",
            "  ip) exec invisible access ip ;;",
            '  *) echo "Usage: $0 [domain|ip]"; exit 1 ;;',
            "esac",
        ]
    ) + "\n"


def write_ip_access_files(deploy_dir: str | Path, ip: str) -> list[Path]:
    root = Path(deploy_dir)
    ip = validate_ip(ip)
    written: list[Path] = []
    for name, content in (
            (IP_ENV_FILENAME, render_ip_env(ip)),
            (OVERRIDE_FILENAME, render_ip_override(ip)),
            (CORS_FILENAME, render_cors_config(ip)),
            (SWITCH_SCRIPT_FILENAME, render_switch_script()),
    ):
        path = root / name
        path.write_text(content, encoding="utf-8")
        written.append(path)
    os.chmod(root / SWITCH_SCRIPT_FILENAME, 0o755)
    return written


def expand_env_refs(value: str, env: dict[str, str]) -> str:
    """Substitute ``${NAME}`` the way a shell sourcing the file would; unknown names become empty."""
    return _VAR_REF_RE.sub(lambda m: env.get(m.group(1), ""), value)


def ip_access_env(deploy_dir: str | Path) -> dict[str, str]:
    """Values from `.env` overlaid with `.env.ip-access`, references expanded."""
    root = Path(deploy_dir)
    env = read_env_file(root / ".env")
    for key, value in read_env_file(root / IP_ENV_FILENAME).items():
        env[key] = expand_env_refs(value, env)
    return env


def apply_ip_access(runner: CommandRunner, deploy_dir: str | Path, ip: str) -> list[Path]:
    """Write the IP-mode files and restart the compose topology with them."""
    ensure_installed(deploy_dir)
    written = write_ip_access_files(deploy_dir, ip)
    env = ip_access_env(deploy_dir)
    compose = compose_command(runner)
    try:
        run_compose(runner, deploy_dir, ["down"], env=env, compose=compose)
        run_compose(runner, deploy_dir, ["up", "-d"], env=env, compose=compose)
    except CommandError as exc:
        raise AccessConfigError(f"Failed to restart services: {exc}") from exc
    return written


def apply_domain(runner: CommandRunner, deploy_dir: str | Path, domain: str) -> str:
    env_path = ensure_installed(deploy_dir)
    root = Path(deploy_dir)
    clean = normalize_domain(domain)
    update_env_values(env_path, {"APP_DOMAIN": clean, "NO_DOMAIN": "false"})
    was_ip_mode = (root / OVERRIDE_FILENAME).exists()
    for name in (OVERRIDE_FILENAME, IP_ENV_FILENAME):
        (root / name).unlink(missing_ok=True)

    script = root / PREPARE_CADDY_SCRIPT
    if script.is_file():
        res = runner.run(
            [f"./{PREPARE_CADDY_SCRIPT}"],
            cwd=root,
            env={"NO_DOMAIN": "false", "APP_DOMAIN": clean},
        )
        if res.returncode != 0:
            detail = (res.stderr or "").strip()
            raise AccessConfigError(f"{PREPARE_CADDY_SCRIPT} failed" + (f": {detail}" if detail else "."))
    else:
        logger.warning("%s not found in %s; skipping Caddy config refresh", PREPARE_CADDY_SCRIPT, root)

    # Leaving IP mode recreates every service that carried override values.
    args = ["up", "-d"] if was_ip_mode else ["restart", "caddy"]
    try:
        run_compose(runner, root, args)
    except CommandError as exc:
        raise AccessConfigError(f"Failed to restart services: {exc}") from exc
    return clean
