from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_DEPLOY_DIR = "/opt/invisible"
DEFAULT_CONFIG_IMAGE = "invisiblelife/orchestrator-config:latest"
ENV_STATE_DIR = "INVISIBLE_STATE_DIR"

STAGE_FILENAME = ".invisible_setup_stage"
CONFIG_CACHE_FILENAME = ".invisible_setup_config"
LOCK_FILENAME = ".invisible_setup.lock"


def state_dir() -> Path:
    override = os.getenv(ENV_STATE_DIR, "").strip()
    if override:
        return Path(override).expanduser()
    return Path(tempfile.gettempdir())


@dataclass
class SetupConfig:
    docker_username: str = ""
    docker_password: str = field(default="", repr=False)
    app_domain: str = ""
    no_domain: bool = False
    deploy_dir: str = DEFAULT_DEPLOY_DIR
    config_image: str = DEFAULT_CONFIG_IMAGE
    sudo_user: str | None = None

    @property
    def deploy_path(self) -> Path:
        return Path(self.deploy_dir)

    @property
    def env_path(self) -> Path:
        return self.deploy_path / ".env"

    @property
    def has_credentials(self) -> bool:
        return bool(self.docker_username.strip() and self.docker_password)

    @property
    def access_label(self) -> str:
        if self.no_domain:
            return "IP-based access"
        return self.app_domain or "(not set)"


def to_cache(cfg: SetupConfig) -> dict[str, Any]:
    # The registry password is never written to disk.
    data: dict[str, Any] = {
        "docker_username": cfg.docker_username,
        "app_domain": cfg.app_domain,
        "no_domain": cfg.no_domain,
        "deploy_dir": cfg.deploy_dir,
        "config_image": cfg.config_image,
    }
    if cfg.sudo_user:
        data["sudo_user"] = cfg.sudo_user
    return data


def from_cache(data: dict[str, Any]) -> SetupConfig:
    sudo_user = data.get("sudo_user")
    return SetupConfig(
        docker_username=str(data.get("docker_username") or ""),
        app_domain=str(data.get("app_domain") or ""),
        no_domain=bool(data.get("no_domain", False)),
        deploy_dir=str(data.get("deploy_dir") or DEFAULT_DEPLOY_DIR),
        config_image=str(data.get("config_image") or DEFAULT_CONFIG_IMAGE),
        sudo_user=str(sudo_user) if isinstance(sudo_user, str) and sudo_user else None,
    )


def merge_config(primary: SetupConfig, fallback: SetupConfig | None) -> SetupConfig:
    """Fill empty fields of ``primary`` from ``fallback`` (usually the cache)."""
    fallback = fallback or SetupConfig()
    return SetupConfig(
        docker_username=primary.docker_username or fallback.docker_username,
        docker_password=primary.docker_password or fallback.docker_password,
        app_domain=primary.app_domain or ("" if primary.no_domain else fallback.app_domain),
        no_domain=primary.no_domain or (not primary.app_domain and fallback.no_domain),
        deploy_dir=primary.deploy_dir or fallback.deploy_dir,
        config_image=primary.config_image or fallback.config_image,
        sudo_user=primary.sudo_user or fallback.sudo_user,
    )
