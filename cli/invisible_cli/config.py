from __future__ import annotations

import os

import typer
from rich.prompt import Confirm

from invisible_setup.access import normalize_domain
from invisible_setup.config_types import SetupConfig
from invisible_setup.errors import AccessConfigError, MissingCredentialError

from . import console

ENV_DOCKER_USERNAME = "DOCKER_USERNAME"
ENV_DOCKER_PASSWORD = "DOCKER_PASSWORD"
ENV_APP_DOMAIN = "APP_DOMAIN"

# Stages that consume an input; the input is only required while they are pending.
CREDENTIALS_NEEDED_BEFORE = 2
TOKEN_NEEDED_BEFORE = 4
DOMAIN_NEEDED_BEFORE = 4


def resolve_sudo_user() -> str | None:
    user = (os.getenv("SUDO_USER") or "").strip()
    return user or None


def initial_config(
        *,
        docker_username: str | None,
        docker_password: str | None,
        app_domain: str | None,
        no_domain: bool,
        deploy_dir: str | None,
        config_image: str | None,
) -> SetupConfig:
    """Build the configuration from flags, falling back to the environment."""
    username = (docker_username or os.getenv(ENV_DOCKER_USERNAME) or "").strip()
    password = docker_password or os.getenv(ENV_DOCKER_PASSWORD) or ""
    domain = "" if no_domain else (app_domain or os.getenv(ENV_APP_DOMAIN) or "").strip()
    if domain:
        domain = normalize_domain(domain)
    return SetupConfig(
        docker_username=username,
        docker_password=password,
        app_domain=domain,
        no_domain=no_domain,
        deploy_dir=(deploy_dir or "").strip(),
        config_image=(config_image or "").strip(),
        sudo_user=resolve_sudo_user(),
    )


def missing_inputs(cfg: SetupConfig, done: int) -> list[str]:
    missing: list[str] = []
    if done < CREDENTIALS_NEEDED_BEFORE:
        if not cfg.docker_username:
            missing.append("--docker-username")
        if not cfg.docker_password:
            missing.append("--docker-password")
    if done < DOMAIN_NEEDED_BEFORE and not cfg.app_domain and not cfg.no_domain:
        missing.append("--app-domain (or --no-domain)")
    return missing


def complete_config(cfg: SetupConfig, done: int, *, non_interactive: bool) -> SetupConfig:
    """Prompt for whatever the remaining stages still need."""
    missing = missing_inputs(cfg, done)
    if missing and non_interactive:
        raise MissingCredentialError(f"Missing required flags: {', '.join(missing)}")

    if done < TOKEN_NEEDED_BEFORE and not non_interactive:
        if not cfg.docker_username:
            cfg.docker_username = typer.prompt("Docker Hub username", default="", show_default=False).strip()
        if not cfg.docker_password:
            cfg.docker_password = typer.prompt(
                "Docker Hub password or access token",
                default="",
                show_default=False,
                hide_input=True,
            )

    if done < DOMAIN_NEEDED_BEFORE and not cfg.app_domain and not cfg.no_domain:
        if Confirm.ask("Do you want to set up a custom domain?", default=True):
            while True:
                raw = typer.prompt("Root domain for the application (e.g. example.com)")
                try:
                    cfg.app_domain = normalize_domain(raw)
                    break
                except AccessConfigError as exc:
                    console.err(str(exc))
        else:
            cfg.no_domain = True

    if done < CREDENTIALS_NEEDED_BEFORE and not cfg.docker_username:
        raise MissingCredentialError("Docker username is required.")
    if done < DOMAIN_NEEDED_BEFORE and not cfg.app_domain and not cfg.no_domain:
        raise MissingCredentialError("App domain is required (or pass --no-domain).")
    return cfg


def confirm_resume(stage: int, *, non_interactive: bool) -> bool:
    console.info(f"Previous setup detected at stage {stage}.")
    if non_interactive:
        console.info(f"Resuming from stage {stage + 1}.")
        return True
    return Confirm.ask(f"Do you want to resume from stage {stage + 1}?", default=True)
