"""CLI commands for managing Rulecraft settings."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from rulecraft.configuration.settings import (
    DEFAULT_CONFIG_PATH,
    Settings,
    bootstrap_settings,
    save_settings,
)
from rulecraft.errors import RulecraftError, format_error_for_cli


config_app = typer.Typer(help="Manage Rulecraft configuration")


@config_app.command("init")
def init_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
    app_id: Optional[str] = typer.Option(None, help="GitHub App ID"),
    client_id: Optional[str] = typer.Option(None, help="GitHub OAuth client ID"),
    redirect_uri: Optional[str] = typer.Option(None, help="OAuth callback URL"),
    backend: Optional[str] = typer.Option(
        None, help="Credential storage backend: file, keyring or memory"
    ),
) -> None:
    """Write a settings file. Secrets are never written; supply them via env."""

    overrides: dict = {}
    if app_id:
        overrides.setdefault("github", {}).setdefault("app", {})["app_id"] = app_id
    if client_id:
        overrides.setdefault("github", {}).setdefault("oauth", {})["client_id"] = client_id
    if redirect_uri:
        overrides.setdefault("github", {}).setdefault("oauth", {})[
            "redirect_uri"
        ] = redirect_uri
    if backend:
        overrides.setdefault("storage", {})["backend"] = backend

    try:
        settings = bootstrap_settings(path=config_path, overrides=overrides)
    except RulecraftError as exc:
        typer.echo(format_error_for_cli(exc), err=True)
        raise typer.Exit(1)

    save_settings(settings, config_path)
    typer.echo(f"Configuration initialized at {config_path}")
    typer.echo(_summarize_settings(settings))


@config_app.command("show")
def show_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config"),
) -> None:
    """Display effective configuration (file plus environment) with secrets masked."""

    try:
        settings = bootstrap_settings(path=config_path)
    except RulecraftError as exc:
        typer.echo(format_error_for_cli(exc), err=True)
        raise typer.Exit(1)
    typer.echo(_summarize_settings(settings))


def _summarize_settings(settings: Settings) -> str:
    github = settings.github
    lines = [
        f"GitHub API: {github.api_base_url} (version {github.api_version})",
        f"GitHub App ID: {github.app.app_id or 'not set'}",
        f"GitHub App credentials: {'configured' if github.app.is_configured else 'incomplete'}",
        f"OAuth client ID: {github.oauth.client_id or 'not set'}",
        f"OAuth client secret: {'configured' if github.oauth.client_secret else 'not set'}",
        f"OAuth redirect URI: {github.oauth.redirect_uri}",
        f"Refresh buffer: {github.refresh_buffer_seconds}s",
        f"Fail fast on refresh error: {github.fail_fast_on_refresh_error}",
        f"Credential backend: {settings.storage.backend}",
        f"Credentials path: {settings.storage.credentials_path}",
        f"Audit directory: {settings.storage.audit_dir}",
    ]
    return "\n".join(lines)


__all__ = ["config_app"]
