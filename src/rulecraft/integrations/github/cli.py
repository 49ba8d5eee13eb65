"""CLI commands for the GitHub integration.

Connect an account through the OAuth web flow, inspect or drop the stored
credential, migrate to GitHub App installation tokens, and browse repositories
with the same tree shapes the UI renders.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table
from rich.tree import Tree

from ...audit import AuditLogger
from ...configuration.settings import DEFAULT_CONFIG_PATH, bootstrap_settings
from ...errors import RulecraftError, format_error_for_cli
from ...trees.file_tree import TreeNode
from ...trees.rule_tree import RuleRow
from .integration_service import GitHubIntegrationService, split_full_name


app = typer.Typer(help="Connect GitHub and browse repositories")
console = Console()
error_console = Console(stderr=True)

_USER_OPTION = typer.Option(
    "local", "--user", "-u", envvar="RULECRAFT_USER_ID", help="Rulecraft user id"
)
_CONFIG_OPTION = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file")


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def _get_service(config_path: Path) -> GitHubIntegrationService:
    """Build the integration service from settings and environment."""
    settings = bootstrap_settings(path=config_path)
    audit_logger = AuditLogger(settings.storage.audit_dir)
    return GitHubIntegrationService.from_settings(settings, audit_logger=audit_logger)


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except RulecraftError as exc:
        error_console.print(format_error_for_cli(exc), markup=False)
        raise typer.Exit(1)


def _parse_owner_repo(repo_spec: str) -> str:
    try:
        owner, repo = split_full_name(repo_spec)
    except ValueError:
        error_console.print("Error: Repository must be in format 'owner/repo'")
        raise typer.Exit(1)
    return f"{owner}/{repo}"


def _render_tree(label: str, nodes: List[TreeNode]) -> Tree:
    root = Tree(label)

    def add(branch: Tree, children: List[TreeNode]) -> None:
        for node in children:
            if node.is_directory:
                add(branch.add(f"[bold blue]{node.name}/[/bold blue]"), node.children or [])
            else:
                branch.add(node.name)

    add(root, nodes)
    return root


# ---------------------------------------------------------------------------
# CLI Commands
# ---------------------------------------------------------------------------


@app.command("authorize-url")
def authorize_url(
    user: str = _USER_OPTION,
    config: Path = _CONFIG_OPTION,
) -> None:
    """Print the GitHub authorization URL for connecting an account."""
    with _cli_errors():
        url, state = _get_service(config).oauth_flow.build_authorize_url(user)

    console.print("Open this URL to authorize Rulecraft:")
    console.print(url, markup=False, soft_wrap=True)
    console.print(f"[dim]state: {state}[/dim]")


@app.command("connect")
def connect(
    code: str = typer.Option(..., "--code", help="Code from the OAuth callback"),
    state: str = typer.Option(..., "--state", help="State from the OAuth callback"),
    config: Path = _CONFIG_OPTION,
) -> None:
    """Complete the OAuth callback and store the delegated token."""
    with _cli_errors():
        record = _get_service(config).complete_oauth_callback(code, state)

    console.print(
        f"[green]✓[/green] Connected GitHub account [bold]{record.provider_username}[/bold]"
    )
    if record.scopes:
        console.print(f"  Scopes: {', '.join(record.scopes)}")


@app.command("status")
def status(
    user: str = _USER_OPTION,
    config: Path = _CONFIG_OPTION,
) -> None:
    """Show whether GitHub is connected and which token kind is in use."""
    with _cli_errors():
        info = _get_service(config).get_status(user)

    if not info.connected:
        console.print("GitHub is not connected.")
        console.print("Run: rulecraft github authorize-url")
        return

    table = Table(title="GitHub Integration")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Username", info.username or "-")
    table.add_row("Token kind", info.auth_kind.value if info.auth_kind else "-")
    if info.installation_id is not None:
        table.add_row("Installation", str(info.installation_id))
    table.add_row("Scopes", ", ".join(info.scopes) or "-")
    table.add_row("Connected", info.created_at.isoformat() if info.created_at else "-")
    console.print(table)


@app.command("disconnect")
def disconnect(
    user: str = _USER_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config: Path = _CONFIG_OPTION,
) -> None:
    """Delete the stored GitHub credential."""
    if not yes and not Confirm.ask("Disconnect GitHub?"):
        console.print("Cancelled")
        raise typer.Exit(0)

    with _cli_errors():
        _get_service(config).disconnect(user)
    console.print("[green]✓[/green] GitHub disconnected")


@app.command("migrate")
def migrate(
    user: str = _USER_OPTION,
    config: Path = _CONFIG_OPTION,
) -> None:
    """Switch from the OAuth token to GitHub App installation tokens."""
    with _cli_errors():
        record = _get_service(config).migrate_to_installation(user, operator="cli")

    console.print(
        f"[green]✓[/green] Using installation {record.installation_id}; "
        f"token valid until {record.installation_token_expires_at.isoformat()}"
    )


@app.command("installation")
def installation(
    user: str = _USER_OPTION,
    config: Path = _CONFIG_OPTION,
) -> None:
    """Show the GitHub App installation behind the stored credential."""
    with _cli_errors():
        details = _get_service(config).get_installation_details(user)

    if details is None:
        console.print("Still using the delegated OAuth token.")
        console.print("Run: rulecraft github migrate")
        return

    table = Table(title=f"Installation {details.id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Account", f"{details.account.login} ({details.account.type})")
    table.add_row(
        "Permissions",
        ", ".join(f"{name}:{level}" for name, level in sorted(details.permissions.items())) or "-",
    )
    table.add_row("Events", ", ".join(details.events) or "-")
    console.print(table)


@app.command("repos")
def list_repos(
    user: str = _USER_OPTION,
    page: int = typer.Option(1, "--page", min=1),
    per_page: int = typer.Option(30, "--per-page", min=1, max=100),
    config: Path = _CONFIG_OPTION,
) -> None:
    """List repositories you own or collaborate on."""
    with _cli_errors():
        repositories = _get_service(config).list_repositories(user, page, per_page)

    if not repositories:
        console.print("No repositories found")
        return

    table = Table(title=f"Repositories (page {page})")
    table.add_column("Repository", style="cyan")
    table.add_column("Visibility")
    table.add_column("Default branch")
    table.add_column("Language")
    for repo in repositories:
        table.add_row(
            repo.full_name,
            "private" if repo.private else "public",
            repo.default_branch,
            repo.language or "-",
        )
    console.print(table)


@app.command("tree")
def show_tree(
    repo: str = typer.Argument(..., help="Repository in format 'owner/repo'"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch or ref"),
    as_json: bool = typer.Option(False, "--json", help="Print the tree as JSON"),
    user: str = _USER_OPTION,
    config: Path = _CONFIG_OPTION,
) -> None:
    """Show a repository's file tree (hidden paths omitted)."""
    full_name = _parse_owner_repo(repo)
    with _cli_errors():
        nodes = _get_service(config).get_file_tree(user, full_name, branch)

    if as_json:
        typer.echo(json.dumps([node.to_dict() for node in nodes], indent=2))
        return
    console.print(_render_tree(f"[bold]{full_name}[/bold]", nodes))


@app.command("cat")
def cat_file(
    repo: str = typer.Argument(..., help="Repository in format 'owner/repo'"),
    path: str = typer.Argument(..., help="File path inside the repository"),
    ref: Optional[str] = typer.Option(None, "--ref", help="Branch, tag or commit"),
    user: str = _USER_OPTION,
    config: Path = _CONFIG_OPTION,
) -> None:
    """Print a file's raw contents."""
    full_name = _parse_owner_repo(repo)
    with _cli_errors():
        content = _get_service(config).get_file_content(user, full_name, path, ref)
    typer.echo(content, nl=not content.endswith("\n"))


@app.command("rules-tree")
def rules_tree(
    rows_file: Path = typer.Argument(..., exists=True, help="JSON array of rule rows"),
    as_json: bool = typer.Option(False, "--json", help="Print the tree as JSON"),
    config: Path = _CONFIG_OPTION,
) -> None:
    """Preview the virtual rules tree for exported rule rows."""
    try:
        rows = TypeAdapter(List[RuleRow]).validate_json(rows_file.read_text())
    except ValidationError as exc:
        error_console.print(f"Error: Invalid rule rows: {exc}", markup=False)
        raise typer.Exit(1)

    with _cli_errors():
        root = _get_service(config).get_rules_tree(rows)

    if as_json:
        typer.echo(json.dumps(root.to_dict(), indent=2))
        return
    console.print(_render_tree("/", root.children or []))


__all__ = ["app"]
