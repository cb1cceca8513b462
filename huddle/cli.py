"""Huddle CLI - inspect and maintain team membership data."""

import asyncio
import json

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from huddle.collaboration.engine import TeamMembershipEngine
from huddle.collaboration.reconcile import PointerReconciler
from huddle.config import HuddleConfig, validate_config
from huddle.core.errors import StorageError
from huddle.logging import setup_logging

console = Console()


def _engine(ctx: click.Context) -> TeamMembershipEngine:
    return TeamMembershipEngine.from_config(ctx.obj["config"])


def _run(coro):
    """Run a coroutine, turning storage failures into a clean exit."""
    try:
        return asyncio.run(coro)
    except StorageError as e:
        console.print(f"[red]✗ Storage error:[/] {e}")
        raise SystemExit(1)


@click.group()
@click.version_option(version="1.0.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Path to a huddle.toml config file",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str = None):
    """Huddle - team formation and membership"""
    config = HuddleConfig.load(config_path)
    setup_logging(
        level=config.log_level,
        log_file=str(config.log_file) if config.log_file else None,
        json_format=config.json_logs,
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command()
@click.pass_context
def init(ctx: click.Context):
    """Create the database schema."""
    engine = _engine(ctx)
    _run(engine.initialize())
    console.print(f"[green]✓ Database ready at {engine.db.db_path}[/]")


@cli.command(name="config")
@click.pass_context
def show_config(ctx: click.Context):
    """Show the effective configuration."""
    config: HuddleConfig = ctx.obj["config"]
    console.print_json(json.dumps(config.model_dump(mode="json")))

    for warning in validate_config(config):
        console.print(f"[yellow]⚠ {warning}[/]")


@cli.group()
def user():
    """Manage user accounts."""


@user.command(name="add")
@click.argument("username")
@click.pass_context
def user_add(ctx: click.Context, username: str):
    """Create a user account."""
    engine = _engine(ctx)

    try:
        account = _run(engine.identities.create_user(username))
    except ValueError as e:
        console.print(f"[red]✗ {e}[/]")
        raise SystemExit(1)

    console.print(f"[green]✓ Created user {account.username}[/] [dim]({account.id})[/dim]")


@user.command(name="show")
@click.argument("user_id")
@click.pass_context
def user_show(ctx: click.Context, user_id: str):
    """Show a user's team pointers and memberships."""
    engine = _engine(ctx)

    async def load():
        account = await engine.identities.find(user_id)
        teams = await engine.list_user_teams(user_id)
        return account, teams

    account, teams = _run(load())
    if account is None:
        console.print(f"[red]✗ User {user_id} not found[/]")
        raise SystemExit(1)

    console.print(
        Panel(
            f"[bold]{account.username}[/]\n"
            f"Owned team:  {account.owned_team_id or '-'}\n"
            f"Active team: {account.active_team_id or '-'}",
            title=account.id,
        )
    )

    if teams.ok and teams.value:
        for team in teams.value:
            marker = "★" if team.id == account.active_team_id else " "
            console.print(f" {marker} {team.id[:8]} - {team.name}")
    else:
        console.print("[dim]Not a member of any team[/dim]")


@cli.group()
def team():
    """Inspect teams."""


@team.command(name="show")
@click.argument("team_id")
@click.pass_context
def team_show(ctx: click.Context, team_id: str):
    """Show a team and its members."""
    engine = _engine(ctx)
    result = _run(engine.get_basic_info(team_id))

    if not result.ok:
        console.print(f"[red]✗ {result.message}[/]")
        raise SystemExit(1)

    info = result.value
    table = Table(title=f"{info.name}", show_header=True, header_style="bold magenta")
    table.add_column("Member", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Owner", justify="center", style="yellow")

    for member in info.members:
        table.add_row(
            member["username"],
            member["id"],
            "✓" if member["id"] == info.owner_id else "",
        )

    if info.bio:
        console.print(f"[dim]{info.bio}[/dim]")
    console.print(table)
    if info.avatar_url:
        console.print(f"Avatar: {info.avatar_url}")


@cli.command()
@click.option("--dry-run", is_flag=True, help="Report dangling pointers without fixing them")
@click.pass_context
def reconcile(ctx: click.Context, dry_run: bool = False):
    """Clear owned/active team pointers that no longer hold."""
    engine = _engine(ctx)
    report = _run(PointerReconciler(engine).reconcile(dry_run=dry_run))

    verb = "Would clear" if dry_run else "Cleared"
    if report.total_cleared:
        console.print(
            f"[yellow]{verb} {report.owned_cleared} owned and "
            f"{report.active_cleared} active pointer(s)[/] "
            f"across {len(report.repaired_user_ids)} user(s)"
        )
    else:
        console.print(f"[green]✓ {report.users_scanned} user(s) scanned, nothing to repair[/]")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
