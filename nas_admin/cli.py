"""
Admin CLI for the NAS controller.

Works directly against the controller's data directory (database, password
file) and the local docker daemon, so it is usable while the server is down.
"""

import asyncio
import json
import sys

import click

from nas_controller.container_manager import ContainerManager
from nas_controller.reconciler import StateReconciler
from nas_persistence.sqlite_repository import SQLiteAppRepository
from nas_server.auth import AuthService
from nas_server.config import Settings


def get_settings() -> Settings:
    """Settings from NAS_* environment variables."""
    return Settings.from_env()


def get_repository() -> SQLiteAppRepository:
    """Get the repository instance."""
    return SQLiteAppRepository(get_settings().db_path)


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


@click.group()
def cli():
    """NAS Admin - Inspect apps, ports and credentials of the NAS controller."""
    pass


@cli.group()
def apps():
    """Inspect managed apps."""
    pass


@cli.group()
def password():
    """Manage the operator password."""
    pass


# ============================================================================
# App Commands
# ============================================================================


@apps.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def apps_list(json_output: bool):
    """List all apps."""

    async def list_apps():
        repo = get_repository()
        await repo.initialize()

        try:
            app_list = await repo.list_apps()

            if json_output:
                click.echo(json.dumps([a.to_dict() for a in app_list], indent=2))
                return

            if not app_list:
                click.echo("No apps found.")
                return

            click.echo(f"\n{'ID':<38} {'Slug':<25} {'Status':<14} {'Port':<6}")
            click.echo("-" * 85)
            for a in app_list:
                click.echo(f"{a.id:<38} {a.slug:<25} {a.status:<14} {a.external_port:<6}")
            click.echo()

        finally:
            await repo.close()

    run_async(list_apps())


@apps.command("show")
@click.argument("identifier")
def apps_show(identifier: str):
    """Show app details by ID or slug."""

    async def show():
        repo = get_repository()
        await repo.initialize()

        try:
            app_obj = await repo.get_app(identifier) or await repo.get_app_by_slug(identifier)
            if not app_obj:
                click.echo(f"Error: App not found: {identifier}", err=True)
                sys.exit(1)

            click.echo("\nApp Details:")
            click.echo(f"  ID:          {app_obj.id}")
            click.echo(f"  Name:        {app_obj.name}")
            click.echo(f"  Slug:        {app_obj.slug}")
            click.echo(f"  Repository:  {app_obj.repo_url} ({app_obj.branch})")
            click.echo(f"  Commit:      {app_obj.last_commit or '-'}")
            click.echo(f"  Status:      {app_obj.status}")
            click.echo(f"  Image:       {app_obj.image_name}")
            click.echo(f"  Container:   {app_obj.container_id[:12] or '-'}")
            click.echo(f"  Ports:       {app_obj.external_port} -> {app_obj.internal_port}")
            if app_obj.last_build:
                result = "succeeded" if app_obj.last_build_success else "failed"
                click.echo(
                    f"  Last build:  {app_obj.last_build.isoformat()} "
                    f"({result}, {app_obj.last_build_duration})"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(show())


# ============================================================================
# Password Commands
# ============================================================================


@password.command("show")
def password_show():
    """Print the current operator password."""
    auth = AuthService(get_settings().data_dir)
    if not auth.password_file.exists():
        click.echo("Error: No password set yet (start the server once)", err=True)
        sys.exit(1)
    current, _ = auth.ensure_password()
    click.echo(current)


@password.command("reset")
@click.confirmation_option(prompt="Replace the operator password and log out every session?")
def password_reset():
    """Generate a new operator password and drop all sessions."""

    async def reset():
        repo = get_repository()
        await repo.initialize()

        try:
            new_password = AuthService(get_settings().data_dir).reset_password()
            removed = await repo.delete_all_sessions()

            click.echo("✓ Password reset")
            click.echo(f"\n  Password: {new_password}")
            click.echo(f"  Sessions removed: {removed}\n")

        finally:
            await repo.close()

    run_async(reset())


# ============================================================================
# System Commands
# ============================================================================


@cli.command("ports")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def ports(json_output: bool):
    """Show the managed port range and the ports recorded on apps."""
    settings = get_settings()

    async def show_ports():
        repo = get_repository()
        await repo.initialize()

        try:
            used = sorted(await repo.get_used_ports())

            if json_output:
                data = {
                    "used_ports": used,
                    "range": {"start": settings.port_range_start, "end": settings.port_range_end},
                }
                click.echo(json.dumps(data, indent=2))
                return

            total = settings.port_range_end - settings.port_range_start + 1
            click.echo(f"Range: {settings.port_range_start}-{settings.port_range_end}")
            click.echo(f"Used:  {len(used)}/{total}")
            for port in used:
                click.echo(f"  {port}")

        finally:
            await repo.close()

    run_async(show_ports())


@cli.command("reconcile")
def reconcile():
    """Resynchronize app status with docker (same pass as server startup)."""

    async def run():
        repo = get_repository()
        await repo.initialize()

        try:
            changed = await StateReconciler(repo, ContainerManager()).reconcile_once()
            click.echo(f"✓ Reconciliation complete: {changed} app(s) corrected")

        finally:
            await repo.close()

    run_async(run())


if __name__ == "__main__":
    cli()
