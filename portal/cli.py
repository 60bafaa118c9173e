import asyncio

import typer
from rich.console import Console
from rich.table import Table

console = Console()
cli_app = typer.Typer(name="portal-admin", help="Admin portal administrative CLI")

DEFAULT_ROLES = [
    ("admin", "Full administrative access"),
    ("user", "Default role for directory users"),
]

DEFAULT_PERMISSIONS = [
    ("roles", "read", "View roles and group mappings"),
    ("permissions", "read", "View permissions"),
    ("users", "read", "View users and their role assignments"),
    ("config", "read", "View runtime configuration"),
]


def _run_async(coro):
    """Run async code from sync CLI context."""
    return asyncio.run(coro)


async def _ensure_db():
    from portal.core.database import init_db
    await init_db()


@cli_app.command("hash-password")
def hash_password(
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Print a bcrypt hash for ADMIN_PASSWORD_HASH."""
    from portal.core.security import hash_password as _hash

    console.print(_hash(password))


@cli_app.command("seed")
def seed():
    """Install default roles, permissions and configuration keys."""
    async def _seed():
        await _ensure_db()
        from portal.services.config_store import ConfigStore
        from portal.services.permissions import PermissionService
        from portal.services.roles import RoleService

        roles = RoleService()
        created_roles = 0
        for name, description in DEFAULT_ROLES:
            if await roles.get_role_by_name(name) is None:
                await roles.create_role(name, description, is_system=True)
                created_roles += 1

        permissions = PermissionService()
        existing = {f"{p.resource}:{p.action}" for p in await permissions.list_permissions()}
        created_permissions = 0
        for resource, action, description in DEFAULT_PERMISSIONS:
            if f"{resource}:{action}" not in existing:
                await permissions.create_permission(resource, action, description=description, is_system=True)
                created_permissions += 1

        config = await ConfigStore().seed_defaults()
        return created_roles, created_permissions, config

    created_roles, created_permissions, config = _run_async(_seed())

    console.print("\n[bold green]Seed complete.[/bold green]\n")
    console.print(f"  Roles:       {created_roles}")
    console.print(f"  Permissions: {created_permissions}")
    console.print(f"  Categories:  {config['categories']}")
    console.print(f"  Config keys: {config['keys']}\n")


@cli_app.command("list-users")
def list_users():
    """List local users and their roles."""
    async def _list():
        await _ensure_db()
        from sqlalchemy import select

        import portal.core.database as db_module
        from portal.core.database import Role, UserRole
        from portal.services.users import UserService

        users = await UserService().list_users()
        async with db_module.async_session() as session:
            rows = (
                await session.execute(
                    select(UserRole.user_id, Role.name, UserRole.source).join(Role, Role.id == UserRole.role_id)
                )
            ).all()

        roles: dict[str, list[str]] = {}
        for user_id, role_name, source in rows:
            roles.setdefault(user_id, []).append(f"{role_name} ({source})")
        return users, roles

    users, roles = _run_async(_list())

    if not users:
        console.print("[dim]No users found.[/dim]")
        return

    table = Table(title="Users")
    table.add_column("Username", style="cyan")
    table.add_column("Display Name")
    table.add_column("Email")
    table.add_column("Roles", style="green")
    table.add_column("Last Login")

    for user in users:
        last_login = user.last_login_at.strftime("%Y-%m-%d %H:%M") if user.last_login_at else "never"
        table.add_row(
            user.username,
            user.display_name or "",
            user.email or "",
            ", ".join(sorted(roles.get(user.id, []))),
            last_login,
        )

    console.print(table)


@cli_app.command("run-sync")
def run_sync(
    sync_config_id: str = typer.Argument(help="Directory sync configuration ID"),
):
    """Run a directory sync immediately."""
    async def _run():
        await _ensure_db()
        from portal.services.directory_sync import DirectorySyncService
        return await DirectorySyncService().trigger_now(sync_config_id)

    from portal.core.exceptions import NotFoundError

    try:
        result = _run_async(_run())
    except NotFoundError as exc:
        console.print(f"[yellow]{exc.message}[/yellow]")
        raise typer.Exit(code=1)

    status = "[bold green]succeeded[/bold green]" if result["success"] else "[bold red]failed[/bold red]"
    console.print(f"\nSync {status}\n")
    console.print(f"  Processed: {result['users_processed']}")
    console.print(f"  Created:   {result['users_created']}")
    console.print(f"  Updated:   {result['users_updated']}")
    console.print(f"  Skipped:   {result['users_skipped']}")
    for error in result["errors"]:
        console.print(f"  [red]{error}[/red]")
    if not result["success"]:
        raise typer.Exit(code=1)


def main():
    cli_app()


if __name__ == "__main__":
    main()
