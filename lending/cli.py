import os
import subprocess
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Settings, configure_logging
from .database import schema_version
from .errors import LendingError
from .models import ROLES
from .seed import seed_database
from .services import Services, build_services

APP_NAME = "Library Lending CLI"

console = Console()
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
):
    """Options shared by every command."""
    settings = Settings.from_env()
    if db:
        settings.database_file = db
    configure_logging(settings)
    ctx.obj = settings


@contextmanager
def _services(ctx: typer.Context) -> Iterator[Services]:
    services = build_services(ctx.obj)
    try:
        yield services
    finally:
        services.close()


@app.command("init-db")
def cli_init_db(ctx: typer.Context):
    """Create the database schema if it does not exist."""
    with _services(ctx) as services:
        version = schema_version(services.pool)
    console.print(f"[green]Database initialized[/] (schema v{version})")


@app.command("seed")
def cli_seed(ctx: typer.Context,
             reset: bool = typer.Option(False, "--reset", help="Delete existing data before seeding")):
    """Load sample users, categories and books."""
    with _services(ctx) as services:
        created = seed_database(services, reset=reset)
    if not any(created.values()):
        console.print("[yellow]Database already has data. Use --reset to reseed.[/]")
        return
    console.print(Panel.fit(
        f"[bold]Users:[/] {created['users']}\n"
        f"[bold]Categories:[/] {created['categories']}\n"
        f"[bold]Books:[/] {created['books']}",
        title="Seeded",
        border_style="green",
    ))


@app.command("create-user")
def cli_create_user(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="Login email"),
    role: str = typer.Option("member", "--role", "-r", help=f"One of: {', '.join(ROLES)}"),
    first_name: str = typer.Option(..., "--first-name", prompt=True),
    last_name: str = typer.Option(..., "--last-name", prompt=True),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Create an account. This is the only way to create librarians."""
    with _services(ctx) as services:
        try:
            user = services.auth.create_user(email, password, first_name, last_name, role=role)
        except LendingError as e:
            console.print(f"[bold red]Could not create user:[/] {e.message}")
            raise typer.Exit(code=1)
    console.print(f"[green]Created {user.role}[/] {user.email} (id {user.id})")


@app.command("mark-overdue")
def cli_mark_overdue(ctx: typer.Context):
    """Flag active loans past their due date as overdue."""
    with _services(ctx) as services:
        count = services.loans.mark_overdue_loans()
    console.print(f"{count} loans marked as overdue")


@app.command("purge-tokens")
def cli_purge_tokens(ctx: typer.Context):
    """Delete expired refresh-token records."""
    with _services(ctx) as services:
        count = services.tokens.purge_expired()
    console.print(f"Purged {count} expired refresh tokens")


@app.command("stats")
def cli_stats(ctx: typer.Context):
    """Show catalogue and loan statistics."""
    with _services(ctx) as services:
        books = services.books.statistics()
        loans = services.loans.statistics()
        categories = services.categories.statistics()

    table = Table(title="Library statistics", header_style="bold cyan")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    rows = [
        ("Books", books["total_books"]),
        ("Copies", books["total_copies"]),
        ("Available copies", books["available_copies"]),
        ("Borrowed copies", books["borrowed_copies"]),
        ("Unique authors", books["unique_authors"]),
        ("Categories", categories["total_categories"]),
        ("Total loans", loans["total_loans"]),
        ("Active loans", loans["active_loans"]),
        ("Overdue loans", loans["overdue_loans"] + loans["newly_overdue"]),
        ("Returned loans", loans["returned_loans"]),
    ]
    for label, value in rows:
        table.add_row(label, str(value))
    console.print(table)


@app.command("serve")
def cli_serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Run the API with uvicorn."""
    settings: Settings = ctx.obj
    host = host or settings.api_host
    port = int(port or settings.api_port)
    console.print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "lending.api:create_app",
        "--factory",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    env = {**os.environ, "LIBRARY_DB_FILE": settings.database_file}
    try:
        subprocess.run(args, env=env, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] uvicorn could not be started. Is it installed?")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
