"""
Command line entry point for taskboard.

Serves the API with uvicorn, creates the schema, and seeds users for local
setups where no identity service is wired in yet.
"""

import logging

import click

from .config import ConfigurationError, Settings
from .database import open_database
from .models import UserType


def _load_settings() -> Settings:
    try:
        settings = Settings.from_env()
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=settings.log_level
    )
    return settings


@click.group()
def main():
    """Taskboard task assignment backend."""


@main.command()
@click.option("--host", default=None, help="Interface to bind (default: HOST or 0.0.0.0)")
@click.option("--port", type=int, default=None, help="Port to bind (default: PORT or 8000)")
@click.option("--reload", is_flag=True, help="Reload on code changes (development only)")
def serve(host, port, reload):
    """Run the HTTP API."""
    import uvicorn
    from .api import app

    settings = _load_settings()
    app.state.settings = settings

    host = host or settings.host
    port = port or settings.port
    click.echo(f"Taskboard API on http://{host}:{port} ({settings.backend.value} backend)")

    if reload:
        # Reload mode re-imports the app in a subprocess, which reads the environment itself
        uvicorn.run("taskboard.api:app", host=host, port=port, reload=True,
                    log_level=settings.log_level.lower())
    else:
        uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


@main.command("init-db")
def init_db():
    """Create the users and tasks tables if they do not exist."""
    settings = _load_settings()
    try:
        with open_database(settings):
            pass
    except (ConfigurationError, RuntimeError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Schema initialized on {settings.backend.value} backend")


@main.command("create-user")
@click.argument("name")
@click.option("--email", default=None, help="Optional unique email address")
@click.option("--admin", is_flag=True, help="Grant the admin role")
def create_user(name, email, admin):
    """Add a user, e.g. the first admin of a fresh database."""
    settings = _load_settings()
    user_type = UserType.ADMIN.value if admin else UserType.USER.value
    try:
        with open_database(settings) as db:
            user = db.create_user(name, email=email, user_type=user_type)
    except (ConfigurationError, RuntimeError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Created {user['user_type']} account {user['name']} with id {user['id']}")


if __name__ == "__main__":
    main()
