from __future__ import annotations

import os
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)

def _load_env() -> None:
    load_dotenv()

def _settings():
    from fieldrelay.core.config import Settings

    return Settings.from_env()

def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from fieldrelay.core.logging_config import setup_logging

    settings = _settings()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)

def _integration_store():
    from fieldrelay.core.store import IntegrationStore

    settings = _settings()
    return IntegrationStore(
        store_path=os.path.join(settings.data_dir, "integrations.json"),
        max_per_owner=settings.max_integrations_per_owner,
    )

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: FIELDRELAY_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default: FIELDRELAY_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    _load_env()
    _setup_logging()
    settings = _settings()
    uvicorn.run(
        "fieldrelay.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )

@app.command()
def version() -> None:
    from fieldrelay import __version__

    typer.echo(__version__)

@app.command("create-integration")
def create_integration(
    name: str = typer.Option(..., help="Display name"),
    platform: str = typer.Option(..., help="monday, asana, clickup, trello, notion or other"),
    owner: str = typer.Option(..., help="Owner's Telegram chat id"),
    company: str = typer.Option("", help="Company name"),
) -> None:
    """Register an integration and print its webhook URL."""
    _load_env()
    from fieldrelay.core.errors import FieldRelayError

    try:
        integration = _integration_store().create(
            name=name, platform=platform, owner_chat_id=owner, company_name=company,
        )
    except FieldRelayError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Integration {integration.integration_id} created.")
    typer.echo(f"Webhook URL: {_settings().webhook_url(integration.connect_id)}")

@app.command("add-worker")
def add_worker(
    integration_id: str = typer.Argument(..., help="Integration id (int-...)"),
    chat_id: str = typer.Option(..., help="Worker's Telegram chat id"),
    external_id: str = typer.Option("", help="Worker's user id in the PM tool"),
    external_name: str = typer.Option("", help="Worker's display name"),
) -> None:
    _load_env()
    from fieldrelay.core.errors import FieldRelayError

    try:
        integration, created = _integration_store().add_worker(
            integration_id, chat_id, external_id=external_id, external_name=external_name,
        )
    except FieldRelayError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    verb = "added" if created else "updated"
    typer.echo(f"Worker {chat_id} {verb}; {len(integration.active_workers())} active worker(s).")

@app.command("remove-worker")
def remove_worker(
    integration_id: str = typer.Argument(..., help="Integration id (int-...)"),
    chat_id: str = typer.Option(..., help="Worker's Telegram chat id"),
) -> None:
    _load_env()
    from fieldrelay.core.errors import FieldRelayError

    try:
        integration = _integration_store().remove_worker(integration_id, chat_id)
    except FieldRelayError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Worker {chat_id} deactivated; {len(integration.active_workers())} active worker(s).")

@app.command("set-webhook")
def set_webhook(
    url: Optional[str] = typer.Option(None, help="Public conversation URL (default: FIELDRELAY_PUBLIC_URL/conversation)"),
) -> None:
    """Point the Telegram bot at this server's conversation endpoint."""
    _load_env()
    from fieldrelay.core.errors import TransportError
    from fieldrelay.integrations.telegram import TelegramAdapter

    settings = _settings()
    if not settings.telegram_bot_token:
        typer.secho("TELEGRAM_BOT_TOKEN is not set.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    target = url or f"{settings.public_url}/conversation"
    try:
        TelegramAdapter(settings.telegram_bot_token).set_webhook(target, settings.telegram_webhook_secret)
    except TransportError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Webhook set to {target}")

if __name__ == "__main__":
    app()
