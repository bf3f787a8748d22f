"""
CLI interface for AI Gateway.

Operator access to the gateway: schema setup, running operations, usage
reports and per-user API keys.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_gateway.app import build_gateway
from ai_gateway.config.loader import (
    ConfigurationError,
    PlatformSettings,
    load_gateway_overrides,
)
from ai_gateway.core.credentials import mask_credential
from ai_gateway.core.gateway import Gateway
from ai_gateway.core.operations import OperationRegistry
from ai_gateway.core.types import GatewayRequest, GatewayResponse
from ai_gateway.logging_config import configure_logging
from ai_gateway.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION_HELP = "YAML file overriding tier limits and model prices"


def _load_settings() -> PlatformSettings:
    settings = PlatformSettings.from_env()
    configure_logging(settings.log_level, settings.log_format)
    return settings


def _load_gateway(config: Optional[Path] = None) -> Gateway:
    settings = _load_settings()
    overrides = load_gateway_overrides(str(config)) if config else None
    return build_gateway(settings, overrides=overrides)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Gateway CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Gateway - Use --help to see available commands")


@app.command()
def init():
    """Initialize the AI Gateway database."""
    try:
        settings = _load_settings()
        initialize_schema(settings.db_path)
        console.print(f"[green]✓[/] Database initialized at {settings.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status():
    """Show deployment settings and database state."""
    try:
        settings = _load_settings()
    except ValueError as e:
        _fail(str(e))

    table = Table(title="AI Gateway Status")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Deployment mode", settings.deployment_mode.value)
    table.add_row("Platform API key", mask_credential(settings.default_credential) or "[yellow]not set[/]")
    table.add_row("Database", settings.db_path)
    table.add_row("Database initialized", "yes" if Path(settings.db_path).exists() else "no")
    table.add_row("Request timeout", f"{settings.request_timeout}s" if settings.request_timeout else "none")
    console.print(table)


@app.command()
def operations():
    """List configured operations."""
    registry = OperationRegistry()
    table = Table(title="Operations")
    table.add_column("Name")
    table.add_column("Model")
    table.add_column("Reasoning")
    table.add_column("Web search")
    table.add_column("Shape")
    table.add_column("Required fields")
    for name in registry.names():
        config = registry.get_config(name)
        table.add_row(
            config.name,
            config.model,
            config.reasoning.value,
            "yes" if config.use_web_search else "no",
            config.shape.value,
            ", ".join(config.required_fields) or "-",
        )
    console.print(table)


def _print_response(response: GatewayResponse) -> None:
    if response.success:
        console.print_json(json.dumps(response.data))
    else:
        console.print(f"[red]{response.error.kind.value}:[/] {response.error.message}")

    source = "cache" if response.cached else "model"
    console.print(
        f"[dim]tier={response.tier} model={response.model} source={source} "
        f"cost=${response.cost_estimate:.6f} elapsed={response.elapsed_ms:.0f}ms[/]"
    )
    if response.remaining_quota is not None:
        console.print(f"[dim]Remaining this month: {response.remaining_quota}[/]")


@app.command()
def run(
    operation: str = typer.Argument(..., help="Operation name, e.g. job_extraction"),
    content: Optional[str] = typer.Argument(None, help="Content to process"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Read content from a file"),
    user: str = typer.Option("local", "--user", "-u", help="Caller identity"),
    instructions: Optional[str] = typer.Option(None, "--instructions", "-i", help="Additional instructions"),
    refresh: bool = typer.Option(False, "--refresh", help="Bypass the response cache"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Use this API key for the call"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """Run one operation through the gateway and print the result."""
    if file is not None:
        content = file.read_text(encoding="utf-8")
    if not content or not content.strip():
        _fail("Provide content as an argument or with --file")

    try:
        gateway = _load_gateway(config)
        response = asyncio.run(gateway.request(GatewayRequest(
            operation=operation,
            content=content,
            user_id=user,
            additional_instructions=instructions,
            force_refresh=refresh,
            custom_credential=api_key,
        )))
    except (ConfigurationError, ValueError, FileNotFoundError, yaml.YAMLError) as e:
        _fail(str(e))

    _print_response(response)
    sys.exit(EXIT_CODE_PASS if response.success else EXIT_CODE_FAIL)


@app.command()
def usage(
    user: str = typer.Argument(..., help="Caller identity"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """Show a user's usage for the current month."""
    try:
        gateway = _load_gateway(config)
        stats = gateway.get_user_usage_stats(user)
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        _fail(str(e))

    limit = "unlimited" if stats.monthly_limit is None else str(stats.monthly_limit)
    console.print(f"\n[bold]Usage for {stats.user_id}[/bold] ({stats.month_key})")
    console.print(f"Tier: {stats.tier.value}  Mode: {stats.mode.value}  Limit per operation: {limit}")

    if not stats.by_operation:
        console.print("\n[dim]No usage recorded this month.[/]")
        return

    table = Table()
    table.add_column("Operation")
    table.add_column("Requests", justify="right")
    for name, count in stats.by_operation.items():
        table.add_row(name, str(count))
    table.add_row("[bold]Total[/]", f"[bold]{stats.total_requests}[/]")
    console.print(table)
    console.print(f"Estimated tokens: {stats.total_tokens:,}")


@app.command("set-key")
def set_key(
    user: str = typer.Argument(..., help="Caller identity"),
    api_key: str = typer.Option(..., "--api-key", prompt=True, hide_input=True, help="OpenAI API key"),
):
    """Store a user's own API key (encrypted) and switch them to self-hosted."""
    try:
        gateway = _load_gateway()
        gateway.save_user_credential(user, api_key)
    except ValueError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] API key {mask_credential(api_key.strip())} saved for {user}")


@app.command("remove-key")
def remove_key(user: str = typer.Argument(..., help="Caller identity")):
    """Remove a user's stored API key and return them to the free tier."""
    gateway = _load_gateway()
    gateway.remove_user_credential(user)
    console.print(f"[green]✓[/] API key removed for {user}")


@app.command("purge-cache")
def purge_cache():
    """Delete expired cache entries."""
    gateway = _load_gateway()
    removed = gateway.purge_expired_cache()
    console.print(f"[green]✓[/] Removed {removed} expired cache entries")


@app.command()
def health(
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key to check with"),
):
    """Send a minimal request to check the model service."""
    gateway = _load_gateway()
    result = asyncio.run(gateway.processor.health_check(credential=api_key))
    if result["status"] == "healthy":
        console.print(f"[green]✓[/] {result['message']} ({result['response_time_ms']:.0f}ms)")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]✗[/] {result['message']}")
    sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
