"""Configuration Commands - CLI settings management"""

from typing import Any

import typer
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from ..utils.config_manager import SECRET_KEYS, config
from ..utils.formatting import print_error, print_info, print_success

console = Console()
app = typer.Typer(name="config", help="CLI configuration management")


def _mask(key: str, value: Any) -> str:
    if key in SECRET_KEYS:
        return "set" if value else "not set"
    return "" if value is None else str(value)


def _flatten(data: dict[str, Any], prefix: str = "") -> list[tuple[str, Any]]:
    rows = []
    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            rows.extend(_flatten(value, full_key))
        else:
            rows.append((full_key, value))
    return rows


@app.command("set")
def set_config(
    key: str = typer.Argument(..., help="Configuration key (e.g., 'api.base_url')"),
    value: str = typer.Argument(..., help="Configuration value"),
):
    """⚙️ Set a configuration value"""
    if key == "api.base_url" and not value.startswith(("http://", "https://")):
        print_error("API base URL must start with http:// or https://")
        raise typer.Exit(1)

    try:
        stored = config.set(key, value)
    except ValueError:
        print_error(f"{key} must be numeric")
        raise typer.Exit(1) from None
    except OSError as e:
        print_error(f"Failed to write {config.config_file}: {e}")
        raise typer.Exit(1) from None

    print_success(f"Set {key} = {_mask(key, stored)}")
    if key == "api.base_url":
        print_info("Test connection with: labelops status")


@app.command("get")
def get_config(key: str = typer.Argument(..., help="Configuration key")):
    """📋 Get a configuration value"""
    value = config.get(key)
    if value is None:
        console.print(f"[yellow]Key '{key}' not set[/yellow]")
        raise typer.Exit(1)
    console.print(f"[cyan]{key}[/cyan] = [yellow]{_mask(key, value)}[/yellow]")


@app.command("show")
def show_config():
    """📊 Show the effective configuration"""
    table = Table(title=f"Configuration ({config.config_file})")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="yellow")
    for key, value in _flatten(config.load_config()):
        table.add_row(key, _mask(key, value))
    console.print(table)


@app.command("reset")
def reset_config(yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """🔄 Reset configuration to defaults"""
    if not yes and not Confirm.ask("Reset ALL stored configuration to defaults?"):
        console.print("Configuration reset cancelled.")
        return

    try:
        config.reset()
    except OSError as e:
        print_error(f"Failed to reset configuration: {e}")
        raise typer.Exit(1) from None
    print_success("Configuration reset to defaults")
