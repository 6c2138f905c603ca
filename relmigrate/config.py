"""
Configuration loading, validation, and connection testing.
"""

import os
import sys
import json
from pathlib import Path
from typing import Optional

from rich.prompt import Confirm

from relmigrate import (
    console, CONFIG_FILE, DEFAULT_CONFIG, DEFAULT_BATCH_SIZE, SUPPORTED_ENGINES,
)
from relmigrate.stores import StoreConnectionError, open_store

ENV_BATCH_SIZE = "MIGRATION_BATCH_SIZE"
ENV_SOURCE_PATH = "SOURCE_DATABASE_PATH"
# Prisma-style source location, e.g. file:./prisma/dev.db
ENV_SQLITE_URL = "SQLITE_DATABASE_URL"

DEFAULT_PORTS = {"postgresql": 5432, "mysql": 3306}
SERVER_FIELDS = ("host", "port", "user", "password", "database")


# ═════════════════════════════════════════════════════════════
# Data classes for connection details
# ═════════════════════════════════════════════════════════════

class StoreConfig:
    def __init__(self, engine: str, host: str = "", port: int = 0, user: str = "",
                 password: str = "", database: str = "", path: str = "", schema: str = "public"):
        self.engine = engine
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.path = path
        self.schema = schema

    @property
    def display(self) -> str:
        """Connection string with the password masked."""
        if self.engine == "sqlite":
            return f"sqlite:///{self.path}"
        return f"{self.engine}://{self.user}:****@{self.host}:{self.port}/{self.database}"


class MigrationConfig:
    def __init__(self, source: StoreConfig, destination: StoreConfig,
                 batch_size: int = DEFAULT_BATCH_SIZE, exclude_tables: Optional[list[str]] = None):
        self.source = source
        self.destination = destination
        self.batch_size = batch_size
        self.exclude_tables = exclude_tables or []


# ═════════════════════════════════════════════════════════════
# Configuration functions
# ═════════════════════════════════════════════════════════════

def _fail(message: str):
    console.print(message)
    sys.exit(1)


def init_config(config_file: Path = CONFIG_FILE):
    """Create a fresh migration_config.json with defaults."""
    if config_file.exists():
        console.print(f"  [yellow]⚠ Config file already exists:[/yellow] {config_file}")
        if not Confirm.ask("  Overwrite?", default=False):
            console.print("  [dim]Skipped. Edit the existing file manually.[/dim]")
            return

    try:
        config_file.write_text(json.dumps(DEFAULT_CONFIG, indent=2) + "\n")
    except PermissionError:
        _fail(
            f"\n[red]✗ Permission denied:[/red] Cannot write to {config_file}\n"
            "  Try running with appropriate permissions or check directory ownership.\n"
        )
    except OSError as e:
        _fail(
            f"\n[red]✗ Failed to create config file:[/red] {e}\n"
            "  Check disk space and directory permissions.\n"
        )

    console.print(f"  [green]✓[/green] Created [bold]{config_file}[/bold]")
    console.print("  [dim]Edit the file with your source/destination connection details, then run:[/dim]")
    console.print("  [cyan]python migrate.py[/cyan]\n")


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _validate_store_section(label: str, section: dict, errors: list[str]):
    engine = section.get("engine")
    if engine not in SUPPORTED_ENGINES:
        errors.append(f"{label}.engine — must be one of {', '.join(SUPPORTED_ENGINES)}, got {engine!r}")
        return

    required = ("path",) if engine == "sqlite" else SERVER_FIELDS
    for key in required:
        if key not in section:
            if key == "port":
                continue
            errors.append(f"{label}.{key} — field missing")
        elif _is_blank(section[key]):
            errors.append(f"{label}.{key} — value is empty")

    # Check for placeholder values
    for key, value in section.items():
        if isinstance(value, str) and value.startswith("YOUR_"):
            errors.append(f"{label}.{key} — still has placeholder value \"{value}\"")


def _parse_port(label: str, section: dict) -> int:
    raw = section.get("port", DEFAULT_PORTS[section["engine"]])
    try:
        port = int(raw)
    except (ValueError, TypeError):
        _fail(
            f"\n[red]✗ {label}.port must be a number,[/red] got: \"{raw}\"\n"
            f"  [dim]Use a number without quotes, e.g. \"port\": {DEFAULT_PORTS[section['engine']]}[/dim]\n"
        )
    if not (1 <= port <= 65535):
        _fail(f"\n[red]✗ {label}.port must be between 1 and 65535,[/red] got: {port}\n")
    return port


def _build_store_config(label: str, section: dict, schema: str) -> StoreConfig:
    engine = section["engine"]
    if engine == "sqlite":
        return StoreConfig(engine=engine, path=str(section["path"]).strip())
    return StoreConfig(
        engine=engine,
        host=str(section["host"]).strip(),
        port=_parse_port(label, section),
        user=str(section["user"]).strip(),
        password=str(section["password"]),
        database=str(section["database"]).strip(),
        schema=str(section.get("schema", schema)).strip(),
    )


def _parse_batch_size(raw, origin: str) -> int:
    try:
        batch_size = int(raw)
    except (ValueError, TypeError):
        _fail(f"\n[red]✗ {origin} must be a number,[/red] got: \"{raw}\"\n")
    if batch_size < 1:
        _fail(f"\n[red]✗ {origin} must be at least 1,[/red] got: {batch_size}\n")
    return batch_size


def sqlite_url_path(url: Optional[str]) -> Optional[str]:
    """File path of a SQLite URL: ``file:./prisma/dev.db?connection_limit=1`` -> ``./prisma/dev.db``."""
    if not url or not url.strip():
        return None
    path = url.strip()
    if path.startswith("file:"):
        path = path[len("file:"):]
    return path.split("?", 1)[0] or None


def load_config(config_file: Path = CONFIG_FILE, source_path: Optional[str] = None,
                batch_size: Optional[int] = None) -> MigrationConfig:
    """Load and validate migration_config.json.

    ``source_path`` and ``batch_size`` (command-line values) win over the
    MIGRATION_BATCH_SIZE / SOURCE_DATABASE_PATH environment variables,
    which win over the file. SQLITE_DATABASE_URL is read when
    SOURCE_DATABASE_PATH is unset.
    """
    if not config_file.exists():
        _fail(
            f"\n[red]✗ Config file not found:[/red] {config_file}\n"
            "  Run [cyan]python migrate.py --init[/cyan] to create it.\n"
        )

    try:
        raw = config_file.read_text()
    except PermissionError:
        _fail(
            f"\n[red]✗ Permission denied:[/red] Cannot read {config_file}\n"
            f"  Check file permissions: [dim]ls -la {config_file.name}[/dim]\n"
        )
    except OSError as e:
        _fail(f"\n[red]✗ Cannot read config file:[/red] {e}")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        _fail(
            f"\n[red]✗ Invalid JSON in {config_file.name}:[/red]\n"
            f"  {e}\n\n"
            "  [dim]Common issues: trailing commas, missing quotes, unescaped characters.[/dim]\n"
            f"  [dim]Tip: Use a JSON validator or run:[/dim] python -m json.tool {config_file.name}\n"
        )

    if not isinstance(data, dict):
        _fail(
            f"\n[red]✗ Config file must contain a JSON object,[/red] got {type(data).__name__}\n"
            "  [dim]Expected format: {{\"source\": {{...}}, \"destination\": {{...}}}}[/dim]\n"
        )

    # Validate required sections
    for section in ("source", "destination"):
        if section not in data:
            _fail(
                f"\n[red]✗ Missing \"{section}\" section in {config_file.name}[/red]\n"
                "  [dim]Run [cyan]python migrate.py --init[/cyan] to regenerate the config file.[/dim]\n"
            )
        if not isinstance(data[section], dict):
            _fail(f"\n[red]✗ \"{section}\" must be a JSON object, got {type(data[section]).__name__}[/red]")

    migration = data.get("migration", {})
    if not isinstance(migration, dict):
        _fail(f"\n[red]✗ \"migration\" must be a JSON object, got {type(migration).__name__}[/red]")

    source = dict(data["source"])
    destination = dict(data["destination"])

    env_path = os.environ.get(ENV_SOURCE_PATH) or sqlite_url_path(os.environ.get(ENV_SQLITE_URL))
    if source_path or env_path:
        source["path"] = source_path or env_path

    errors: list[str] = []
    _validate_store_section("source", source, errors)
    _validate_store_section("destination", destination, errors)

    exclude = migration.get("exclude_tables", [])
    if not isinstance(exclude, list) or not all(isinstance(t, str) for t in exclude):
        errors.append("migration.exclude_tables — must be a list of table names")

    if errors:
        console.print(f"\n[red]✗ Config validation failed ({len(errors)} issue{'s' if len(errors) > 1 else ''}):[/red]")
        for err in errors:
            console.print(f"  [yellow]•[/yellow] {err}")
        _fail(f"\n  [dim]Edit {config_file.name} and fix the issues above.[/dim]\n")

    if batch_size is not None:
        size = _parse_batch_size(batch_size, "--batch-size")
    elif os.environ.get(ENV_BATCH_SIZE):
        size = _parse_batch_size(os.environ[ENV_BATCH_SIZE], ENV_BATCH_SIZE)
    else:
        size = _parse_batch_size(migration.get("batch_size", DEFAULT_BATCH_SIZE), "migration.batch_size")

    schema = str(migration.get("schema", "public"))
    return MigrationConfig(
        source=_build_store_config("source", source, schema),
        destination=_build_store_config("destination", destination, schema),
        batch_size=size,
        exclude_tables=exclude,
    )


def check_connection(config: StoreConfig, label: str) -> bool:
    """Test connectivity to one side before proceeding."""
    try:
        with open_store(config) as store:
            if not store.ping():
                console.print(f"\n  [red]✗ {label} did not answer a liveness query.[/red]\n")
                return False
        return True
    except StoreConnectionError as e:
        console.print(f"\n  [red]✗ {label} connection failed:[/red] {e}")
        _print_troubleshooting(config, e)
        console.print("")
        return False


def _print_troubleshooting(config: StoreConfig, error: StoreConnectionError):
    cause = error.__cause__
    error_code = getattr(cause, "errno", None)
    text = str(error).lower()

    if config.engine == "sqlite":
        console.print(
            "\n  [yellow]Troubleshooting:[/yellow]\n"
            f"    • Check that [cyan]{config.path}[/cyan] exists and is readable\n"
            f"    • Override the location with [dim]--source PATH[/dim] or [dim]{ENV_SOURCE_PATH}[/dim]"
        )
    elif error_code == 2003 or "connection refused" in text or "could not connect" in text:
        console.print(
            "\n  [yellow]Troubleshooting:[/yellow]\n"
            f"    1. Is {config.engine} running on [cyan]{config.host}:{config.port}[/cyan]?\n"
            "    2. Check firewall rules for that port\n"
            "    3. Make sure the server listens on a reachable address"
        )
    elif error_code == 1045 or "password authentication failed" in text:
        console.print(
            "\n  [yellow]Troubleshooting:[/yellow]\n"
            f"    • Access denied for user [cyan]{config.user}[/cyan]\n"
            "    • Check password in [cyan]migration_config.json[/cyan]"
        )
    elif error_code == 1049 or ("database" in text and "does not exist" in text):
        console.print(
            "\n  [yellow]Troubleshooting:[/yellow]\n"
            f"    • Database [cyan]{config.database}[/cyan] does not exist\n"
            "    • Check spelling in [cyan]migration_config.json[/cyan]"
        )
    elif error_code == 2005 or "could not translate host name" in text:
        console.print(
            "\n  [yellow]Troubleshooting:[/yellow]\n"
            f"    • Cannot resolve hostname [cyan]{config.host}[/cyan]\n"
            "    • Try using an IP address instead"
        )
