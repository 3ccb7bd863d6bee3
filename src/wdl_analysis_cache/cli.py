"""Maintenance CLI for the WDL analysis cache using Typer + Rich."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import CacheSettings
from .errors import BackupError, MigrationError
from .resolver.imports import ImportResolver
from .storage.integrity import CacheIntegrityValidator
from .storage.migration import CacheMigrationManager
from .storage.models import CACHE_FORMAT_VERSION
from .storage.persistent import PersistentCacheStore
from .symbols import SymbolProvider

console = Console()
app = typer.Typer(
    name="wdl-cache",
    help="🗄️ Inspect and maintain the WDL analysis cache",
    rich_markup_mode="rich",
    add_completion=False,
)


class Domain(str, Enum):
    SYMBOLS = "symbols"
    IMPORTS = "imports"
    ALL = "all"

    def names(self) -> list[str]:
        return ["symbols", "imports"] if self is Domain.ALL else [self.value]


WorkspaceOption = typer.Option(Path("."), "--workspace", "-w", help="Workspace root containing the cache")
ConfigOption = typer.Option(None, "--config", "-c", help="JSON settings file")


def _settings(config_path: Path | None) -> CacheSettings:
    # Maintenance runs are short-lived; saves happen explicitly
    settings = CacheSettings(config_path, overrides={"cache": {"auto_save": False}})
    settings.update(**{"logging.json": False, "logging.level": "WARNING"})
    settings.configure_logging()
    return settings


@asynccontextmanager
async def _owners(workspace: Path, settings: CacheSettings) -> AsyncIterator[tuple[SymbolProvider, ImportResolver]]:
    resolver = ImportResolver(workspace, settings)
    provider = SymbolProvider(workspace, settings, import_resolver=resolver)
    await resolver.initialize()
    await provider.initialize()
    try:
        yield provider, resolver
    finally:
        await provider.destroy()
        await resolver.destroy()


def _stats_table(stats: dict[str, Any], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for key, value in stats.items():
        table.add_row(key.replace("_", " "), str(value))
    return table


@app.command()
def validate(workspace: Path = WorkspaceOption, config: Path | None = ConfigOption):
    """🔍 Validate checksums and schemas of the cache files."""

    async def run():
        async with _owners(workspace, _settings(config)) as (provider, resolver):
            return await CacheIntegrityValidator(provider, resolver).validate_cache()

    result = asyncio.run(run())
    console.print(_stats_table(result.stats.model_dump(), "Cache validation"))
    for error in result.errors:
        console.print(f"❌ [red]{error}[/red]")
    for warning in result.warnings:
        console.print(f"⚠️  [yellow]{warning}[/yellow]")

    if result.is_valid:
        console.print("✅ [green]Cache is valid[/green]")
    else:
        console.print("   Run: [blue]wdl-cache repair[/blue]")
        raise typer.Exit(1)


@app.command()
def health(workspace: Path = WorkspaceOption, config: Path | None = ConfigOption):
    """🩺 Show an overall cache health report."""

    async def run():
        async with _owners(workspace, _settings(config)) as (provider, resolver):
            return await CacheIntegrityValidator(provider, resolver).generate_health_report()

    report = asyncio.run(run())
    colors = {"healthy": "green", "warning": "yellow", "critical": "red"}
    console.print(Panel.fit(
        f"[bold {colors[report['overall']]}]{report['overall'].upper()}[/bold {colors[report['overall']]}]",
        title="Cache health",
    ))
    console.print(_stats_table(report["performance"], "Performance"))
    console.print(_stats_table(report["validation"].stats.model_dump(), "Entries"))
    for recommendation in report["recommendations"]:
        console.print(f"💡 {recommendation}")


@app.command()
def repair(workspace: Path = WorkspaceOption, config: Path | None = ConfigOption):
    """🔧 Remove corrupted or invalid cache entries."""

    async def run():
        async with _owners(workspace, _settings(config)) as (provider, resolver):
            return await CacheIntegrityValidator(provider, resolver).repair_cache()

    result = asyncio.run(run())
    console.print(f"🔧 Stores rewritten: [green]{result['repaired']}[/green]")
    console.print(f"🗑️ Entries removed: [yellow]{result['removed']}[/yellow]")
    for error in result["errors"]:
        console.print(f"❌ [red]{error}[/red]")
    if result["errors"]:
        raise typer.Exit(1)


@app.command()
def optimize(workspace: Path = WorkspaceOption, config: Path | None = ConfigOption):
    """🧹 Drop stale entries and rewrite the cache files."""

    async def run():
        async with _owners(workspace, _settings(config)) as (provider, resolver):
            return await CacheIntegrityValidator(provider, resolver).optimize_cache()

    result = asyncio.run(run())
    for action in result["actions"]:
        console.print(f"• {action}")
    console.print(f"📦 Size: {result['size_before']} → {result['size_after']} bytes")
    if not result["optimized"]:
        raise typer.Exit(1)


@app.command()
def backup(
    workspace: Path = WorkspaceOption,
    config: Path | None = ConfigOption,
    label: str | None = typer.Option(None, "--label", "-l", help="Backup name prefix"),
):
    """💾 Back up the symbol and import caches."""

    async def run():
        async with _owners(workspace, _settings(config)) as (provider, resolver):
            return [
                await provider.get_persistent_cache().create_backup(label),
                await resolver.get_persistent_cache().create_backup(label),
            ]

    try:
        paths = asyncio.run(run())
    except BackupError as e:
        console.print(f"❌ [red]{e}[/red]")
        raise typer.Exit(1)

    for path in paths:
        console.print(f"✅ [green]Backup created:[/green] {path}")


@app.command()
def restore(
    name: str = typer.Argument(..., help="Backup name or prefix under <store>/backups (newest match wins)"),
    domain: Domain = typer.Option(Domain.ALL, "--domain", "-d", help="Which cache to restore"),
    workspace: Path = WorkspaceOption,
    config: Path | None = ConfigOption,
):
    """♻️ Restore cache files from a backup."""

    settings = _settings(config)

    # Stores are opened without their owners so no in-memory state is flushed over the backup
    async def run():
        for domain_name in domain.names():
            store = PersistentCacheStore(settings.store_options(workspace, domain_name))
            await store.initialize()
            try:
                matches = [path for path in store.list_backups() if path.name.startswith(name)]
                if not matches:
                    raise BackupError(f"No {domain_name} backup matching {name}")
                await store.restore_from_backup(matches[-1])
                console.print(f"✅ [green]Restored {domain_name} cache[/green] ({store.entry_count()} entries)")
            finally:
                await store.destroy()

    try:
        asyncio.run(run())
    except BackupError as e:
        console.print(f"❌ [red]{e}[/red]")
        raise typer.Exit(1)


@app.command()
def migrate(
    from_version: str | None = typer.Option(None, "--from", help="Current format version (detected if omitted)"),
    to_version: str = typer.Option(CACHE_FORMAT_VERSION, "--to", help="Target format version"),
    domain: Domain = typer.Option(Domain.ALL, "--domain", "-d", help="Which cache to migrate"),
    workspace: Path = WorkspaceOption,
    config: Path | None = ConfigOption,
):
    """⬆️ Migrate cache files to a newer format version."""
    settings = _settings(config)
    failed = False

    for domain_name in domain.names():
        manager = CacheMigrationManager(settings.store_options(workspace, domain_name).cache_dir)
        source = from_version or manager.detect_version()
        if source is None:
            console.print(f"ℹ️  No {domain_name} cache files found")
            continue

        try:
            result = asyncio.run(manager.migrate(source, to_version))
        except MigrationError as e:
            console.print(f"❌ [red]{e}[/red]")
            for issue in e.issues:
                console.print(f"   • {issue}")
            failed = True
            continue

        status = "[green]succeeded[/green]" if result["success"] else "[red]failed[/red]"
        console.print(f"{domain_name}: {source} → {to_version} {status}")
        for step in result["steps_executed"]:
            console.print(f"   ✓ {step}")
        for warning in result["warnings"]:
            console.print(f"   ⚠️  [yellow]{warning}[/yellow]")
        for error in result["errors"]:
            console.print(f"   ❌ [red]{error}[/red]")
        failed = failed or not result["success"]

    if failed:
        raise typer.Exit(1)


@app.command()
def history(
    domain: Domain = typer.Option(Domain.ALL, "--domain", "-d", help="Which cache to show"),
    workspace: Path = WorkspaceOption,
    config: Path | None = ConfigOption,
):
    """📜 Show recent cache migrations."""
    settings = _settings(config)
    table = Table(title="Migration history")
    table.add_column("Cache", style="cyan")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Result")
    table.add_column("Steps", justify="right")

    for domain_name in domain.names():
        manager = CacheMigrationManager(settings.store_options(workspace, domain_name).cache_dir)
        for record in asyncio.run(manager.get_migration_history()):
            table.add_row(
                domain_name,
                record["from_version"],
                record["to_version"],
                "✅" if record["success"] else "❌",
                str(len(record["steps_executed"])),
            )

    console.print(table)


def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
