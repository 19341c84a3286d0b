"""Typer CLI for extenscan."""

import asyncio
import logging

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler

from extenscan.cache import ResolverCache
from extenscan.config import settings
from extenscan.enrichment import EXIT_ERROR, EnrichmentOptions, create_enricher, exit_code_for
from extenscan.errors import ConfigurationError
from extenscan.ignore import load_ignore_policy
from extenscan.inventory import load_inventory, load_manifest
from extenscan.models import ChangeSet, ScanResult, Severity
from extenscan.report import (
    change_set_to_json,
    render_change_set,
    render_risk_assessment,
    render_scan_result,
    risk_assessment_to_json,
    scan_result_to_json,
)
from extenscan.risk import assess_extension
from extenscan.watch import WatchSession

app = typer.Typer(
    name="extenscan",
    help="extenscan — vulnerability, freshness and risk enrichment for installed extensions and packages.",
)
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _open_cache() -> ResolverCache:
    return ResolverCache(settings.resolved_cache_path(), settings.cache_ttl_hours)


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(code=EXIT_ERROR)


def _build_options(no_vuln_check: bool, no_outdated_check: bool, no_parallel: bool) -> EnrichmentOptions:
    options = EnrichmentOptions.from_settings(settings)
    if no_vuln_check:
        options.check_vulnerabilities = False
    if no_outdated_check:
        options.check_outdated = False
    if no_parallel:
        options.parallel = False
    return options


@app.command()
def scan(
    inventory: str = typer.Argument(help="JSON inventory of discovered packages"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON result"),
    no_vuln_check: bool = typer.Option(False, "--no-vuln-check", help="Skip vulnerability lookups"),
    no_outdated_check: bool = typer.Option(False, "--no-outdated-check", help="Skip latest-version lookups"),
    no_parallel: bool = typer.Option(False, "--no-parallel", help="Run lookups one at a time"),
    fail_on: Severity | None = typer.Option(None, "--fail-on", help="Exit non-zero on vulnerabilities at or above this severity"),
    ignore_file: str = typer.Option("", "--ignore-file", help="Path to YAML ignore file"),
    clear_cache: bool = typer.Option(False, "--clear-cache", help="Clear the resolver cache before scanning"),
):
    """Enrich an inventory with vulnerabilities, outdated versions and extension risk."""
    try:
        packages = load_inventory(inventory)
        policy = settings.ignore_policy()
        if ignore_file:
            policy = policy.merged(load_ignore_policy(ignore_file))
    except ConfigurationError as e:
        raise _fail(str(e))

    options = _build_options(no_vuln_check, no_outdated_check, no_parallel)
    cache = _open_cache()
    if clear_cache:
        removed = cache.clear()
        console.print(f"[dim]Cleared {removed} cache entries.[/dim]")

    async def _run() -> ScanResult:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
            enricher = create_enricher(client, cache, policy, options)
            return await enricher.enrich(packages)

    try:
        result = asyncio.run(_run())
    finally:
        cache.close()

    if json_output:
        console.print(scan_result_to_json(result))
    else:
        render_scan_result(result, console)

    code = exit_code_for(result, fail_on)
    if code:
        raise typer.Exit(code=code)


@app.command()
def watch(
    inventory: str = typer.Argument(help="JSON inventory, re-read every cycle"),
    interval: float = typer.Option(300.0, "--interval", help="Seconds between cycles"),
    cycles: int = typer.Option(0, "--cycles", help="Stop after N cycles (0 = run until interrupted)"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON"),
    ignore_file: str = typer.Option("", "--ignore-file", help="Path to YAML ignore file"),
):
    """Re-scan periodically and report what changed."""
    try:
        policy = settings.ignore_policy()
        if ignore_file:
            policy = policy.merged(load_ignore_policy(ignore_file))
    except ConfigurationError as e:
        raise _fail(str(e))

    cache = _open_cache()

    async def _run() -> None:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
            session = WatchSession(create_enricher(client, cache, policy))
            completed = 0
            while cycles <= 0 or completed < cycles:
                if completed:
                    await asyncio.sleep(interval)
                output = await session.cycle(load_inventory(inventory))
                completed += 1
                if isinstance(output, ChangeSet):
                    if json_output:
                        console.print(change_set_to_json(output))
                    else:
                        render_change_set(output, console)
                elif json_output:
                    console.print(scan_result_to_json(output))
                else:
                    render_scan_result(output, console)
                cache.purge_expired()

    try:
        asyncio.run(_run())
    except ConfigurationError as e:
        raise _fail(str(e))
    except KeyboardInterrupt:
        console.print("[dim]Watch stopped.[/dim]")
    finally:
        cache.close()


@app.command()
def assess(
    manifest: str = typer.Argument(help="Path to an extension manifest.json"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON assessment"),
):
    """Score the permission, host access and CSP risk of one browser extension."""
    try:
        package = load_manifest(manifest)
    except ConfigurationError as e:
        raise _fail(str(e))

    assessment = assess_extension(package)
    if json_output:
        console.print(risk_assessment_to_json(assessment))
    else:
        render_risk_assessment(assessment, console)


@app.command(name="clear-cache")
def clear_cache(
    prefix: str = typer.Option("", "--prefix", help="Only clear keys starting with this prefix, e.g. 'osv:'"),
):
    """Remove cached registry and vulnerability responses."""
    cache = _open_cache()
    try:
        removed = cache.clear(prefix or None)
    finally:
        cache.close()
    console.print(f"[green]Cleared {removed} cache entries.[/green]")


if __name__ == "__main__":
    app()
