"""Scan report formatting — JSON output and Rich terminal rendering."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from extenscan.models import ChangeSet, RiskAssessment, ScanResult, Severity

_SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "cyan",
}

_SEVERITY_ORDER = ["critical", "high", "medium", "low"]


def health_band(score: int) -> tuple[str, str]:
    """Label and style for a health score."""
    if score >= 90:
        return "Excellent", "green"
    if score >= 70:
        return "Good", "yellow"
    if score >= 50:
        return "Fair", "dark_orange"
    return "Poor", "red"


def scan_result_to_json(result: ScanResult) -> str:
    """Serialize a scan result to JSON."""
    return result.model_dump_json(indent=2)


def change_set_to_json(changes: ChangeSet) -> str:
    return changes.model_dump_json(indent=2)


def risk_assessment_to_json(assessment: RiskAssessment) -> str:
    return assessment.model_dump_json(indent=2)


def _styled(level: str) -> str:
    style = _SEVERITY_STYLES.get(level, "")
    return f"[{style}]{level.upper()}[/{style}]"


def render_scan_result(result: ScanResult, console: Console | None = None) -> None:
    """Render a Rich-formatted scan report to the console."""
    if console is None:
        console = Console()

    counts = result.severity_counts()
    label, style = health_band(result.health_score)
    scanned = result.scan_time.strftime("%Y-%m-%d %H:%M:%S %Z") if result.scan_time else "—"
    header = (
        f"[bold]Health score: [{style}]{result.health_score}/100 ({label})[/{style}][/bold]\n\n"
        f"Packages: {len(result.packages)}  |  Vulnerabilities: {len(result.vulnerabilities)}  |  "
        f"Outdated: {len(result.outdated)}\n"
        f"Critical: {counts[Severity.CRITICAL]}  High: {counts[Severity.HIGH]}  "
        f"Medium: {counts[Severity.MEDIUM]}  Low: {counts[Severity.LOW]}\n"
        f"Checks: {', '.join(c.value for c in result.checks_run) or 'none'}  |  Scanned: {scanned}"
    )
    console.print(Panel(header, title="extenscan", border_style=style))

    if result.vulnerabilities:
        table = Table(title="Vulnerabilities")
        table.add_column("Severity", style="bold")
        table.add_column("ID")
        table.add_column("Package")
        table.add_column("Affected")
        table.add_column("Fixed In")
        table.add_column("Title")

        for v in sorted(result.vulnerabilities, key=lambda x: (_SEVERITY_ORDER.index(x.severity.value), x.package_id)):
            table.add_row(
                _styled(v.severity.value),
                v.id,
                v.package_id,
                v.affected_range or "—",
                v.fixed_version or "—",
                v.title[:80],
            )
        console.print(table)

    if result.outdated:
        table = Table(title="Outdated Packages")
        table.add_column("Package", style="bold cyan")
        table.add_column("Current")
        table.add_column("Latest", style="green")
        table.add_column("Update")

        for o in result.outdated:
            table.add_row(o.package_id, o.current_version, o.latest_version, o.update_class.value)
        console.print(table)

    risky = [r for r in result.risk_assessments if r.score > 0]
    if risky:
        table = Table(title="Extension Risk")
        table.add_column("Risk", style="bold")
        table.add_column("Score")
        table.add_column("Extension")
        table.add_column("Host Access")
        table.add_column("Top Permissions")

        for r in sorted(risky, key=lambda x: -x.score):
            top = ", ".join(f.permission for f in r.permission_findings[:3])
            table.add_row(_styled(r.risk_level.value), str(r.score), r.package_id, r.host_scope.value, top or "—")
        console.print(table)

    for d in result.diagnostics:
        console.print(f"[yellow]Warning:[/yellow] {d.check.value} lookup failed for {d.subject}: {d.message}")

    if not result.vulnerabilities and not result.outdated:
        console.print(f"[green]No vulnerabilities or outdated packages found[/green] in {len(result.packages)} packages.")


def render_change_set(changes: ChangeSet, console: Console | None = None) -> None:
    """Render watch-mode changes. Prints a single line when nothing changed."""
    if console is None:
        console = Console()

    delta = changes.health_score - changes.previous_health_score
    if not changes.has_changes:
        console.print(f"[dim]No changes (health {changes.health_score}/100).[/dim]")
        return

    lines = [f"[bold]Health: {changes.previous_health_score} → {changes.health_score} ({delta:+d})[/bold]"]
    for pkg in changes.added_packages:
        lines.append(f"[green]+ {pkg.identity} {pkg.version}[/green]")
    for pkg in changes.removed_packages:
        lines.append(f"[red]- {pkg.identity} {pkg.version}[/red]")
    for change in changes.version_changes:
        lines.append(f"[cyan]~ {change.identity} {change.previous_version} → {change.current_version}[/cyan]")
    for v in changes.new_vulnerabilities:
        lines.append(f"[red]! new {v.severity.value} vulnerability {v.id} in {v.package_id}[/red]")
    for v in changes.resolved_vulnerabilities:
        lines.append(f"[green]✓ resolved {v.id} in {v.package_id}[/green]")
    for o in changes.newly_outdated:
        lines.append(f"[yellow]↑ {o.package_id} {o.current_version} → {o.latest_version} available[/yellow]")
    for o in changes.no_longer_outdated:
        lines.append(f"[green]✓ {o.package_id} is up to date[/green]")

    console.print(Panel("\n".join(lines), title="Changes", border_style="yellow"))


def render_risk_assessment(assessment: RiskAssessment, console: Console | None = None) -> None:
    """Render the risk breakdown of one extension."""
    if console is None:
        console = Console()

    header = (
        f"[bold]{assessment.package_id}[/bold]\n\n"
        f"Risk: {_styled(assessment.risk_level.value)}  |  Score: {assessment.score}  |  "
        f"Host access: {assessment.host_scope.value}"
    )
    console.print(Panel(header, title="Extension Risk", border_style="yellow"))

    if assessment.permission_findings:
        table = Table(title="Permissions")
        table.add_column("Risk", style="bold")
        table.add_column("Permission")
        table.add_column("Description")

        for f in assessment.permission_findings:
            name = f"{f.permission} (optional)" if f.optional else f.permission
            table.add_row(_styled(f.risk_level.value), name, f.description)
        console.print(table)

    for finding in assessment.csp_findings:
        console.print(f"[yellow]CSP:[/yellow] {finding.weakness.value} — {finding.detail}")

    if assessment.external_domains:
        console.print(f"External domains: {', '.join(assessment.external_domains)}")
