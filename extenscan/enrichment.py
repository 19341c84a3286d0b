"""Enrichment orchestrator: fan packages out to resolvers, merge, filter, score."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from extenscan.cache import ResolverCache
from extenscan.config import ExtenscanSettings, settings
from extenscan.errors import TransientLookupFailure
from extenscan.ignore import IgnorePolicy
from extenscan.models import (
    CheckKind,
    Diagnostic,
    OutdatedInfo,
    Package,
    RiskAssessment,
    ScanResult,
    Severity,
    UpdateClass,
    Vulnerability,
)
from extenscan.resolvers.osv import OsvClient, VulnerabilityResolver
from extenscan.resolvers.registries import default_version_sources
from extenscan.resolvers.versions import VersionResolver
from extenscan.risk import assess_extension

logger = logging.getLogger(__name__)

# Exit codes for CI integration
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CRITICAL = 2
EXIT_HIGH = 3
EXIT_MEDIUM = 4
EXIT_LOW = 5

_SEVERITY_EXIT_CODES: dict[Severity, int] = {
    Severity.CRITICAL: EXIT_CRITICAL,
    Severity.HIGH: EXIT_HIGH,
    Severity.MEDIUM: EXIT_MEDIUM,
    Severity.LOW: EXIT_LOW,
}

_SEVERITY_DEDUCTIONS: dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.LOW: 3,
}

_UPDATE_DEDUCTIONS: dict[UpdateClass, int] = {
    UpdateClass.MAJOR: 5,
    UpdateClass.MINOR: 2,
    UpdateClass.PATCH: 2,
}


def compute_health_score(
    packages: list[Package],
    vulnerabilities: list[Vulnerability],
    outdated: list[OutdatedInfo],
) -> int:
    """0-100 summary of un-suppressed findings. An empty inventory scores 100."""
    if not packages:
        return 100
    score = 100
    score -= sum(_SEVERITY_DEDUCTIONS[v.severity] for v in vulnerabilities)
    score -= sum(_UPDATE_DEDUCTIONS[o.update_class] for o in outdated)
    return max(score, 0)


def exit_code_for(result: ScanResult, fail_on: Severity | None = None) -> int:
    """CI exit code: the highest severity's code when it reaches ``fail_on``, else 0."""
    if fail_on is None:
        return EXIT_SUCCESS
    highest = result.highest_severity()
    if highest is None or highest.rank < fail_on.rank:
        return EXIT_SUCCESS
    return _SEVERITY_EXIT_CODES[highest]


@dataclass
class EnrichmentOptions:
    """Which checks run in a scan cycle, and how."""

    check_vulnerabilities: bool = True
    check_outdated: bool = True
    assess_risk: bool = True
    parallel: bool = True
    concurrency: int = 8

    @classmethod
    def from_settings(cls, config: ExtenscanSettings) -> EnrichmentOptions:
        return cls(
            check_vulnerabilities=not config.skip_vuln_check,
            check_outdated=config.check_outdated,
            parallel=config.parallel,
            concurrency=config.concurrency,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Enricher:
    """Runs one enrichment cycle over a package inventory.

    Lookups are independent: one per OSV ecosystem group and one per
    package with a version registry. A failed lookup becomes a
    ``Diagnostic`` and never affects the others.
    """

    def __init__(
        self,
        version_resolver: VersionResolver | None,
        vulnerability_resolver: VulnerabilityResolver | None,
        ignore_policy: IgnorePolicy | None = None,
        options: EnrichmentOptions | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.version_resolver = version_resolver
        self.vulnerability_resolver = vulnerability_resolver
        self.ignore_policy = ignore_policy or IgnorePolicy()
        self.options = options or EnrichmentOptions()
        self._clock = clock

    def checks_enabled(self) -> list[CheckKind]:
        checks = []
        if self.options.check_vulnerabilities and self.vulnerability_resolver is not None:
            checks.append(CheckKind.VULNERABILITIES)
        if self.options.check_outdated and self.version_resolver is not None:
            checks.append(CheckKind.OUTDATED)
        if self.options.assess_risk:
            checks.append(CheckKind.RISK)
        return checks

    async def enrich(self, packages: list[Package]) -> ScanResult:
        """Enrich ``packages`` and return the filtered, scored result."""
        checks = self.checks_enabled()
        lookups: list[Awaitable[tuple[list[Any], Diagnostic | None]]] = []

        if CheckKind.VULNERABILITIES in checks:
            groups = self.vulnerability_resolver.plan(packages)
            lookups += [self._vulnerability_lookup(eco, groups[eco]) for eco in sorted(groups)]

        if CheckKind.OUTDATED in checks:
            eligible = [p for p in packages if self.version_resolver.supports(p)]
            lookups += [self._outdated_lookup(p) for p in _unique_by_identity(eligible)]

        logger.debug("Dispatching %d lookup(s) for %d package(s)", len(lookups), len(packages))
        outcomes = await self._run(lookups)

        vulnerabilities: list[Vulnerability] = []
        outdated: list[OutdatedInfo] = []
        diagnostics: list[Diagnostic] = []
        for found, diagnostic in outcomes:
            for item in found:
                if isinstance(item, Vulnerability):
                    vulnerabilities.append(item)
                else:
                    outdated.append(item)
            if diagnostic is not None:
                diagnostics.append(diagnostic)

        risk_assessments: list[RiskAssessment] = []
        if CheckKind.RISK in checks:
            risk_assessments = [
                assess_extension(p) for p in packages
                if p.source.is_browser_extension and not self.ignore_policy.applies_to_risk(p)
            ]

        vulnerabilities, outdated = self._apply_ignore_policy(packages, vulnerabilities, outdated)

        vulnerabilities.sort(key=lambda v: (v.package_id, v.package_identity, -v.severity.rank, v.id))
        outdated.sort(key=lambda o: (o.package_id, o.package_identity, o.current_version, o.latest_version))
        risk_assessments.sort(key=lambda r: (r.package_id, -r.score))
        diagnostics.sort(key=lambda d: (d.check.value, d.subject))

        result = ScanResult(
            packages=list(packages),
            vulnerabilities=vulnerabilities,
            outdated=outdated,
            risk_assessments=risk_assessments,
            health_score=compute_health_score(packages, vulnerabilities, outdated),
            diagnostics=diagnostics,
            checks_run=checks,
            scan_time=self._clock(),
        )
        logger.info(
            "Enriched %d package(s): %d vulnerability(ies), %d outdated, health %d/100",
            len(packages), len(vulnerabilities), len(outdated), result.health_score,
        )
        return result

    async def _run(self, lookups: list[Awaitable]) -> list:
        if not self.options.parallel:
            return [await lookup for lookup in lookups]

        sem = asyncio.Semaphore(self.options.concurrency)

        async def _bounded(lookup: Awaitable):
            async with sem:
                return await lookup

        return await asyncio.gather(*[_bounded(lookup) for lookup in lookups])

    async def _vulnerability_lookup(
        self, ecosystem: str, packages: list[Package],
    ) -> tuple[list[Vulnerability], Diagnostic | None]:
        try:
            found = await self.vulnerability_resolver.resolve_ecosystem(
                ecosystem, packages, self.options.parallel,
            )
            return found, None
        except TransientLookupFailure as e:
            logger.warning("Vulnerability lookup failed for %s: %s", ecosystem, e.message)
            return [], Diagnostic(
                check=CheckKind.VULNERABILITIES,
                subject=ecosystem,
                kind=type(e).__name__,
                message=e.message,
            )

    async def _outdated_lookup(self, package: Package) -> tuple[list[OutdatedInfo], Diagnostic | None]:
        try:
            info = await self.version_resolver.check_package(package)
            return ([info] if info is not None else []), None
        except TransientLookupFailure as e:
            logger.warning("Version lookup failed for %s: %s", package.identity, e.message)
            return [], Diagnostic(
                check=CheckKind.OUTDATED,
                subject=package.identity,
                kind=type(e).__name__,
                message=e.message,
            )

    def _apply_ignore_policy(
        self,
        packages: list[Package],
        vulnerabilities: list[Vulnerability],
        outdated: list[OutdatedInfo],
    ) -> tuple[list[Vulnerability], list[OutdatedInfo]]:
        by_identity: dict[str, list[Package]] = {}
        for pkg in packages:
            by_identity.setdefault(pkg.identity, []).append(pkg)
            by_identity.setdefault(pkg.package_id, []).append(pkg)

        policy = self.ignore_policy
        kept_vulns = [
            v for v in vulnerabilities
            if not policy.ignores_vulnerability_id(v)
            and not any(policy.applies_to_vulnerability(v, p) for p in by_identity.get(v.package_identity, []))
        ]
        kept_outdated = [
            o for o in outdated
            if not any(policy.applies_to_outdated(o, p) for p in by_identity.get(o.package_identity, []))
        ]

        suppressed = len(vulnerabilities) - len(kept_vulns) + len(outdated) - len(kept_outdated)
        if suppressed:
            logger.debug("Ignore policy suppressed %d finding(s)", suppressed)
        return kept_vulns, kept_outdated


def create_enricher(
    client: httpx.AsyncClient,
    cache: ResolverCache,
    ignore_policy: IgnorePolicy | None = None,
    options: EnrichmentOptions | None = None,
    config: ExtenscanSettings | None = None,
) -> Enricher:
    """Wire the default registries and OSV client around a shared HTTP client and cache."""
    config = config or settings
    options = options or EnrichmentOptions.from_settings(config)
    sources = default_version_sources(client, config.npm_registry_url, config.homebrew_api_url)
    return Enricher(
        version_resolver=VersionResolver(sources, cache, config.cache_ttl_seconds),
        vulnerability_resolver=VulnerabilityResolver(
            OsvClient(client, config.osv_api_url),
            cache,
            config.cache_ttl_seconds,
            concurrency=options.concurrency,
        ),
        ignore_policy=ignore_policy if ignore_policy is not None else config.ignore_policy(),
        options=options,
    )


def _unique_by_identity(packages: list[Package]) -> list[Package]:
    seen: dict[tuple[str, str], Package] = {}
    for pkg in packages:
        seen.setdefault((pkg.identity, pkg.version), pkg)
    return list(seen.values())
