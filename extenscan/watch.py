"""Watch mode: diff consecutive scan results into change-sets."""

from __future__ import annotations

import logging

from extenscan.enrichment import Enricher
from extenscan.models import ChangeSet, Package, ScanResult, VersionChange

logger = logging.getLogger(__name__)


def diff_results(previous: ScanResult, current: ScanResult) -> ChangeSet:
    """Compute what changed between two scan results.

    Packages are matched by identity (source + package id), so a version bump
    is a version change rather than a removal plus an addition.
    Vulnerabilities are matched by package identity and canonical id;
    outdated findings by package identity.
    """
    prev_packages = {p.identity: p for p in previous.packages}
    curr_packages = {p.identity: p for p in current.packages}

    added = [curr_packages[k] for k in sorted(curr_packages.keys() - prev_packages.keys())]
    removed = [prev_packages[k] for k in sorted(prev_packages.keys() - curr_packages.keys())]
    version_changes = [
        VersionChange(
            identity=k,
            previous_version=prev_packages[k].version,
            current_version=curr_packages[k].version,
        )
        for k in sorted(prev_packages.keys() & curr_packages.keys())
        if prev_packages[k].version != curr_packages[k].version
    ]

    prev_vulns = {(v.package_identity, v.id): v for v in previous.vulnerabilities}
    curr_vulns = {(v.package_identity, v.id): v for v in current.vulnerabilities}

    prev_outdated = {o.package_identity: o for o in previous.outdated}
    curr_outdated = {o.package_identity: o for o in current.outdated}

    return ChangeSet(
        previous_scan_time=previous.scan_time,
        scan_time=current.scan_time,
        added_packages=added,
        removed_packages=removed,
        version_changes=version_changes,
        new_vulnerabilities=[curr_vulns[k] for k in sorted(curr_vulns.keys() - prev_vulns.keys())],
        resolved_vulnerabilities=[prev_vulns[k] for k in sorted(prev_vulns.keys() - curr_vulns.keys())],
        newly_outdated=[curr_outdated[k] for k in sorted(curr_outdated.keys() - prev_outdated.keys())],
        no_longer_outdated=[prev_outdated[k] for k in sorted(prev_outdated.keys() - curr_outdated.keys())],
        health_score=current.health_score,
        previous_health_score=previous.health_score,
    )


class WatchSession:
    """Keeps the last scan result and reports differences on later cycles."""

    def __init__(self, enricher: Enricher):
        self.enricher = enricher
        self.previous: ScanResult | None = None

    async def cycle(self, packages: list[Package]) -> ScanResult | ChangeSet:
        """Full result on the first cycle, a change-set afterwards."""
        result = await self.enricher.enrich(packages)
        previous, self.previous = self.previous, result
        if previous is None:
            return result

        changes = diff_results(previous, result)
        logger.info(
            "Watch cycle: +%d/-%d packages, %d new and %d resolved vulnerabilities",
            len(changes.added_packages), len(changes.removed_packages),
            len(changes.new_vulnerabilities), len(changes.resolved_vulnerabilities),
        )
        return changes
