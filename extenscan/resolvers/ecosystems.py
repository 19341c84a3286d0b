"""Capability interfaces and source-to-ecosystem lookup tables."""

from __future__ import annotations

from typing import Protocol

from extenscan.models import Source


class LatestVersionSource(Protocol):
    """Anything that can report the latest published version of a package."""

    ecosystem: str

    async def latest_version(self, name: str) -> str: ...


class VulnerabilitySource(Protocol):
    """Anything that can answer batched vulnerability queries."""

    async def query_batch(self, queries: list[dict]) -> list[list[dict]]: ...

    async def get_advisory(self, vuln_id: str) -> dict: ...


# Registries used for latest-version lookups
VERSION_ECOSYSTEMS: dict[Source, str] = {
    Source.NPM: "npm",
    Source.HOMEBREW: "homebrew",
}

# OSV.dev ecosystem names (https://ossf.github.io/osv-schema/#affectedpackage-field).
# Browser and editor extensions have no OSV ecosystem.
OSV_ECOSYSTEMS: dict[Source, str] = {
    Source.NPM: "npm",
    Source.HOMEBREW: "Homebrew",
}


def version_ecosystem(source: Source) -> str | None:
    return VERSION_ECOSYSTEMS.get(source)


def osv_ecosystem(source: Source) -> str | None:
    return OSV_ECOSYSTEMS.get(source)
