"""Async package registry clients for latest-version lookups."""

from __future__ import annotations

from urllib.parse import quote

import httpx

from extenscan.config import settings
from extenscan.errors import TransientLookupFailure
from extenscan.resolvers.ecosystems import LatestVersionSource


class NpmRegistry:
    """Latest versions from the npm registry (``dist-tags.latest``)."""

    ecosystem = "npm"

    def __init__(self, client: httpx.AsyncClient, base_url: str = ""):
        self.client = client
        self.base_url = (base_url or settings.npm_registry_url).rstrip("/")

    async def latest_version(self, name: str) -> str:
        # Scoped names keep their "@" but the slash must be escaped
        url = f"{self.base_url}/{quote(name, safe='@')}"
        try:
            resp = await self.client.get(
                url,
                headers={"Accept": "application/vnd.npm.install-v1+json"},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise TransientLookupFailure(name, f"npm registry request failed: {e}") from e
        except ValueError as e:
            raise TransientLookupFailure(name, f"npm registry returned invalid JSON: {e}") from e

        latest = (data.get("dist-tags") or {}).get("latest") if isinstance(data, dict) else None
        if not isinstance(latest, str) or not latest:
            raise TransientLookupFailure(name, "npm registry response has no dist-tags.latest")
        return latest


class HomebrewRegistry:
    """Latest versions from the Homebrew formulae API.

    Formulae report ``versions.stable``; names that are not formulae are
    retried as casks, which report a flat ``version``.
    """

    ecosystem = "homebrew"

    def __init__(self, client: httpx.AsyncClient, base_url: str = ""):
        self.client = client
        self.base_url = (base_url or settings.homebrew_api_url).rstrip("/")

    async def latest_version(self, name: str) -> str:
        try:
            resp = await self.client.get(f"{self.base_url}/formula/{quote(name)}.json")
            if resp.status_code == 404:
                return await self._cask_version(name)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise TransientLookupFailure(name, f"Homebrew API request failed: {e}") from e
        except ValueError as e:
            raise TransientLookupFailure(name, f"Homebrew API returned invalid JSON: {e}") from e

        stable = (data.get("versions") or {}).get("stable") if isinstance(data, dict) else None
        if not isinstance(stable, str) or not stable:
            raise TransientLookupFailure(name, "Homebrew formula has no stable version")
        return stable

    async def _cask_version(self, name: str) -> str:
        resp = await self.client.get(f"{self.base_url}/cask/{quote(name)}.json")
        if resp.status_code == 404:
            raise TransientLookupFailure(name, "not found in Homebrew formulae or casks")
        resp.raise_for_status()
        data = resp.json()
        version = data.get("version") if isinstance(data, dict) else None
        if not isinstance(version, str) or not version:
            raise TransientLookupFailure(name, "Homebrew cask has no version")
        return version


def default_version_sources(
    client: httpx.AsyncClient,
    npm_registry_url: str = "",
    homebrew_api_url: str = "",
) -> dict[str, LatestVersionSource]:
    """Lookup table from ecosystem tag to its registry client."""
    sources: list[LatestVersionSource] = [
        NpmRegistry(client, npm_registry_url),
        HomebrewRegistry(client, homebrew_api_url),
    ]
    return {source.ecosystem: source for source in sources}
