"""FastMCP server exposing extenscan tools."""

import httpx
from mcp.server.fastmcp import FastMCP

from extenscan.cache import ResolverCache
from extenscan.config import settings
from extenscan.enrichment import EnrichmentOptions, create_enricher
from extenscan.ignore import load_ignore_policy
from extenscan.inventory import load_inventory, load_manifest
from extenscan.risk import assess_extension

mcp = FastMCP("extenscan")


@mcp.tool()
async def enrich_inventory_tool(
    inventory_path: str,
    check_vulnerabilities: bool = True,
    check_outdated: bool = True,
    ignore_file: str = "",
) -> str:
    """Enrich a package inventory with vulnerabilities, outdated versions and extension risk.

    Queries OSV.dev for known vulnerabilities (npm and Homebrew), the npm
    registry and Homebrew API for latest versions, and scores browser
    extension manifests for permission, host access and CSP risk. Results
    are cached locally with a TTL.

    Returns a JSON scan result with findings, a 0-100 health score, and
    diagnostics for any lookups that failed.

    Args:
        inventory_path: Path to a JSON inventory (a list of packages or {"packages": [...]}).
        check_vulnerabilities: Query OSV.dev for known vulnerabilities.
        check_outdated: Query registries for newer versions.
        ignore_file: Optional path to a YAML ignore file.
    """
    packages = load_inventory(inventory_path)
    policy = settings.ignore_policy()
    if ignore_file:
        policy = policy.merged(load_ignore_policy(ignore_file))

    options = EnrichmentOptions.from_settings(settings)
    options.check_vulnerabilities = options.check_vulnerabilities and check_vulnerabilities
    options.check_outdated = options.check_outdated and check_outdated

    cache = ResolverCache(settings.resolved_cache_path(), settings.cache_ttl_hours)
    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
            result = await create_enricher(client, cache, policy, options).enrich(packages)
    finally:
        cache.close()
    return result.model_dump_json(indent=2)


@mcp.tool()
def assess_extension_manifest_tool(manifest_path: str) -> str:
    """Score a browser extension's manifest.json for security risk.

    Checks declared permissions against a risk table, classifies host
    access scope (specific, broad, all URLs) and inspects the content
    security policy for unsafe-eval, unsafe-inline and remote script hosts.

    Args:
        manifest_path: Path to the extension's manifest.json.
    """
    assessment = assess_extension(load_manifest(manifest_path))
    return assessment.model_dump_json(indent=2)


if __name__ == "__main__":
    mcp.run()
