"""Latest-version resolution and semantic-version update classification."""

from __future__ import annotations

import logging
import re

from extenscan.cache import ResolverCache, cache_key
from extenscan.errors import TransientLookupFailure, UnparseableVersion
from extenscan.models import OutdatedInfo, Package, Source, UpdateClass
from extenscan.resolvers.ecosystems import LatestVersionSource, version_ecosystem

logger = logging.getLogger(__name__)

# major.minor.patch with optional leading "v"; pre-release and build metadata
# are accepted but ignored for ordering
_SEMVER_RE = re.compile(
    r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$"
)

_UNKNOWN_VERSIONS = {"", "unknown"}


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse a semantic version into its (major, minor, patch) core."""
    match = _SEMVER_RE.match(version.strip())
    if match is None:
        raise UnparseableVersion(f"Not a semantic version: {version!r}")
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


def classify_update(current: str, latest: str) -> UpdateClass | None:
    """Classify the update from ``current`` to ``latest``, or None if not newer.

    The first differing component (major, then minor, then patch) decides the
    class. Strings that are not semantic versions are compared for plain
    inequality and any difference counts as Major.
    """
    try:
        cur = parse_version(current)
        new = parse_version(latest)
    except UnparseableVersion:
        if current.strip().lower() in _UNKNOWN_VERSIONS:
            return None
        return UpdateClass.MAJOR if current.strip() != latest.strip() else None

    if new <= cur:
        return None
    if new[0] != cur[0]:
        return UpdateClass.MAJOR
    if new[1] != cur[1]:
        return UpdateClass.MINOR
    return UpdateClass.PATCH


def compare_versions(
    current: str,
    latest: str,
    package_id: str = "",
    source: Source | None = None,
) -> OutdatedInfo | None:
    """Build an outdated finding when ``latest`` is newer than ``current``."""
    update_class = classify_update(current, latest)
    if update_class is None:
        return None
    return OutdatedInfo(
        package_id=package_id,
        source=source,
        current_version=current,
        latest_version=latest,
        update_class=update_class,
    )


class VersionResolver:
    """Cache-first latest-version lookups across registries.

    Args:
        sources: Lookup table from ecosystem tag to registry client.
        cache: Shared resolver cache.
        ttl_seconds: TTL for stored versions. Defaults to the cache's TTL.
    """

    kind = "version"

    def __init__(
        self,
        sources: dict[str, LatestVersionSource],
        cache: ResolverCache,
        ttl_seconds: float | None = None,
    ):
        self.sources = sources
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def supports(self, package: Package) -> bool:
        ecosystem = version_ecosystem(package.source)
        return ecosystem is not None and ecosystem in self.sources

    async def resolve(self, ecosystem: str, name: str) -> str:
        """Return the latest version of ``name`` in ``ecosystem``.

        Raises:
            TransientLookupFailure: the registry could not be queried.
        """
        key = cache_key(self.kind, ecosystem, name)
        cached = self.cache.get(key)
        if isinstance(cached, dict) and isinstance(cached.get("latest"), str):
            return cached["latest"]

        source = self.sources.get(ecosystem)
        if source is None:
            raise TransientLookupFailure(name, f"no registry configured for ecosystem '{ecosystem}'")

        latest = await source.latest_version(name)
        self.cache.put(key, {"latest": latest}, self.ttl_seconds)
        return latest

    async def check_package(self, package: Package) -> OutdatedInfo | None:
        """Resolve and compare one package. Returns None when up to date."""
        ecosystem = version_ecosystem(package.source)
        if ecosystem is None:
            return None
        latest = await self.resolve(ecosystem, package.package_id)
        info = compare_versions(package.version, latest, package.package_id, package.source)
        if info is not None:
            logger.debug(
                "%s is outdated: %s -> %s (%s)",
                package.package_id, info.current_version, info.latest_version, info.update_class.value,
            )
        return info
