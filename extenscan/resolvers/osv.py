"""Vulnerability resolution using the OSV.dev batch API (free, no auth required)."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

import httpx
from cvss import CVSS2, CVSS3, CVSS4
from cvss.exceptions import CVSSError
from pydantic import ValidationError

from extenscan.cache import ResolverCache, cache_key
from extenscan.config import settings
from extenscan.errors import TransientLookupFailure, UnknownSeverity
from extenscan.models import CheckKind, Diagnostic, Package, Severity, Vulnerability
from extenscan.resolvers.ecosystems import VulnerabilitySource, osv_ecosystem

logger = logging.getLogger(__name__)

# OSV.dev accepts at most 1000 queries per querybatch request
BATCH_SIZE = 1000

_KEYWORD_SEVERITIES: dict[str, Severity] = {
    "CRITICAL": Severity.CRITICAL,
    "HIGH": Severity.HIGH,
    "MODERATE": Severity.MEDIUM,
    "MEDIUM": Severity.MEDIUM,
    "LOW": Severity.LOW,
}

# Preferred identifier schemes when several advisories describe one vulnerability
_CANONICAL_PREFIXES = ("CVE-", "GHSA-")

_UNQUERYABLE_VERSIONS = {"", "*", "unknown"}


def _objects(value: object) -> list[dict]:
    """The dict entries of a JSON list field; anything else is empty."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _mapping(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _text(value: object) -> str:
    return value if isinstance(value, str) else ""


class OsvClient:
    """Thin async wrapper over the OSV.dev REST API."""

    def __init__(self, client: httpx.AsyncClient, api_url: str = ""):
        self.client = client
        self.api_url = (api_url or settings.osv_api_url).rstrip("/")

    async def query_batch(self, queries: list[dict]) -> list[list[dict]]:
        """Run one querybatch request. Returns the advisory stubs per query, in order."""
        try:
            resp = await self.client.post(f"{self.api_url}/querybatch", json={"queries": queries})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise TransientLookupFailure("OSV.dev", f"querybatch failed: {e}") from e
        except ValueError as e:
            raise TransientLookupFailure("OSV.dev", f"querybatch returned invalid JSON: {e}") from e

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list) or len(results) != len(queries):
            raise TransientLookupFailure(
                "OSV.dev", f"querybatch returned a malformed result list for {len(queries)} queries",
            )
        return [_objects(_mapping(result).get("vulns")) for result in results]

    async def get_advisory(self, vuln_id: str) -> dict:
        """Fetch full vulnerability details."""
        try:
            resp = await self.client.get(f"{self.api_url}/vulns/{vuln_id}")
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise TransientLookupFailure(vuln_id, f"advisory fetch failed: {e}") from e
        except ValueError as e:
            raise TransientLookupFailure(vuln_id, f"advisory is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise TransientLookupFailure(vuln_id, "advisory is not a JSON object")
        return data


# --- Severity ---

def severity_from_score(score: float) -> Severity | None:
    """Map a CVSS base score to a severity band. Zero or negative maps to None."""
    if score >= 9.0:
        return Severity.CRITICAL
    if score >= 7.0:
        return Severity.HIGH
    if score >= 4.0:
        return Severity.MEDIUM
    if score > 0.0:
        return Severity.LOW
    return None


def _cvss_base_score(score: str, score_type: str = "") -> float | None:
    """Base score from a numeric string or a CVSS v2/v3/v4 vector."""
    score = score.strip()
    try:
        return float(score)
    except ValueError:
        pass

    try:
        if score.startswith("CVSS:4"):
            return float(CVSS4(score).base_score)
        if score.startswith("CVSS:3"):
            return float(CVSS3(score).base_score)
        if score_type == "CVSS_V2":
            return float(CVSS2(score).base_score)
    except (CVSSError, ValueError, KeyError) as e:
        logger.debug("Unparseable CVSS vector %r: %s", score, e)
    return None


def _severity_from_cvss(advisory: dict) -> Severity | None:
    entries = _objects(advisory.get("severity"))
    for affected in _objects(advisory.get("affected")):
        entries.extend(_objects(affected.get("severity")))

    for entry in entries:
        if not isinstance(entry.get("score"), str):
            continue
        base = _cvss_base_score(entry["score"], _text(entry.get("type")))
        if base is None:
            continue
        severity = severity_from_score(base)
        if severity is not None:
            return severity
    return None


def _severity_from_keywords(advisory: dict) -> Severity:
    candidates = [_mapping(advisory.get("database_specific")).get("severity")]
    for affected in _objects(advisory.get("affected")):
        candidates.append(_mapping(affected.get("ecosystem_specific")).get("severity"))
        candidates.append(_mapping(affected.get("database_specific")).get("severity"))

    for candidate in candidates:
        if isinstance(candidate, str) and candidate.upper() in _KEYWORD_SEVERITIES:
            return _KEYWORD_SEVERITIES[candidate.upper()]
    raise UnknownSeverity(f"No recognizable severity on {advisory.get('id', '?')}")


def classify_severity(advisory: dict) -> Severity:
    """Severity of an OSV advisory.

    CVSS data wins; then database or ecosystem severity keywords; anything
    else is Medium.
    """
    severity = _severity_from_cvss(advisory)
    if severity is not None:
        return severity
    try:
        return _severity_from_keywords(advisory)
    except UnknownSeverity as e:
        logger.debug("%s, defaulting to medium", e)
        return Severity.MEDIUM


# --- Normalization ---

def canonical_id(ids: set[str]) -> str:
    """Pick one id for a set of aliases: CVE first, then GHSA, then lowest."""
    for prefix in _CANONICAL_PREFIXES:
        matches = sorted(i for i in ids if i.startswith(prefix))
        if matches:
            return matches[0]
    return sorted(ids)[0]


def _matching_affected(advisory: dict, package: Package) -> list[dict]:
    affected = _objects(advisory.get("affected"))
    name = package.package_id.lower()
    matching = [
        a for a in affected
        if _text(_mapping(a.get("package")).get("name")).lower() == name
    ]
    return matching or affected


def _affected_range(affected: list[dict]) -> tuple[str, str]:
    """Human-readable affected range and first fixed version."""
    for entry in affected:
        for rng in _objects(entry.get("ranges")):
            parts: list[str] = []
            fixed = ""
            for event in _objects(rng.get("events")):
                introduced = _text(event.get("introduced"))
                fixed_at = _text(event.get("fixed"))
                last_affected = _text(event.get("last_affected"))
                if introduced and introduced != "0":
                    parts.append(f">={introduced}")
                if fixed_at:
                    fixed = fixed or fixed_at
                    parts.append(f"<{fixed_at}")
                if last_affected:
                    parts.append(f"<={last_affected}")
            if parts or fixed:
                return ", ".join(parts), fixed
    return "", ""


def _reference_url(advisory: dict) -> str:
    references = [r for r in _objects(advisory.get("references")) if _text(r.get("url"))]
    for ref in references:
        if ref.get("type") == "ADVISORY":
            return ref["url"]
    return references[0]["url"] if references else ""


def normalize_advisory(advisory: dict, package: Package) -> Vulnerability:
    """Convert one OSV advisory (full record or batch stub) to a Vulnerability.

    Fields with unexpected JSON types are treated as absent.
    """
    advisory_id = _text(advisory.get("id"))
    aliases = advisory.get("aliases")
    ids = {advisory_id, *(a for a in aliases if isinstance(a, str))} if isinstance(aliases, list) else {advisory_id}
    ids.discard("")
    if not ids:
        raise ValueError("advisory has no id")

    details = _text(advisory.get("details"))
    title = _text(advisory.get("summary")) or details.strip().split("\n")[0][:200] or "Unknown vulnerability"
    affected_range, fixed_version = _affected_range(_matching_affected(advisory, package))

    return Vulnerability(
        id=canonical_id(ids),
        package_id=package.package_id,
        source=package.source,
        severity=classify_severity(advisory),
        title=title,
        summary=details,
        affected_range=affected_range,
        fixed_version=fixed_version,
        reference_url=_reference_url(advisory),
        source_advisory_ids=sorted(ids),
    )


def _combine(ids: set[str], members: list[Vulnerability]) -> Vulnerability:
    vuln_id = canonical_id(ids)
    # Fields come from the canonical advisory first, then the rest by id
    ordered = sorted(members, key=lambda v: (v.id != vuln_id, sorted(v.source_advisory_ids), v.title))

    def first(field: str) -> str:
        for member in ordered:
            value = getattr(member, field)
            if value and value != "Unknown vulnerability":
                return value
        return ""

    return Vulnerability(
        id=vuln_id,
        package_id=members[0].package_id,
        source=members[0].source,
        severity=max((m.severity for m in members), key=lambda s: s.rank),
        title=first("title") or "Unknown vulnerability",
        summary=first("summary"),
        affected_range=first("affected_range"),
        fixed_version=first("fixed_version"),
        reference_url=first("reference_url"),
        source_advisory_ids=sorted(ids),
    )


def merge_vulnerabilities(vulns: list[Vulnerability]) -> list[Vulnerability]:
    """Merge records that share any advisory id within the same package.

    Idempotent: merging an already merged list, or the same advisories twice,
    gives the same records.
    """
    by_package: dict[str, list[Vulnerability]] = defaultdict(list)
    for vuln in vulns:
        by_package[vuln.package_identity].append(vuln)

    merged: list[Vulnerability] = []
    for items in by_package.values():
        groups: list[tuple[set[str], list[Vulnerability]]] = []
        for vuln in items:
            ids = {vuln.id, *vuln.source_advisory_ids}
            members = [vuln]
            for group in [g for g in groups if g[0] & ids]:
                groups.remove(group)
                ids |= group[0]
                members = group[1] + members
            groups.append((ids, members))
        merged.extend(_combine(ids, members) for ids, members in groups)

    return sorted(merged, key=lambda v: (v.package_id, v.package_identity, v.id))


# --- Resolver ---

class VulnerabilityResolver:
    """Cache-first, ecosystem-batched vulnerability lookups.

    Args:
        source: OSV-compatible client.
        cache: Shared resolver cache.
        ttl_seconds: TTL for stored results. Defaults to the cache's TTL.
        concurrency: Parallel advisory detail fetches.
    """

    kind = "osv"

    def __init__(
        self,
        source: VulnerabilitySource,
        cache: ResolverCache,
        ttl_seconds: float | None = None,
        concurrency: int = 8,
    ):
        self.source = source
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.concurrency = concurrency

    def plan(self, packages: list[Package]) -> dict[str, list[Package]]:
        """Group queryable packages by OSV ecosystem. Unmapped sources are skipped."""
        groups: dict[str, list[Package]] = {}
        for pkg in packages:
            ecosystem = osv_ecosystem(pkg.source)
            if ecosystem is None or pkg.version.strip().lower() in _UNQUERYABLE_VERSIONS:
                continue
            groups.setdefault(ecosystem, []).append(pkg)
        return groups

    def _key(self, ecosystem: str, pkg: Package) -> str:
        return cache_key(self.kind, ecosystem, f"{pkg.package_id}@{pkg.version}")

    def _cached(self, ecosystem: str, pkg: Package) -> list[Vulnerability] | None:
        payload = self.cache.get(self._key(ecosystem, pkg))
        if not isinstance(payload, list):
            return None
        try:
            return [Vulnerability.model_validate(item) for item in payload]
        except ValidationError as e:
            logger.warning("Ignoring unreadable cached vulnerabilities for %s: %s", pkg.package_id, e)
            return None

    async def resolve_ecosystem(
        self,
        ecosystem: str,
        packages: list[Package],
        parallel: bool = True,
    ) -> list[Vulnerability]:
        """Resolve vulnerabilities for packages of one ecosystem.

        Cached packages are served from the cache; the rest go out in one
        batched query.

        Raises:
            TransientLookupFailure: the batch query failed.
        """
        results: list[Vulnerability] = []
        uncached: list[Package] = []
        for pkg in packages:
            cached = self._cached(ecosystem, pkg)
            if cached is None:
                uncached.append(pkg)
            else:
                results.extend(cached)

        if uncached:
            logger.debug("Querying OSV for %d %s package(s)", len(uncached), ecosystem)
            for pkg, vulns, complete in await self._fetch(ecosystem, uncached, parallel):
                if complete:
                    self.cache.put(
                        self._key(ecosystem, pkg),
                        [v.model_dump(mode="json") for v in vulns],
                        self.ttl_seconds,
                    )
                results.extend(vulns)

        return merge_vulnerabilities(results)

    async def _fetch(
        self,
        ecosystem: str,
        packages: list[Package],
        parallel: bool,
    ) -> list[tuple[Package, list[Vulnerability], bool]]:
        stubs_per_package: list[tuple[Package, list[dict]]] = []
        for start in range(0, len(packages), BATCH_SIZE):
            chunk = packages[start:start + BATCH_SIZE]
            queries = [
                {
                    "package": {"name": pkg.package_id, "ecosystem": ecosystem},
                    "version": pkg.version,
                }
                for pkg in chunk
            ]
            batch = await self.source.query_batch(queries)
            stubs_per_package.extend(zip(chunk, batch))

        stubs_per_package = [
            (pkg, [s for s in _objects(stubs) if _text(s.get("id"))]) for pkg, stubs in stubs_per_package
        ]
        vuln_ids = sorted({stub["id"] for _, stubs in stubs_per_package for stub in stubs})
        details, failed = await self._fetch_details(vuln_ids, parallel)

        fetched = []
        for pkg, stubs in stubs_per_package:
            vulns = []
            for stub in stubs:
                vuln = self._normalize(details.get(stub["id"]), stub, pkg)
                if vuln is None:
                    failed.add(stub["id"])
                    vuln = normalize_advisory(stub, pkg)
                vulns.append(vuln)
            # Results built from stubs are not cached, so the next cycle retries the details
            complete = not any(stub["id"] in failed for stub in stubs)
            fetched.append((pkg, merge_vulnerabilities(vulns), complete))
        return fetched

    @staticmethod
    def _normalize(detail: dict | None, stub: dict, package: Package) -> Vulnerability | None:
        """Normalize the full record, or None when it is missing or unusable."""
        if detail is None:
            return None
        try:
            return normalize_advisory(detail, package)
        except (ValueError, TypeError) as e:
            logger.warning("Using summary record for %s: malformed advisory (%s)", stub["id"], e)
            return None

    async def _fetch_details(
        self,
        vuln_ids: list[str],
        parallel: bool,
    ) -> tuple[dict[str, dict], set[str]]:
        sem = asyncio.Semaphore(self.concurrency if parallel else 1)
        failed: set[str] = set()

        async def _one(vuln_id: str) -> tuple[str, dict | None]:
            async with sem:
                try:
                    return vuln_id, await self.source.get_advisory(vuln_id)
                except TransientLookupFailure as e:
                    logger.warning("Using summary record for %s: %s", vuln_id, e.message)
                    failed.add(vuln_id)
                    return vuln_id, None

        if parallel:
            pairs = await asyncio.gather(*[_one(v) for v in vuln_ids])
        else:
            pairs = [await _one(v) for v in vuln_ids]
        return {vuln_id: detail for vuln_id, detail in pairs if detail is not None}, failed

    async def resolve(
        self,
        packages: list[Package],
        parallel: bool = True,
    ) -> tuple[list[Vulnerability], list[Diagnostic]]:
        """Resolve all ecosystems, isolating failures per ecosystem."""
        groups = self.plan(packages)

        async def _one(ecosystem: str) -> tuple[list[Vulnerability], Diagnostic | None]:
            try:
                return await self.resolve_ecosystem(ecosystem, groups[ecosystem], parallel), None
            except TransientLookupFailure as e:
                logger.warning("Vulnerability lookup failed for %s: %s", ecosystem, e)
                return [], Diagnostic(
                    check=CheckKind.VULNERABILITIES,
                    subject=ecosystem,
                    kind=type(e).__name__,
                    message=e.message,
                )

        ecosystems = sorted(groups)
        if parallel:
            outcomes = await asyncio.gather(*[_one(eco) for eco in ecosystems])
        else:
            outcomes = [await _one(eco) for eco in ecosystems]

        vulns = [v for found, _ in outcomes for v in found]
        diagnostics = [d for _, d in outcomes if d is not None]
        return vulns, diagnostics
