"""Pydantic models for packages, findings, and scan results."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# --- Enums ---

class Source(str, Enum):
    VSCODE = "vscode"
    CHROME = "chrome"
    EDGE = "edge"
    FIREFOX = "firefox"
    BRAVE = "brave"
    ARC = "arc"
    OPERA = "opera"
    VIVALDI = "vivaldi"
    CHROMIUM = "chromium"
    NPM = "npm"
    HOMEBREW = "homebrew"

    @property
    def display_name(self) -> str:
        return _SOURCE_DISPLAY_NAMES[self]

    @property
    def is_browser_extension(self) -> bool:
        return self in _BROWSER_SOURCES


_SOURCE_DISPLAY_NAMES: dict[Source, str] = {
    Source.VSCODE: "VSCode",
    Source.CHROME: "Chrome",
    Source.EDGE: "Edge",
    Source.FIREFOX: "Firefox",
    Source.BRAVE: "Brave",
    Source.ARC: "Arc",
    Source.OPERA: "Opera",
    Source.VIVALDI: "Vivaldi",
    Source.CHROMIUM: "Chromium",
    Source.NPM: "NPM",
    Source.HOMEBREW: "Homebrew",
}

_BROWSER_SOURCES = frozenset({
    Source.CHROME,
    Source.EDGE,
    Source.FIREFOX,
    Source.BRAVE,
    Source.ARC,
    Source.OPERA,
    Source.VIVALDI,
    Source.CHROMIUM,
})


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANKS[self]


_SEVERITY_RANKS: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class UpdateClass(str, Enum):
    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANKS[self]


_RISK_RANKS: dict[RiskLevel, int] = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


class HostScope(str, Enum):
    NONE = "none"
    SPECIFIC = "specific"
    BROAD = "broad"
    ALL_URLS = "all_urls"

    @property
    def rank(self) -> int:
        return _HOST_SCOPE_RANKS[self]


_HOST_SCOPE_RANKS: dict[HostScope, int] = {
    HostScope.NONE: 0,
    HostScope.SPECIFIC: 1,
    HostScope.BROAD: 2,
    HostScope.ALL_URLS: 3,
}


class CspWeakness(str, Enum):
    MISSING_CSP = "missing_csp"
    UNSAFE_EVAL = "unsafe_eval"
    UNSAFE_INLINE = "unsafe_inline"
    REMOTE_SCRIPT_SOURCE = "remote_script_source"


class CheckKind(str, Enum):
    VULNERABILITIES = "vulnerabilities"
    OUTDATED = "outdated"
    RISK = "risk"


# --- Packages ---

class ExtensionManifest(BaseModel):
    """Declared manifest metadata of a browser extension."""

    model_config = ConfigDict(frozen=True)

    permissions: list[str] = []
    optional_permissions: list[str] = []
    host_permissions: list[str] = []
    content_security_policy: str | None = None

    @classmethod
    def from_raw(cls, data: Any) -> ExtensionManifest:
        """Build a manifest from a raw ``manifest.json`` mapping.

        Never raises. Manifest V2 host patterns listed under ``permissions``
        are moved to ``host_permissions``; a Manifest V3 CSP object uses its
        ``extension_pages`` policy; entries that are not strings are dropped.
        """
        if not isinstance(data, dict):
            return cls()

        permissions: list[str] = []
        host_permissions = _string_list(data.get("host_permissions"))
        for entry in _string_list(data.get("permissions")):
            if _looks_like_host_pattern(entry):
                host_permissions.append(entry)
            else:
                permissions.append(entry)

        optional_permissions = [
            p for p in _string_list(data.get("optional_permissions"))
            if not _looks_like_host_pattern(p)
        ]

        csp = data.get("content_security_policy")
        if isinstance(csp, dict):
            csp = csp.get("extension_pages")
        if not isinstance(csp, str):
            csp = None

        return cls(
            permissions=permissions,
            optional_permissions=optional_permissions,
            host_permissions=host_permissions,
            content_security_policy=csp,
        )


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [v for v in value if isinstance(v, str)]


def _looks_like_host_pattern(entry: str) -> bool:
    return entry == "<all_urls>" or "://" in entry


class Package(BaseModel):
    """A discovered package or extension. Immutable once produced by a scanner."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    source: Source
    ecosystem_id: str | None = None
    description: str | None = None
    publisher: str | None = None
    homepage: str | None = None
    manifest: ExtensionManifest | None = None

    @property
    def package_id(self) -> str:
        return self.ecosystem_id or self.name

    @property
    def identity(self) -> str:
        return f"{self.source.value}:{self.package_id}"


# --- Cache ---

class CacheEntry(BaseModel):
    key: str
    payload: Any
    fetched_at: float
    ttl_seconds: float

    def is_valid(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl_seconds


# --- Findings ---

def _finding_identity(source: Source | None, package_id: str) -> str:
    return f"{source.value}:{package_id}" if source is not None else package_id


class Vulnerability(BaseModel):
    id: str
    package_id: str
    severity: Severity
    title: str
    source: Source | None = None
    summary: str = ""
    affected_range: str = ""
    fixed_version: str = ""
    reference_url: str = ""
    source_advisory_ids: list[str] = []

    @property
    def package_identity(self) -> str:
        """Identity of the affected package, matching ``Package.identity`` when the source is known."""
        return _finding_identity(self.source, self.package_id)


class OutdatedInfo(BaseModel):
    package_id: str
    current_version: str
    latest_version: str
    update_class: UpdateClass
    source: Source | None = None

    @property
    def package_identity(self) -> str:
        return _finding_identity(self.source, self.package_id)


class PermissionFinding(BaseModel):
    permission: str
    risk_level: RiskLevel
    description: str = ""
    optional: bool = False


class CspFinding(BaseModel):
    weakness: CspWeakness
    detail: str = ""


class RiskAssessment(BaseModel):
    package_id: str
    permission_findings: list[PermissionFinding] = []
    csp_findings: list[CspFinding] = []
    host_scope: HostScope = HostScope.NONE
    external_domains: list[str] = []
    score: int = Field(default=0, ge=0)
    risk_level: RiskLevel = RiskLevel.LOW


class Diagnostic(BaseModel):
    """A non-fatal lookup failure attached to a scan result."""
    check: CheckKind
    subject: str
    kind: str
    message: str


# --- Results ---

class ScanResult(BaseModel):
    packages: list[Package] = []
    vulnerabilities: list[Vulnerability] = []
    outdated: list[OutdatedInfo] = []
    risk_assessments: list[RiskAssessment] = []
    health_score: int = Field(default=100, ge=0, le=100)
    diagnostics: list[Diagnostic] = []
    checks_run: list[CheckKind] = []
    scan_time: datetime | None = None

    def highest_severity(self) -> Severity | None:
        """Highest severity among reported vulnerabilities, for CI gating."""
        if not self.vulnerabilities:
            return None
        return max((v.severity for v in self.vulnerabilities), key=lambda s: s.rank)

    def severity_counts(self) -> dict[Severity, int]:
        counts = Counter(v.severity for v in self.vulnerabilities)
        return {sev: counts.get(sev, 0) for sev in Severity}

    def failed_checks(self) -> set[CheckKind]:
        return {d.check for d in self.diagnostics}


class VersionChange(BaseModel):
    identity: str
    previous_version: str
    current_version: str


class ChangeSet(BaseModel):
    """Differences between two consecutive watch-mode scan results."""
    previous_scan_time: datetime | None = None
    scan_time: datetime | None = None
    added_packages: list[Package] = []
    removed_packages: list[Package] = []
    version_changes: list[VersionChange] = []
    new_vulnerabilities: list[Vulnerability] = []
    resolved_vulnerabilities: list[Vulnerability] = []
    newly_outdated: list[OutdatedInfo] = []
    no_longer_outdated: list[OutdatedInfo] = []
    health_score: int = 100
    previous_health_score: int = 100

    @property
    def has_changes(self) -> bool:
        return any((
            self.added_packages,
            self.removed_packages,
            self.version_changes,
            self.new_vulnerabilities,
            self.resolved_vulnerabilities,
            self.newly_outdated,
            self.no_longer_outdated,
        ))
