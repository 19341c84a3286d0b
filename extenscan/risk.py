"""Risk scoring for browser extensions from manifest permissions, host access and CSP."""

from __future__ import annotations

from extenscan.models import (
    CspFinding,
    CspWeakness,
    HostScope,
    Package,
    PermissionFinding,
    RiskAssessment,
    RiskLevel,
)

# Permission name -> (risk level, what it grants)
_PERMISSIONS: dict[str, tuple[RiskLevel, str]] = {
    # Critical: can read or reroute everything
    "debugger": (RiskLevel.CRITICAL, "Can read and modify all data on all websites"),
    "proxy": (RiskLevel.CRITICAL, "Can intercept all network traffic"),
    "vpnProvider": (RiskLevel.CRITICAL, "Can route all network traffic"),
    "webAuthenticationProxy": (RiskLevel.CRITICAL, "Can intercept authentication flows"),
    # High: significant access to user data
    "tabs": (RiskLevel.HIGH, "Can see URLs and titles of all open tabs"),
    "webNavigation": (RiskLevel.HIGH, "Can read your browsing history"),
    "history": (RiskLevel.HIGH, "Can read and modify browsing history"),
    "bookmarks": (RiskLevel.HIGH, "Can read and modify your bookmarks"),
    "topSites": (RiskLevel.HIGH, "Can see your most visited websites"),
    "sessions": (RiskLevel.HIGH, "Can access recently closed tabs and windows"),
    "cookies": (RiskLevel.HIGH, "Can read and modify cookies for any website"),
    "webRequest": (RiskLevel.HIGH, "Can observe and analyze traffic"),
    "webRequestBlocking": (RiskLevel.HIGH, "Can block or modify network requests"),
    "declarativeNetRequest": (RiskLevel.HIGH, "Can redirect or modify requests"),
    "declarativeNetRequestWithHostAccess": (RiskLevel.HIGH, "Can modify requests to allowed hosts"),
    "pageCapture": (RiskLevel.HIGH, "Can capture full page content as MHTML"),
    "tabCapture": (RiskLevel.HIGH, "Can capture video and audio from tabs"),
    "desktopCapture": (RiskLevel.HIGH, "Can capture your entire screen"),
    "nativeMessaging": (RiskLevel.HIGH, "Can communicate with programs on your computer"),
    "management": (RiskLevel.HIGH, "Can manage other installed extensions"),
    "privacy": (RiskLevel.HIGH, "Can modify browser privacy settings"),
    "browsingData": (RiskLevel.HIGH, "Can delete browsing history and data"),
    "contentSettings": (RiskLevel.HIGH, "Can change website permissions"),
    "downloads": (RiskLevel.HIGH, "Can manage downloaded files"),
    "downloads.open": (RiskLevel.HIGH, "Can open downloaded files"),
    "clipboardRead": (RiskLevel.HIGH, "Can read data you copy"),
    # Medium
    "activeTab": (RiskLevel.MEDIUM, "Can access the current tab when you click the extension"),
    "scripting": (RiskLevel.MEDIUM, "Can inject JavaScript into web pages"),
    "geolocation": (RiskLevel.MEDIUM, "Can detect your physical location"),
    "notifications": (RiskLevel.MEDIUM, "Can display desktop notifications"),
    "clipboardWrite": (RiskLevel.MEDIUM, "Can modify your clipboard"),
    "identity": (RiskLevel.MEDIUM, "Can access your browser identity"),
    "identity.email": (RiskLevel.MEDIUM, "Can see your email address"),
    "tts": (RiskLevel.MEDIUM, "Can use text-to-speech"),
    "ttsEngine": (RiskLevel.MEDIUM, "Can provide a text-to-speech engine"),
    "webRequestAuthProvider": (RiskLevel.MEDIUM, "Can provide authentication"),
    "userScripts": (RiskLevel.MEDIUM, "Can execute user scripts"),
    "offscreen": (RiskLevel.MEDIUM, "Can create offscreen documents"),
    # Low
    "storage": (RiskLevel.LOW, "Can store extension data locally"),
    "unlimitedStorage": (RiskLevel.LOW, "Can store large amounts of data"),
    "alarms": (RiskLevel.LOW, "Can schedule periodic tasks"),
    "contextMenus": (RiskLevel.LOW, "Can add items to the right-click menu"),
    "idle": (RiskLevel.LOW, "Can detect when you're idle"),
    "power": (RiskLevel.LOW, "Can affect power saving"),
    "system.cpu": (RiskLevel.LOW, "Can read CPU information"),
    "system.memory": (RiskLevel.LOW, "Can read memory usage"),
    "system.display": (RiskLevel.LOW, "Can read display information"),
    "system.storage": (RiskLevel.LOW, "Can read storage information"),
    "fontSettings": (RiskLevel.LOW, "Can modify font settings"),
    "runtime": (RiskLevel.LOW, "Basic extension runtime access"),
    "gcm": (RiskLevel.LOW, "Can receive push messages"),
    "sidePanel": (RiskLevel.LOW, "Can show a side panel"),
    "favicon": (RiskLevel.LOW, "Can access website favicons"),
    "readingList": (RiskLevel.LOW, "Can access the reading list"),
    "tabGroups": (RiskLevel.LOW, "Can organize tabs into groups"),
}

_PERMISSION_WEIGHTS: dict[RiskLevel, int] = {
    RiskLevel.CRITICAL: 100,
    RiskLevel.HIGH: 50,
    RiskLevel.MEDIUM: 20,
    RiskLevel.LOW: 5,
}

_HOST_SCOPE_WEIGHTS: dict[HostScope, int] = {
    HostScope.NONE: 0,
    HostScope.SPECIFIC: 5,
    HostScope.BROAD: 30,
    HostScope.ALL_URLS: 80,
}

_CSP_WEIGHTS: dict[CspWeakness, int] = {
    CspWeakness.MISSING_CSP: 30,
    CspWeakness.UNSAFE_EVAL: 40,
    CspWeakness.UNSAFE_INLINE: 30,
    CspWeakness.REMOTE_SCRIPT_SOURCE: 10,
}

_SCRIPT_DIRECTIVES = {"script-src", "script-src-elem", "default-src"}

_SCHEMES = ("*://", "http://", "https://", "ws://", "wss://", "file://")

# Schemes whose sources can pull script from the network
_REMOTE_SCHEMES = {"http", "https", "ws", "wss"}

# Upper bounds (inclusive) of each risk band
_RISK_BANDS: list[tuple[int, RiskLevel]] = [
    (20, RiskLevel.LOW),
    (100, RiskLevel.MEDIUM),
    (300, RiskLevel.HIGH),
]


def classify_permission(permission: str, optional: bool = False) -> PermissionFinding:
    """Look up a permission. Unknown permissions are Low."""
    level, description = _PERMISSIONS.get(
        permission, (RiskLevel.LOW, f"Unknown permission: {permission}"),
    )
    return PermissionFinding(
        permission=permission,
        risk_level=level,
        description=description,
        optional=optional,
    )


def _host_of(pattern: str) -> str:
    """Host part of a match pattern or source expression."""
    for scheme in _SCHEMES:
        if pattern.startswith(scheme):
            pattern = pattern[len(scheme):]
            break
    return pattern.split("/", 1)[0]


def _scope_of(pattern: str) -> HostScope | None:
    """Scope of one match pattern, or None when it names no host."""
    pattern = pattern.strip()
    if pattern == "<all_urls>":
        return HostScope.ALL_URLS
    host = _host_of(pattern)
    if not host:
        return None
    if host == "*":
        return HostScope.ALL_URLS
    if host.startswith("*."):
        return HostScope.BROAD
    return HostScope.SPECIFIC


def classify_host_scope(host_permissions: list[str]) -> tuple[HostScope, list[str]]:
    """Most permissive scope across all patterns, plus the named domains.

    ``<all_urls>`` and whole-host wildcards beat ``*.`` subdomain wildcards,
    which beat specific hosts. Blank or hostless patterns are skipped.
    """
    scope = HostScope.NONE
    domains: set[str] = set()
    for pattern in host_permissions:
        candidate = _scope_of(pattern)
        if candidate is None:
            continue
        if candidate.rank > scope.rank:
            scope = candidate
        if candidate is not HostScope.ALL_URLS:
            domains.add(_host_of(pattern.strip()))
    return scope, sorted(domains)


def _is_remote_source(value: str) -> bool:
    """Whether a CSP source expression can load script from the network.

    Keywords, nonces and hashes are quoted. Scheme sources are remote only
    for http(s) and ws(s); ``data:``, ``blob:``, ``filesystem:`` and
    extension schemes stay local. Every host source, ``*`` included, is remote.
    """
    if not value or value.startswith("'"):
        return False
    if "://" in value:
        return value.split("://", 1)[0].lower() in _REMOTE_SCHEMES
    if value.endswith(":"):
        return value[:-1].lower() in _REMOTE_SCHEMES
    return True


def _is_named_host(host: str) -> bool:
    return host != "*" and not host.endswith(":")


def analyze_csp(csp: str | None) -> tuple[list[CspFinding], list[str]]:
    """Weaknesses in a content security policy and the remote script hosts it allows.

    Each weakness is reported once; remote script sources are reported once
    per distinct host.
    """
    if not csp or not csp.strip():
        return [CspFinding(weakness=CspWeakness.MISSING_CSP, detail="No content security policy defined")], []

    findings: list[CspFinding] = []
    seen: set[CspWeakness] = set()
    remote_hosts: set[str] = set()

    for directive in csp.split(";"):
        parts = directive.split()
        if not parts or parts[0].lower() not in _SCRIPT_DIRECTIVES:
            continue
        name, values = parts[0].lower(), parts[1:]
        for value in values:
            if value == "'unsafe-eval'" and CspWeakness.UNSAFE_EVAL not in seen:
                seen.add(CspWeakness.UNSAFE_EVAL)
                findings.append(CspFinding(
                    weakness=CspWeakness.UNSAFE_EVAL,
                    detail=f"{name} allows eval()",
                ))
            elif value == "'unsafe-inline'" and CspWeakness.UNSAFE_INLINE not in seen:
                seen.add(CspWeakness.UNSAFE_INLINE)
                findings.append(CspFinding(
                    weakness=CspWeakness.UNSAFE_INLINE,
                    detail=f"{name} allows inline scripts",
                ))
            elif _is_remote_source(value):
                remote_hosts.add(_host_of(value))

    hosts = sorted(remote_hosts)
    findings.extend(
        CspFinding(weakness=CspWeakness.REMOTE_SCRIPT_SOURCE, detail=f"Scripts may load from {host}")
        for host in hosts
    )
    return findings, hosts


def risk_level_for(score: int) -> RiskLevel:
    for upper, level in _RISK_BANDS:
        if score <= upper:
            return level
    return RiskLevel.CRITICAL


def assess_extension(package: Package) -> RiskAssessment:
    """Score an extension's declared capabilities.

    Never raises. Packages without a manifest score zero.
    """
    manifest = package.manifest
    if manifest is None:
        return RiskAssessment(package_id=package.package_id)

    findings = [classify_permission(p) for p in dict.fromkeys(manifest.permissions)]
    findings += [classify_permission(p, optional=True) for p in dict.fromkeys(manifest.optional_permissions)]
    findings.sort(key=lambda f: (-f.risk_level.rank, f.permission, f.optional))

    score = sum(
        _PERMISSION_WEIGHTS[f.risk_level] // 2 if f.optional else _PERMISSION_WEIGHTS[f.risk_level]
        for f in findings
    )

    host_scope, host_domains = classify_host_scope(manifest.host_permissions)
    score += _HOST_SCOPE_WEIGHTS[host_scope]

    csp_findings, script_hosts = analyze_csp(manifest.content_security_policy)
    score += sum(_CSP_WEIGHTS[f.weakness] for f in csp_findings)

    return RiskAssessment(
        package_id=package.package_id,
        permission_findings=findings,
        csp_findings=csp_findings,
        host_scope=host_scope,
        external_domains=sorted(set(host_domains) | {h for h in script_hosts if _is_named_host(h)}),
        score=score,
        risk_level=risk_level_for(score),
    )
