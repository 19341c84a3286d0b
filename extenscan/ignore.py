"""Ignore policy: suppress accepted findings after resolution."""

from __future__ import annotations

import fnmatch

import yaml
from pydantic import BaseModel, ValidationError

from extenscan.errors import ConfigurationError
from extenscan.models import OutdatedInfo, Package, Vulnerability


class IgnorePolicy(BaseModel):
    """Three independent suppression lists.

    ``packages`` and ``outdated`` hold case-sensitive globs matched against a
    package's name and id; ``vulnerabilities`` holds exact advisory ids.
    Patterns that match nothing are inert.
    """

    packages: list[str] = []
    vulnerabilities: list[str] = []
    outdated: list[str] = []

    def matches_package(self, package: Package) -> bool:
        return _matches_any(self.packages, package)

    def ignores_vulnerability_id(self, vuln: Vulnerability) -> bool:
        """True when the canonical id or any alias is listed exactly."""
        ids = {vuln.id, *vuln.source_advisory_ids}
        return any(ignored in ids for ignored in self.vulnerabilities)

    def applies_to_vulnerability(self, vuln: Vulnerability, package: Package) -> bool:
        return self.matches_package(package) or self.ignores_vulnerability_id(vuln)

    def applies_to_outdated(self, info: OutdatedInfo, package: Package) -> bool:
        return self.matches_package(package) or _matches_any(self.outdated, package)

    def applies_to_risk(self, package: Package) -> bool:
        return self.matches_package(package)

    def merged(self, other: IgnorePolicy) -> IgnorePolicy:
        """Union of two policies, preserving first-seen order."""
        return IgnorePolicy(
            packages=list(dict.fromkeys(self.packages + other.packages)),
            vulnerabilities=list(dict.fromkeys(self.vulnerabilities + other.vulnerabilities)),
            outdated=list(dict.fromkeys(self.outdated + other.outdated)),
        )


def _matches_any(patterns: list[str], package: Package) -> bool:
    names = {package.name, package.package_id}
    return any(
        fnmatch.fnmatchcase(name, pattern)
        for pattern in patterns
        for name in names
    )


def load_ignore_policy(path: str) -> IgnorePolicy:
    """Load an ignore policy from a YAML document.

    Expected keys: ``packages``, ``vulnerabilities``, ``outdated``.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Ignore file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Ignore file {path} is not valid YAML: {e}") from e

    if data is None:
        return IgnorePolicy()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Ignore file {path} must be a mapping")

    try:
        return IgnorePolicy(
            packages=data.get("packages") or [],
            vulnerabilities=data.get("vulnerabilities") or [],
            outdated=data.get("outdated") or [],
        )
    except ValidationError as e:
        raise ConfigurationError(f"Ignore file {path} is invalid: {e}") from e
