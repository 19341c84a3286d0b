"""Load package inventories and extension manifests from disk."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from extenscan.errors import ConfigurationError
from extenscan.models import ExtensionManifest, Package, Source


def _read_json(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"File not found: {path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{path} is not valid JSON: {e}") from e


def parse_package(data: Any) -> Package:
    """Build a Package from one inventory entry.

    ``manifest`` may be a raw ``manifest.json`` mapping; it is normalized
    with ``ExtensionManifest.from_raw``.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"Inventory entry must be an object, got {type(data).__name__}")
    data = dict(data)
    if data.get("manifest") is not None:
        data["manifest"] = ExtensionManifest.from_raw(data["manifest"])
    try:
        return Package.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid inventory entry {data.get('name', '?')!r}: {e}") from e


def load_inventory(path: str) -> list[Package]:
    """Load packages from a JSON inventory.

    Accepts either a list of package objects or ``{"packages": [...]}``.
    """
    data = _read_json(path)
    if isinstance(data, dict):
        data = data.get("packages")
    if not isinstance(data, list):
        raise ConfigurationError(f"{path} must contain a list of packages")
    return [parse_package(entry) for entry in data]


def load_manifest(path: str, source: Source = Source.CHROME) -> Package:
    """Wrap a single extension ``manifest.json`` as a Package for risk assessment."""
    data = _read_json(path)
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} is not a manifest object")

    name = data.get("name")
    if not isinstance(name, str) or not name or name.startswith("__MSG_"):
        name = Path(path).parent.name or Path(path).stem
    version = data.get("version")

    return Package(
        name=name,
        version=version if isinstance(version, str) else "unknown",
        source=source,
        description=data.get("description") if isinstance(data.get("description"), str) else None,
        manifest=ExtensionManifest.from_raw(data),
    )
