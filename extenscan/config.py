"""Configuration for extenscan."""

from pathlib import Path

from platformdirs import user_cache_path
from pydantic_settings import BaseSettings

from extenscan.ignore import IgnorePolicy


class ExtenscanSettings(BaseSettings):
    """Application settings with EXTENSCAN_ environment variable overrides."""

    # Endpoints
    osv_api_url: str = "https://api.osv.dev/v1"
    npm_registry_url: str = "https://registry.npmjs.org"
    homebrew_api_url: str = "https://formulae.brew.sh/api"
    http_timeout_seconds: float = 30.0

    # Cache
    cache_db_path: str = ""  # empty = platform cache dir
    cache_ttl_hours: int = 24

    # Checks
    skip_vuln_check: bool = False
    check_outdated: bool = True
    parallel: bool = True
    concurrency: int = 8

    # Ignore lists
    ignore_packages: list[str] = []
    ignore_vulnerabilities: list[str] = []
    ignore_outdated: list[str] = []

    model_config = {"env_prefix": "EXTENSCAN_"}

    @property
    def cache_ttl_seconds(self) -> int:
        return self.cache_ttl_hours * 3600

    def resolved_cache_path(self) -> str:
        """Cache database location, creating the platform cache dir if needed."""
        if self.cache_db_path:
            return self.cache_db_path
        return str(Path(user_cache_path("extenscan", ensure_exists=True)) / "cache.db")

    def ignore_policy(self) -> IgnorePolicy:
        return IgnorePolicy(
            packages=self.ignore_packages,
            vulnerabilities=self.ignore_vulnerabilities,
            outdated=self.ignore_outdated,
        )


settings = ExtenscanSettings()
