"""Tests for version parsing, update classification and the version resolver."""

from unittest.mock import AsyncMock

import pytest

from extenscan.errors import TransientLookupFailure, UnparseableVersion
from extenscan.models import Package, Source, UpdateClass
from extenscan.resolvers.versions import (
    VersionResolver,
    classify_update,
    compare_versions,
    parse_version,
)


class TestParseVersion:
    def test_plain(self):
        assert parse_version("1.2.3") == (1, 2, 3)

    def test_leading_v_and_metadata(self):
        assert parse_version("v2.0.1-beta.1+build.5") == (2, 0, 1)

    @pytest.mark.parametrize("value", ["1.2", "latest", "", "1.2.3.4", "01.2.3"])
    def test_rejects_non_semver(self, value):
        with pytest.raises(UnparseableVersion):
            parse_version(value)


class TestClassifyUpdate:
    @pytest.mark.parametrize("current,latest,expected", [
        ("1.2.3", "2.0.0", UpdateClass.MAJOR),
        ("1.2.3", "1.3.0", UpdateClass.MINOR),
        ("1.2.3", "1.2.4", UpdateClass.PATCH),
        ("1.2.3", "1.2.3", None),
        ("2.0.0", "1.9.9", None),
        ("1.2.3", "1.10.0", UpdateClass.MINOR),
        ("v1.2.3", "1.2.4", UpdateClass.PATCH),
        ("1.2.3-beta", "1.2.3", None),
        ("1.2.3", "1.3.0-rc.1", UpdateClass.MINOR),
    ])
    def test_semver_table(self, current, latest, expected):
        assert classify_update(current, latest) == expected

    def test_unknown_current_is_never_outdated(self):
        assert classify_update("unknown", "1.0.0") is None
        assert classify_update("", "1.0.0") is None

    def test_unparseable_equal_strings(self):
        assert classify_update("2024a", "2024a") is None

    def test_unparseable_different_strings_are_major(self):
        assert classify_update("2024a", "2024b") == UpdateClass.MAJOR
        assert classify_update("1.2", "1.3") == UpdateClass.MAJOR


class TestCompareVersions:
    def test_builds_outdated_info(self):
        info = compare_versions("4.17.20", "4.17.21", "lodash")
        assert info.package_id == "lodash"
        assert info.current_version == "4.17.20"
        assert info.latest_version == "4.17.21"
        assert info.update_class == UpdateClass.PATCH

    def test_up_to_date(self):
        assert compare_versions("4.17.21", "4.17.21", "lodash") is None


def _npm(name: str, version: str) -> Package:
    return Package(name=name, version=version, source=Source.NPM)


class TestVersionResolver:
    def setup_method(self):
        self.source = AsyncMock()
        self.source.ecosystem = "npm"
        self.source.latest_version.return_value = "4.17.21"

    @pytest.mark.asyncio
    async def test_resolve_caches_result(self, cache):
        resolver = VersionResolver({"npm": self.source}, cache)

        assert await resolver.resolve("npm", "lodash") == "4.17.21"
        assert await resolver.resolve("npm", "lodash") == "4.17.21"
        self.source.latest_version.assert_awaited_once_with("lodash")
        assert cache.get("version:npm:lodash") == {"latest": "4.17.21"}

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, cache, clock):
        resolver = VersionResolver({"npm": self.source}, cache, ttl_seconds=60)

        await resolver.resolve("npm", "lodash")
        clock.advance(61)
        self.source.latest_version.return_value = "5.0.0"
        assert await resolver.resolve("npm", "lodash") == "5.0.0"
        assert self.source.latest_version.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self, cache):
        self.source.latest_version.side_effect = TransientLookupFailure("lodash", "timeout")
        resolver = VersionResolver({"npm": self.source}, cache)

        with pytest.raises(TransientLookupFailure):
            await resolver.resolve("npm", "lodash")
        assert cache.get("version:npm:lodash") is None

    @pytest.mark.asyncio
    async def test_unknown_ecosystem(self, cache):
        resolver = VersionResolver({}, cache)
        with pytest.raises(TransientLookupFailure):
            await resolver.resolve("npm", "lodash")

    @pytest.mark.asyncio
    async def test_check_package(self, cache):
        resolver = VersionResolver({"npm": self.source}, cache)

        info = await resolver.check_package(_npm("lodash", "4.17.20"))
        assert info.update_class == UpdateClass.PATCH
        assert await resolver.check_package(_npm("lodash", "4.17.21")) is None

    def test_supports(self, cache):
        resolver = VersionResolver({"npm": self.source}, cache)
        assert resolver.supports(_npm("lodash", "1.0.0"))
        assert not resolver.supports(Package(name="ext", version="1.0.0", source=Source.VSCODE))
        assert not resolver.supports(Package(name="wget", version="1.0.0", source=Source.HOMEBREW))
