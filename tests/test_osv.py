"""Tests for OSV severity mapping, advisory merging and the vulnerability resolver."""

from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from extenscan.config import settings
from extenscan.errors import TransientLookupFailure
from extenscan.models import CheckKind, Package, Severity, Source, Vulnerability
from extenscan.resolvers.osv import (
    OsvClient,
    VulnerabilityResolver,
    canonical_id,
    classify_severity,
    merge_vulnerabilities,
    normalize_advisory,
    severity_from_score,
)


LODASH = Package(name="lodash", version="4.17.20", source=Source.NPM)
WGET = Package(name="wget", version="1.21.3", source=Source.HOMEBREW)

MOCK_BATCH_RESPONSE = {
    "results": [
        {"vulns": [{"id": "GHSA-35jh-r3h4-6jhm", "modified": "2024-01-01T00:00:00Z"}]},
        {"vulns": []},
    ]
}

MOCK_VULN_DETAIL = {
    "id": "GHSA-35jh-r3h4-6jhm",
    "aliases": ["CVE-2021-23337"],
    "summary": "Command Injection in lodash",
    "details": "lodash versions prior to 4.17.21 are vulnerable to Command Injection via template.",
    "severity": [{"type": "CVSS_V3", "score": "CVSS:3.1/AV:N/AC:L/PR:H/UI:N/S:U/C:H/I:H/A:H"}],
    "affected": [
        {
            "package": {"name": "lodash", "ecosystem": "npm"},
            "ranges": [
                {"type": "SEMVER", "events": [{"introduced": "0"}, {"fixed": "4.17.21"}]}
            ],
        }
    ],
    "references": [
        {"type": "WEB", "url": "https://github.com/lodash/lodash/commit/3469357"},
        {"type": "ADVISORY", "url": "https://nvd.nist.gov/vuln/detail/CVE-2021-23337"},
    ],
}


def _vuln(vuln_id: str, severity: Severity = Severity.MEDIUM, ids: list[str] | None = None, **kwargs) -> Vulnerability:
    return Vulnerability(
        id=vuln_id,
        package_id=kwargs.pop("package_id", "lodash"),
        severity=severity,
        title=kwargs.pop("title", vuln_id),
        source_advisory_ids=ids or [vuln_id],
        **kwargs,
    )


class TestSeverity:
    @pytest.mark.parametrize("score,expected", [
        (9.8, Severity.CRITICAL),
        (9.0, Severity.CRITICAL),
        (7.0, Severity.HIGH),
        (6.9, Severity.MEDIUM),
        (4.0, Severity.MEDIUM),
        (0.1, Severity.LOW),
        (0.0, None),
    ])
    def test_score_bands(self, score, expected):
        assert severity_from_score(score) == expected

    def test_numeric_score(self):
        assert classify_severity({"severity": [{"type": "CVSS_V3", "score": "9.8"}]}) == Severity.CRITICAL

    def test_cvss3_vector(self):
        advisory = {"severity": [{"type": "CVSS_V3", "score": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H"}]}
        assert classify_severity(advisory) == Severity.CRITICAL

    def test_cvss_takes_priority_over_keywords(self):
        advisory = {
            "severity": [{"type": "CVSS_V3", "score": "5.3"}],
            "database_specific": {"severity": "CRITICAL"},
        }
        assert classify_severity(advisory) == Severity.MEDIUM

    def test_database_specific_keyword(self):
        assert classify_severity({"database_specific": {"severity": "MODERATE"}}) == Severity.MEDIUM
        assert classify_severity({"database_specific": {"severity": "high"}}) == Severity.HIGH

    def test_ecosystem_specific_keyword(self):
        advisory = {"affected": [{"ecosystem_specific": {"severity": "LOW"}}]}
        assert classify_severity(advisory) == Severity.LOW

    def test_unparseable_vector_falls_through(self):
        advisory = {
            "severity": [{"type": "CVSS_V3", "score": "CVSS:3.1/garbage"}],
            "database_specific": {"severity": "HIGH"},
        }
        assert classify_severity(advisory) == Severity.HIGH

    def test_defaults_to_medium(self):
        assert classify_severity({"id": "OSV-1"}) == Severity.MEDIUM
        assert classify_severity({"database_specific": {"severity": "SEVERE"}}) == Severity.MEDIUM


class TestNormalization:
    def test_canonical_prefers_cve_then_ghsa(self):
        assert canonical_id({"GHSA-aaaa", "CVE-2021-1", "OSV-1"}) == "CVE-2021-1"
        assert canonical_id({"GHSA-bbbb", "GHSA-aaaa", "OSV-1"}) == "GHSA-aaaa"
        assert canonical_id({"PYSEC-2", "OSV-1"}) == "OSV-1"

    def test_normalize_full_advisory(self):
        vuln = normalize_advisory(MOCK_VULN_DETAIL, LODASH)
        assert vuln.id == "CVE-2021-23337"
        assert vuln.package_id == "lodash"
        assert vuln.severity == Severity.HIGH
        assert vuln.title == "Command Injection in lodash"
        assert vuln.fixed_version == "4.17.21"
        assert vuln.affected_range == "<4.17.21"
        assert vuln.reference_url == "https://nvd.nist.gov/vuln/detail/CVE-2021-23337"
        assert vuln.source_advisory_ids == ["CVE-2021-23337", "GHSA-35jh-r3h4-6jhm"]

    def test_normalize_stub(self):
        vuln = normalize_advisory({"id": "GHSA-35jh-r3h4-6jhm"}, LODASH)
        assert vuln.id == "GHSA-35jh-r3h4-6jhm"
        assert vuln.severity == Severity.MEDIUM
        assert vuln.title == "Unknown vulnerability"

    def test_affected_range_with_introduced(self):
        advisory = {
            "id": "OSV-1",
            "affected": [{"ranges": [{"events": [{"introduced": "1.0.0"}, {"last_affected": "1.4.2"}]}]}],
        }
        vuln = normalize_advisory(advisory, LODASH)
        assert vuln.affected_range == ">=1.0.0, <=1.4.2"
        assert vuln.fixed_version == ""

    def test_wrongly_typed_fields_are_treated_as_absent(self):
        advisory = {
            "id": "GHSA-x",
            "aliases": "CVE-2021-1",
            "summary": ["not", "text"],
            "details": 5,
            "severity": {"type": "CVSS_V3"},
            "database_specific": "HIGH",
            "affected": ["npm", {"package": "lodash", "ranges": [{"events": ["0", {"fixed": 4}]}]}],
            "references": [{"url": None}, "https://example.com"],
        }
        vuln = normalize_advisory(advisory, LODASH)
        assert vuln.id == "GHSA-x"
        assert vuln.title == "Unknown vulnerability"
        assert vuln.summary == ""
        assert vuln.severity == Severity.MEDIUM
        assert vuln.affected_range == ""
        assert vuln.reference_url == ""
        assert vuln.source_advisory_ids == ["GHSA-x"]

    def test_advisory_without_id_is_rejected(self):
        with pytest.raises(ValueError):
            normalize_advisory({"id": 7, "summary": "no usable id"}, LODASH)


class TestMerge:
    def test_same_canonical_id_merges(self):
        a = _vuln("CVE-2021-23337", Severity.MEDIUM, ["CVE-2021-23337", "GHSA-35jh-r3h4-6jhm"])
        b = _vuln("CVE-2021-23337", Severity.HIGH, ["CVE-2021-23337", "OSV-2021-1"])
        merged = merge_vulnerabilities([a, b])
        assert len(merged) == 1
        assert merged[0].severity == Severity.HIGH
        assert merged[0].source_advisory_ids == ["CVE-2021-23337", "GHSA-35jh-r3h4-6jhm", "OSV-2021-1"]

    def test_transitive_aliases_merge(self):
        a = _vuln("CVE-2021-1", ids=["CVE-2021-1", "GHSA-1"])
        b = _vuln("GHSA-2", ids=["GHSA-1", "GHSA-2"])
        merged = merge_vulnerabilities([a, b])
        assert [v.id for v in merged] == ["CVE-2021-1"]
        assert merged[0].source_advisory_ids == ["CVE-2021-1", "GHSA-1", "GHSA-2"]

    def test_merge_is_idempotent(self):
        a = normalize_advisory(MOCK_VULN_DETAIL, LODASH)
        b = normalize_advisory({"id": "GHSA-35jh-r3h4-6jhm"}, LODASH)

        once = merge_vulnerabilities([a, b])
        twice = merge_vulnerabilities([a, b, a, b])
        again = merge_vulnerabilities(once)
        assert once == twice == again
        assert len(once) == 1
        assert once[0].title == "Command Injection in lodash"

    def test_different_packages_do_not_merge(self):
        a = _vuln("CVE-2021-1", package_id="lodash")
        b = _vuln("CVE-2021-1", package_id="lodash-es")
        assert len(merge_vulnerabilities([a, b])) == 2


class TestOsvClient:
    @respx.mock
    @pytest.mark.asyncio
    async def test_query_batch(self):
        route = respx.post(f"{settings.osv_api_url}/querybatch").mock(
            return_value=httpx.Response(200, json=MOCK_BATCH_RESPONSE)
        )
        async with httpx.AsyncClient() as client:
            results = await OsvClient(client).query_batch([{"a": 1}, {"b": 2}])
        assert results == [[{"id": "GHSA-35jh-r3h4-6jhm", "modified": "2024-01-01T00:00:00Z"}], []]
        assert route.called

    @respx.mock
    @pytest.mark.asyncio
    async def test_query_batch_length_mismatch(self):
        respx.post(f"{settings.osv_api_url}/querybatch").mock(
            return_value=httpx.Response(200, json={"results": []})
        )
        async with httpx.AsyncClient() as client:
            with pytest.raises(TransientLookupFailure):
                await OsvClient(client).query_batch([{"a": 1}])

    @respx.mock
    @pytest.mark.asyncio
    async def test_advisory_http_error(self):
        respx.get(f"{settings.osv_api_url}/vulns/GHSA-x").mock(return_value=httpx.Response(503))
        async with httpx.AsyncClient() as client:
            with pytest.raises(TransientLookupFailure):
                await OsvClient(client).get_advisory("GHSA-x")


class TestVulnerabilityResolver:
    def test_plan_groups_by_osv_ecosystem(self, cache):
        resolver = VulnerabilityResolver(AsyncMock(), cache)
        ext = Package(name="ext", version="1.0.0", source=Source.CHROME)
        unknown = Package(name="left-pad", version="unknown", source=Source.NPM)

        plan = resolver.plan([LODASH, WGET, ext, unknown])
        assert plan == {"npm": [LODASH], "Homebrew": [WGET]}

    @respx.mock
    @pytest.mark.asyncio
    async def test_resolve_ecosystem_batches_and_caches(self, cache):
        batch = respx.post(f"{settings.osv_api_url}/querybatch").mock(
            return_value=httpx.Response(200, json=MOCK_BATCH_RESPONSE)
        )
        respx.get(f"{settings.osv_api_url}/vulns/GHSA-35jh-r3h4-6jhm").mock(
            return_value=httpx.Response(200, json=MOCK_VULN_DETAIL)
        )
        underscore = Package(name="underscore", version="1.13.6", source=Source.NPM)

        async with httpx.AsyncClient() as client:
            resolver = VulnerabilityResolver(OsvClient(client), cache)
            first = await resolver.resolve_ecosystem("npm", [LODASH, underscore])
            second = await resolver.resolve_ecosystem("npm", [LODASH, underscore])

        assert batch.call_count == 1
        sent = batch.calls[0].request
        assert b'"ecosystem":"npm"' in sent.content.replace(b" ", b"")
        assert first == second
        assert [v.id for v in first] == ["CVE-2021-23337"]
        assert cache.get("osv:npm:underscore@1.13.6") == []

    @pytest.mark.asyncio
    async def test_detail_failure_falls_back_to_stub_and_skips_cache(self, cache):
        source = AsyncMock()
        source.query_batch.return_value = [[{"id": "GHSA-35jh-r3h4-6jhm"}]]
        source.get_advisory.side_effect = TransientLookupFailure("GHSA-35jh-r3h4-6jhm", "timeout")
        resolver = VulnerabilityResolver(source, cache)

        found = await resolver.resolve_ecosystem("npm", [LODASH])
        assert [v.id for v in found] == ["GHSA-35jh-r3h4-6jhm"]
        assert cache.get("osv:npm:lodash@4.17.20") is None

    @pytest.mark.asyncio
    async def test_malformed_detail_falls_back_to_stub(self, cache):
        source = AsyncMock()
        source.query_batch.return_value = [[{"id": "GHSA-x"}, {"id": 12}, "junk"]]
        source.get_advisory.return_value = {"id": ["GHSA-x"], "details": 5}
        resolver = VulnerabilityResolver(source, cache)

        found = await resolver.resolve_ecosystem("npm", [LODASH])
        assert [v.id for v in found] == ["GHSA-x"]
        assert found[0].title == "Unknown vulnerability"
        source.get_advisory.assert_awaited_once_with("GHSA-x")
        assert cache.get("osv:npm:lodash@4.17.20") is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_non_object_batch_results_are_empty(self):
        respx.post(f"{settings.osv_api_url}/querybatch").mock(
            return_value=httpx.Response(200, json={"results": [None, ["x"], {"vulns": "none"}]})
        )
        async with httpx.AsyncClient() as client:
            result = await OsvClient(client).query_batch([{}, {}, {}])
        assert result == [[], [], []]

    @pytest.mark.asyncio
    async def test_batch_failure_raises(self, cache):
        source = AsyncMock()
        source.query_batch.side_effect = TransientLookupFailure("OSV.dev", "503")
        resolver = VulnerabilityResolver(source, cache)

        with pytest.raises(TransientLookupFailure):
            await resolver.resolve_ecosystem("npm", [LODASH])

    @pytest.mark.asyncio
    async def test_resolve_isolates_ecosystem_failures(self, cache):
        async def query_batch(queries):
            if queries[0]["package"]["ecosystem"] == "Homebrew":
                raise TransientLookupFailure("OSV.dev", "503")
            return [[{"id": "GHSA-35jh-r3h4-6jhm"}]]

        source = AsyncMock()
        source.query_batch.side_effect = query_batch
        source.get_advisory.return_value = MOCK_VULN_DETAIL
        resolver = VulnerabilityResolver(source, cache)

        vulns, diagnostics = await resolver.resolve([LODASH, WGET])
        assert [v.id for v in vulns] == ["CVE-2021-23337"]
        assert len(diagnostics) == 1
        assert diagnostics[0].check == CheckKind.VULNERABILITIES
        assert diagnostics[0].subject == "Homebrew"
        assert diagnostics[0].kind == "TransientLookupFailure"

    @pytest.mark.asyncio
    async def test_large_groups_are_chunked(self, cache):
        packages = [Package(name=f"pkg-{i}", version="1.0.0", source=Source.NPM) for i in range(1500)]
        source = AsyncMock()
        source.query_batch.side_effect = lambda queries: [[] for _ in queries]
        resolver = VulnerabilityResolver(source, cache)

        assert await resolver.resolve_ecosystem("npm", packages) == []
        sizes = [len(call.args[0]) for call in source.query_batch.await_args_list]
        assert sizes == [1000, 500]
