"""Tests for the attestation client and source fan-out."""

import asyncio

import httpx
import pytest

from conftest import NOW_MS, FakeAttestation, make_record
from priceoracle.attestation.client import HttpAttestationClient, fetch_sources, is_attested
from priceoracle.errors import AttestationError


class TestIsAttested:
    """Tests for is_attested()."""

    def test_fresh_hex_signature(self):
        assert is_attested(make_record("anilist"), max_age_seconds=60, now=NOW_MS)

    def test_missing_signature(self):
        assert not is_attested(make_record("anilist", signature=None), max_age_seconds=60, now=NOW_MS)

    def test_non_hex_signature(self):
        assert not is_attested(make_record("anilist", signature="zz-top"), max_age_seconds=60, now=NOW_MS)

    def test_stale(self):
        record = make_record("anilist", timestamp=NOW_MS - 61_000)
        assert not is_attested(record, max_age_seconds=60, now=NOW_MS)


@pytest.mark.asyncio
class TestFetchSources:
    """Tests for fetch_sources()."""

    async def test_drops_failed_and_unattested_sources(self):
        """Should keep only sources that answered with attested data."""
        client = FakeAttestation()
        client.responses["myanimelist"] = make_record("myanimelist", rating=800)
        client.responses["anilist"] = AttestationError("enclave unavailable")
        client.responses["kitsu"] = make_record("kitsu", signature=None)

        records = await fetch_sources(client, "asset-7", ["myanimelist", "anilist", "kitsu", "unknown"], now=NOW_MS)

        assert [r.source for r in records] == ["myanimelist"]
        assert records[0].asset_id == "asset-7"

    async def test_slow_source_times_out(self):
        class SlowAttestation(FakeAttestation):
            async def fetch(self, asset_id, source):
                await asyncio.sleep(1)
                return make_record(source)

        records = await fetch_sources(SlowAttestation(), "asset-1", ["anilist"], timeout_seconds=0.01, now=NOW_MS)
        assert records == []

    async def test_disabled(self):
        """Should return nothing without a client."""
        assert await fetch_sources(None, "asset-1", ["anilist"]) == []


@pytest.mark.asyncio
class TestHttpAttestationClient:
    """Tests for HttpAttestationClient.fetch()."""

    async def test_parses_enclave_response(self):
        """Should read the signed data block and signature."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "response": {
                        "intent": 0,
                        "timestamp_ms": NOW_MS,
                        "data": {
                            "average_rating": 845,
                            "popularity_score": 9100,
                            "member_count": 120000,
                            "trending_score": None,
                        },
                    },
                    "signature": "abcd01",
                },
            )

        client = HttpAttestationClient(
            "http://enclave.test", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        record = await client.fetch("asset-1", "myanimelist", name="Frieren")

        assert requests[0].url.path == "/process_data"
        assert record.metrics.rating == 845
        assert record.metrics.popularity == 9100
        assert record.metrics.member_count == 120000
        assert record.metrics.trending == 0
        assert record.signature == "abcd01"
        assert record.timestamp == NOW_MS

    async def test_error_status(self):
        client = HttpAttestationClient(
            "http://enclave.test",
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
        )
        with pytest.raises(AttestationError):
            await client.fetch("asset-1", "anilist")
