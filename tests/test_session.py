"""Tests for DiscoverySession."""
import pytest
import pytest_asyncio

from cartographer.core.errors import SessionAborted
from cartographer.core.models import Exchange, WarningKind
from cartographer.core.session import DiscoverySession
from cartographer.memory.spec_store import SpecStore


@pytest_asyncio.fixture
async def store():
    store = SpecStore(":memory:")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def traffic(exchange):
    return [
        exchange("/api/users/1", body={"id": 1, "name": "Ada"}, seconds=0),
        exchange("/api/users/2", body={"id": 2, "name": "Bob", "email": "bob@example.com"}, seconds=1),
        exchange("/api/users?page=1", body=[{"id": 1}], seconds=2),
        exchange("/api/users?page=2", body=[{"id": 2}], seconds=3),
        exchange("/api/users?page=3", body=[], seconds=4),
    ]


class TestDiscoverySession:
    """Test the end-to-end pipeline."""

    @pytest.mark.asyncio
    async def test_first_run(self, config, store, traffic):
        session = DiscoverySession("shop", config=config, store=store)

        spec, changelog = await session.run(traffic)

        assert spec.version == "1.0.0"
        assert changelog.baseline_missing
        assert changelog.added == [("/api/users", "GET"), ("/api/users/{id}", "GET")]
        assert (await store.latest("shop")).fingerprint == spec.fingerprint
        assert WarningKind.DIFF_BASELINE_MISSING in {w.kind for w in session.warnings}

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, config, store, traffic):
        first, _ = await DiscoverySession("shop", config=config, store=store).run(traffic)
        second, changelog = await DiscoverySession("shop", config=config, store=store).run(traffic)

        assert changelog.is_empty
        assert second.version == first.version
        assert second.document == first.document
        assert second.fingerprint == first.fingerprint
        assert len(await store.list_versions("shop")) == 1

    @pytest.mark.asyncio
    async def test_new_endpoint_bumps_minor(self, config, store, traffic, exchange):
        await DiscoverySession("shop", config=config, store=store).run(traffic)

        more = traffic + [exchange("/api/orders", body=[], seconds=10)]
        spec, changelog = await DiscoverySession("shop", config=config, store=store).run(more)

        assert spec.version == "1.1.0"
        assert spec.document["info"]["version"] == "1.1.0"
        assert changelog.added == [("/api/orders", "GET")]
        assert changelog.current_version == "1.1.0"
        assert [v["version"] for v in await store.list_versions("shop")] == ["1.0.0", "1.1.0"]

    @pytest.mark.asyncio
    async def test_removed_endpoint_bumps_major(self, config, store, traffic):
        await DiscoverySession("shop", config=config, store=store).run(traffic)

        fewer = [e for e in traffic if "page" not in e.url]
        spec, changelog = await DiscoverySession("shop", config=config, store=store).run(fewer)

        assert spec.version == "2.0.0"
        assert changelog.removed == [("/api/users", "GET")]

    @pytest.mark.asyncio
    async def test_document_only_change_bumps_patch(self, config, store, traffic, exchange):
        first, _ = await DiscoverySession("shop", config=config, store=store).run(traffic)

        more = traffic + [
            exchange("/api/users/3?fields=name", body={"id": 3, "name": "Cy"}, seconds=5),
            exchange("/api/users/4", status=404, body={"error": "missing"}, seconds=6),
        ]
        spec, changelog = await DiscoverySession("shop", config=config, store=store).run(more)

        assert changelog.is_empty
        assert spec.fingerprint != first.fingerprint
        assert spec.version == "1.0.1"
        assert (await store.latest("shop")).fingerprint == spec.fingerprint

        again, _ = await DiscoverySession("shop", config=config, store=store).run(more)

        assert again.version == "1.0.1"
        assert [v["version"] for v in await store.list_versions("shop")] == ["1.0.0", "1.0.1"]

    @pytest.mark.asyncio
    async def test_too_deep_body_does_not_abort(self, config, traffic, exchange):
        depth = 100_000
        body = "".join('{"id": %d, "children": [' % level for level in range(depth)) + "]}" * depth
        session = DiscoverySession("shop", config=config)
        session.ingest(exchange("/api/tree", body=body, response_headers={"content-type": "application/json"}))

        spec, _ = await session.run(traffic)

        assert ("/api/tree", "GET") in spec.keys()
        assert WarningKind.MALFORMED_EXCHANGE in {w.kind for w in session.warnings}

    @pytest.mark.asyncio
    async def test_empty_input(self, config):
        spec, changelog = await DiscoverySession("shop", config=config).synthesize()

        assert spec.document["paths"] == {}
        assert changelog.baseline_missing
        assert changelog.added == []

    @pytest.mark.asyncio
    async def test_malformed_exchange_does_not_abort(self, config, traffic):
        session = DiscoverySession("shop", config=config)
        session.ingest(Exchange(method="GET", url="::::", status_code=200))

        spec, _ = await session.run(traffic)

        assert len(spec.entries) == 2
        assert WarningKind.MALFORMED_EXCHANGE in {w.kind for w in session.warnings}
        assert spec.document["x-discovery-notes"]["session"]["unclassifiedExchanges"] == 1

    @pytest.mark.asyncio
    async def test_ambiguous_pagination_warned(self, config, exchange):
        session = DiscoverySession("shop", config=config)
        session.ingest(exchange("/api/items?page=4", body=[]))

        analyses = await session.analyze()

        assert analyses[0].pagination.low_confidence
        assert [w.kind for w in session.warnings] == [WarningKind.AMBIGUOUS_PATTERN]

    @pytest.mark.asyncio
    async def test_analysis_results(self, config, traffic):
        session = DiscoverySession("shop", config=config)
        session.ingest_many(traffic)

        analyses = {a.cluster.key: a for a in await session.analyze()}

        listing = analyses[("/api/users", "GET")]
        assert listing.pagination.kind.value == "page_number"
        assert listing.pagination.confidence == 0.9
        detail = analyses[("/api/users/{id}", "GET")]
        assert detail.response_schema.root["required"] == ["id", "name"]
        assert detail.pagination is None

    @pytest.mark.asyncio
    async def test_abort(self, config, traffic, exchange):
        session = DiscoverySession("shop", config=config)
        session.ingest_many(traffic)

        session.abort()

        assert session.templates() == []
        with pytest.raises(SessionAborted):
            session.ingest(exchange("/api/users/3"))
        with pytest.raises(SessionAborted):
            await session.synthesize()

    @pytest.mark.asyncio
    async def test_summary(self, config, traffic):
        session = DiscoverySession("shop", config=config)
        session.ingest_many(traffic)

        summary = session.get_summary()

        assert summary["target"] == "shop"
        assert summary["templates"] == 2
        assert summary["exchanges"] == 5
        assert summary["last_version"] is None
