"""Tests for PaginationClassifier."""
import pytest

from cartographer.core.models import PaginationKind
from cartographer.inference.pagination import PaginationClassifier
from cartographer.inference.url_clustering import EndpointModelBuilder


@pytest.fixture
def classify(config):
    """Cluster exchanges and classify the single resulting cluster."""
    def _classify(exchanges):
        builder = EndpointModelBuilder(config)
        builder.add_all(exchanges)
        clusters = builder.clusters()
        assert len(clusters) == 1
        return PaginationClassifier(config).classify(clusters[0])
    return _classify


class TestPaginationClassifier:
    """Test pagination detection and confidence ranking."""

    def test_cursor_chain(self, exchange, classify):
        pattern = classify([
            exchange("/api/items", body={"items": [1], "next_cursor": "c2FsdA"}, seconds=0),
            exchange("/api/items?cursor=c2FsdA", body={"items": [2], "next_cursor": "c2FsdB"}, seconds=1),
            exchange("/api/items?cursor=c2FsdB", body={"items": [3], "next_cursor": None}, seconds=2),
        ])

        assert pattern.kind == PaginationKind.CURSOR
        assert pattern.parameters == ["cursor"]
        assert pattern.confidence == 1.0
        assert not pattern.low_confidence

    def test_cursor_from_header(self, exchange, classify):
        pattern = classify([
            exchange("/api/events", body=[], response_headers={"X-Next-Cursor": "evt_91"}, seconds=0),
            exchange("/api/events?after=evt_91", body=[], seconds=1),
        ])

        assert pattern.kind == PaginationKind.CURSOR
        assert pattern.parameters == ["after"]
        assert pattern.header == "x-next-cursor"

    def test_page_name_alone_is_low_confidence_guess(self, exchange, classify):
        pattern = classify([exchange("/api/items?page=2", body={"items": []})])

        assert pattern.kind == PaginationKind.PAGE_NUMBER
        assert pattern.confidence == 0.5
        assert pattern.low_confidence

    def test_chained_cursor_beats_page_guess(self, exchange, classify):
        pattern = classify([
            exchange("/api/items?page=1", body={"next": "tok_a9"}, seconds=0),
            exchange("/api/items?page=1&cursor=tok_a9", body={"next": None}, seconds=1),
        ])

        assert pattern.kind == PaginationKind.CURSOR
        assert pattern.confidence == 1.0

    def test_monotonic_page_numbers(self, exchange, classify):
        pattern = classify([
            exchange(f"/api/products?page={page}", body={"products": []}, seconds=page)
            for page in (1, 2, 3)
        ])

        assert pattern.kind == PaginationKind.PAGE_NUMBER
        assert pattern.parameters == ["page"]
        assert pattern.confidence == 0.9

    def test_two_pages_lower_confidence(self, exchange, classify):
        pattern = classify([
            exchange(f"/api/products?page={page}", body={"products": []}, seconds=page)
            for page in (1, 2)
        ])

        assert pattern.kind == PaginationKind.PAGE_NUMBER
        assert pattern.confidence == 0.75

    def test_offset_limit(self, exchange, classify):
        pattern = classify([
            exchange(f"/api/orders?offset={offset}&limit=20", body=[], seconds=i)
            for i, offset in enumerate((0, 20, 40))
        ])

        assert pattern.kind == PaginationKind.OFFSET_LIMIT
        assert pattern.parameters == ["offset", "limit"]
        assert pattern.confidence == 0.9

    @pytest.mark.parametrize("query", ["offset={offset}&limit=20", "limit=20&offset={offset}"])
    def test_chained_offset_ignores_page_size(self, exchange, classify, query):
        pattern = classify([
            exchange(
                "/api/orders?" + query.format(offset=offset),
                body={"items": [], "next": offset + 20},
                seconds=i,
            )
            for i, offset in enumerate((0, 20, 40))
        ])

        assert pattern.kind == PaginationKind.OFFSET_LIMIT
        assert pattern.parameters == ["offset"]
        assert pattern.confidence == 1.0

    def test_link_header_followed(self, exchange, classify):
        pattern = classify([
            exchange(
                "/api/repos?page=1",
                body=[],
                response_headers={"Link": '<https://api.example.com/api/repos?page=2>; rel="next"'},
                seconds=0,
            ),
            exchange("/api/repos?page=2", body=[], seconds=1),
        ])

        assert pattern.kind == PaginationKind.LINK_HEADER
        assert pattern.header == "link"
        assert pattern.parameters == ["page"]
        assert pattern.confidence == 1.0

    def test_link_header_advertised_only(self, exchange, classify):
        pattern = classify([
            exchange(
                "/api/repos",
                body=[],
                response_headers={"Link": '<https://api.example.com/api/repos?since=99>; rel="next"'},
            ),
        ])

        assert pattern.kind == PaginationKind.LINK_HEADER
        assert pattern.confidence == 0.75

    def test_body_next_link_followed(self, exchange, classify):
        pattern = classify([
            exchange(
                "/api/people",
                body={"value": [], "@odata.nextLink": "https://api.example.com/api/people?$skiptoken=8"},
                seconds=0,
            ),
            exchange("/api/people?$skiptoken=8", body={"value": []}, seconds=1),
        ])

        assert pattern.kind == PaginationKind.VENDOR_SPECIFIC
        assert pattern.parameters == ["$skiptoken"]
        assert pattern.confidence == 1.0

    def test_next_page_header_advertised_only(self, exchange, classify):
        pattern = classify([
            exchange("/api/orders", body=[], response_headers={"X-Next-Page": "2"}),
        ])

        assert pattern.kind == PaginationKind.VENDOR_SPECIFIC
        assert pattern.header == "x-next-page"
        assert pattern.confidence == 0.6
        assert pattern.low_confidence is False

    def test_no_pagination(self, exchange, classify):
        assert classify([exchange("/api/me", body={"id": 1})]) is None

    def test_deterministic(self, exchange, config):
        exchanges = [
            exchange(f"/api/products?page={page}&per_page=10", body=[], seconds=page)
            for page in (1, 2, 3)
        ]
        builder = EndpointModelBuilder(config)
        builder.add_all(exchanges)
        cluster = builder.clusters()[0]
        classifier = PaginationClassifier(config)

        assert classifier.classify(cluster) == classifier.classify(cluster)
