"""Tests for SpecSynthesizer and OpenAPIBuilder."""
from datetime import datetime, timezone

import pytest
import yaml

from cartographer.core.models import EndpointEntry, EndpointTemplate, InferredSchema
from cartographer.inference.anti_bot import AntiBotClassifier
from cartographer.inference.auth import AuthClassifier, is_login_cluster
from cartographer.inference.pagination import PaginationClassifier
from cartographer.inference.schema_merger import SchemaInferencer
from cartographer.inference.url_clustering import EndpointModelBuilder
from cartographer.spec.openapi_builder import (
    OpenAPIBuilder,
    SpecSynthesizer,
    dump_spec,
    to_json,
    to_yaml,
)


CREATED_AT = datetime(2024, 1, 2, tzinfo=timezone.utc)


@pytest.fixture
def entries_for(config):
    """Run the analysis steps synchronously and build entries."""
    def _entries(exchanges):
        builder = EndpointModelBuilder(config)
        builder.add_all(exchanges)
        clusters = builder.clusters()
        logins = [c for c in clusters if is_login_cluster(c)]
        inferencer = SchemaInferencer(config)
        return [
            EndpointEntry(
                template=cluster.template,
                pagination=PaginationClassifier(config).classify(cluster),
                auth=AuthClassifier().classify(cluster, logins),
                anti_bot=AntiBotClassifier(config).classify(cluster),
                response_schema=inferencer.infer_responses(cluster)[0],
                request_schema=inferencer.infer_requests(cluster)[0],
                status_codes=sorted({e.status_code for e in cluster.exchanges}),
            )
            for cluster in clusters
        ]
    return _entries


@pytest.fixture
def traffic(exchange):
    return [
        exchange("/api/users?page=1", request_headers={"Authorization": "Bearer t1"},
                 body=[{"id": 1, "email": "ada@example.com"}], seconds=0),
        exchange("/api/users?page=2", request_headers={"Authorization": "Bearer t1"},
                 body=[{"id": 2}], seconds=1),
        exchange("/api/users", status=401, body={"error": "unauthorized"}, seconds=2),
        exchange("/api/users/1", request_headers={"Authorization": "Bearer t1", "X-Tenant": "acme"},
                 body={"id": 1, "name": "Ada"}, seconds=3),
        exchange("/api/users/2", request_headers={"Authorization": "Bearer t1", "X-Tenant": "acme"},
                 body={"id": 2, "name": "Bob"}, seconds=4),
        exchange("/api/users", method="POST", status=201, request_headers={"Authorization": "Bearer t1"},
                 request_body={"name": "Cy"}, body={"id": 3, "name": "Cy"}, seconds=5),
    ]


class TestSpecSynthesizer:
    """Test OpenAPI document assembly."""

    def test_document_structure(self, entries_for, traffic):
        spec = SpecSynthesizer("Shop API").synthesize(entries_for(traffic), "shop", "1.0.0", CREATED_AT)
        doc = spec.document

        assert doc["openapi"] == "3.1.0"
        assert doc["info"]["title"] == "Shop API"
        assert doc["info"]["version"] == "1.0.0"
        assert doc["servers"] == [{"url": "https://api.example.com"}]
        assert list(doc["paths"]) == ["/api/users", "/api/users/{id}"]
        assert list(doc["paths"]["/api/users"]) == ["get", "post"]

    def test_parameters(self, entries_for, traffic):
        doc = SpecSynthesizer().synthesize(entries_for(traffic), "shop", "1.0.0", CREATED_AT).document

        listing = {p["name"]: p for p in doc["paths"]["/api/users"]["get"]["parameters"]}
        assert listing["page"]["in"] == "query"
        assert listing["page"]["required"] is False
        assert "authorization" not in listing

        detail = {p["name"]: p for p in doc["paths"]["/api/users/{id}"]["get"]["parameters"]}
        assert detail["id"] == {"name": "id", "in": "path", "required": True, "schema": {"type": "integer"}}
        assert detail["x-tenant"]["in"] == "header"
        assert detail["x-tenant"]["required"] is True

    def test_responses_and_bodies(self, entries_for, traffic):
        doc = SpecSynthesizer().synthesize(entries_for(traffic), "shop", "1.0.0", CREATED_AT).document

        listing = doc["paths"]["/api/users"]["get"]["responses"]
        assert set(listing) == {"200", "401"}
        assert listing["401"] == {"description": "Unauthorized"}
        items = listing["200"]["content"]["application/json"]["schema"]["items"]
        assert items["properties"]["email"]["format"] == "email"
        assert items["required"] == ["id"]

        create = doc["paths"]["/api/users"]["post"]
        assert create["requestBody"]["content"]["application/json"]["schema"]["properties"]["name"] == {
            "type": "string"
        }
        assert create["operationId"] == "postApiUsers"

    def test_security_and_notes(self, entries_for, traffic):
        doc = SpecSynthesizer().synthesize(entries_for(traffic), "shop", "1.0.0", CREATED_AT).document

        assert doc["components"]["securitySchemes"] == {"bearerAuth": {"type": "http", "scheme": "bearer"}}
        listing = doc["paths"]["/api/users"]["get"]
        assert listing["security"] == [{"bearerAuth": []}]

        notes = listing["x-discovery-notes"]
        assert notes["authentication"]["kind"] == "bearer_token"
        assert notes["authentication"]["baselineConfirmed"] is True
        assert notes["pagination"]["kind"] == "page_number"
        assert notes["observations"]["statusCodes"] == [200, 401]

        summary = doc["x-discovery-notes"]
        assert summary["authentication"]["kind"] == "bearer_token"
        assert summary["session"]["endpointCount"] == 3
        assert summary["session"]["exchangeCount"] == 6
        assert summary["antiBot"]["detected"] is False

    def test_deterministic(self, entries_for, traffic):
        entries = entries_for(traffic)
        synthesizer = SpecSynthesizer()

        first = synthesizer.synthesize(entries, "shop", "1.0.0", CREATED_AT)
        second = synthesizer.synthesize(list(reversed(entries)), "shop", "1.0.0",
                                        datetime(2030, 1, 1, tzinfo=timezone.utc))

        assert to_json(first.document) == to_json(second.document)
        assert to_yaml(first.document) == to_yaml(second.document)
        assert first.fingerprint == second.fingerprint

    def test_reordered_traffic_same_document(self, entries_for, traffic):
        forward = SpecSynthesizer().synthesize(entries_for(traffic), "shop", "1.0.0", CREATED_AT)
        backward = SpecSynthesizer().synthesize(entries_for(traffic[::-1]), "shop", "1.0.0", CREATED_AT)

        assert forward.fingerprint == backward.fingerprint

    def test_empty_input(self):
        spec = SpecSynthesizer().synthesize([], "shop", "1.0.0", CREATED_AT)

        assert spec.document["paths"] == {}
        assert spec.entries == ()
        assert spec.document["x-discovery-notes"]["session"]["endpointCount"] == 0

    def test_yaml_round_trip(self, entries_for, traffic):
        spec = SpecSynthesizer().synthesize(entries_for(traffic), "shop", "1.0.0", CREATED_AT)

        assert yaml.safe_load(dump_spec(spec, "yaml")) == spec.document

    def test_unknown_format(self):
        spec = SpecSynthesizer().synthesize([], "shop", "1.0.0", CREATED_AT)
        with pytest.raises(ValueError):
            dump_spec(spec, "xml")

    def test_operation_ids_follow_segment_order(self):
        entries = [
            EndpointEntry(template=EndpointTemplate(method="GET", path=path, exchange_count=1), status_codes=[200])
            for path in ("/users/{id}/posts", "/users/posts/{id}")
        ]

        paths = SpecSynthesizer().synthesize(entries, "shop", "1.0.0", CREATED_AT).document["paths"]

        assert paths["/users/{id}/posts"]["get"]["operationId"] == "getUsersByIdPosts"
        assert paths["/users/posts/{id}"]["get"]["operationId"] == "getUsersPostsById"

    def test_colliding_names_are_made_unique(self):
        def node_entry(path, field):
            node = {
                "type": "object",
                "properties": {
                    "next": {"$ref": "#/components/schemas/Node"},
                    field: {"type": "string"},
                },
            }
            return EndpointEntry(
                template=EndpointTemplate(method="GET", path=path, exchange_count=1),
                response_schema=InferredSchema(
                    root={"$ref": "#/components/schemas/Node"},
                    definitions={"Node": node},
                    sample_count=1,
                ),
                status_codes=[200],
            )

        document = SpecSynthesizer().synthesize(
            [node_entry("/users/{id}", "name"), node_entry("/users/by-id", "label")],
            "shop", "1.0.0", CREATED_AT,
        ).document
        by_literal = document["paths"]["/users/by-id"]["get"]
        by_param = document["paths"]["/users/{id}"]["get"]
        schemas = document["components"]["schemas"]

        assert by_literal["operationId"] == "getUsersById"
        assert by_param["operationId"] == "getUsersById2"
        assert set(schemas) == {"Node", "Node2"}
        assert "label" in schemas["Node"]["properties"]
        assert "name" in schemas["Node2"]["properties"]
        assert schemas["Node2"]["properties"]["next"] == {"$ref": "#/components/schemas/Node2"}
        assert by_param["responses"]["200"]["content"]["application/json"]["schema"] == {
            "$ref": "#/components/schemas/Node2"
        }


class TestOpenAPIBuilder:
    """Test the low-level builder."""

    def test_sorted_output(self):
        builder = OpenAPIBuilder(title="T", version="2.0.0")
        builder.add_operation("/b", "GET", {"tags": ["B"], "responses": {}})
        builder.add_operation("/a", "POST", {"tags": ["A"], "responses": {}})
        builder.add_operation("/a", "GET", {"tags": ["A"], "responses": {}})
        builder.add_schema("Zed", {"type": "object"})
        builder.add_schema("Alpha", {"type": "object"})

        doc = builder.build()

        assert list(doc["paths"]) == ["/a", "/b"]
        assert list(doc["paths"]["/a"]) == ["get", "post"]
        assert list(doc["components"]["schemas"]) == ["Alpha", "Zed"]
        assert doc["tags"] == [{"name": "A"}, {"name": "B"}]
