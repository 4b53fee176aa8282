"""
Schema Merger - Infers a JSON Schema from sampled bodies of one endpoint.
Uses union strategy for types and optional fields, and hoists self-similar
object shapes into named definitions so recursive data stays finite.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from ..core.config import Settings, settings as default_settings
from ..core.models import (
    DiscoveryWarning,
    EndpointCluster,
    Exchange,
    InferredSchema,
    WarningKind,
)


logger = logging.getLogger(__name__)

SCALAR_TYPES = ("boolean", "integer", "number", "string")

# Nesting below this many levels is left unconstrained
MAX_RENDER_DEPTH = 100

EMAIL_RE = re.compile(r'^[\w.+-]+@[\w-]+(\.[\w-]+)+$')
DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
DATETIME_RE = re.compile(r'^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}')
UUID_RE = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE
)


def detect_format(value: str) -> str | None:
    """JSON Schema string format of a value, if it has an obvious one."""
    if UUID_RE.match(value):
        return "uuid"
    if EMAIL_RE.match(value):
        return "email"
    if DATE_RE.match(value):
        return "date"
    if DATETIME_RE.match(value):
        return "date-time"
    if value.startswith(('http://', 'https://')):
        return "uri"
    return None


def pascal_case(text: str) -> str:
    words = re.split(r'[^A-Za-z0-9]+|(?<=[a-z])(?=[A-Z])', text)
    return "".join(w[:1].upper() + w[1:] for w in words if w)


def singular(word: str) -> str:
    if word.endswith("ren") and len(word) > 4:
        # children -> child
        return word[:-3]
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith("s") and not word.endswith("ss") and len(word) > 1:
        return word[:-1]
    return word


def schema_name_prefix(method: str, path: str) -> str:
    """Name prefix for the schemas of one operation, e.g. GetUsersByIdPosts."""
    name = pascal_case(method.lower())
    for segment in path.split('/'):
        if segment.startswith('{'):
            name += "By" + pascal_case(segment[1:-1])
        elif segment:
            name += pascal_case(segment)
    return name


@dataclass(eq=False)
class Shape:
    """Positional summary of every value seen at one place in the samples."""
    types: set[str] = field(default_factory=set)
    formats: set[str | None] = field(default_factory=set)
    properties: dict[str, "Shape"] = field(default_factory=dict)
    property_counts: dict[str, int] = field(default_factory=dict)
    object_count: int = 0
    items: "Shape | None" = None

    @property
    def key(self) -> frozenset[str]:
        return frozenset(self.properties)

    @property
    def is_object(self) -> bool:
        return "object" in self.types

    def observe(self, value: Any) -> None:
        stack: list[tuple[Shape, Any]] = [(self, value)]
        while stack:
            shape, value = stack.pop()
            if value is None:
                shape.types.add("null")
            elif isinstance(value, bool):
                shape.types.add("boolean")
            elif isinstance(value, int):
                shape.types.add("integer")
            elif isinstance(value, float):
                shape.types.add("number")
            elif isinstance(value, str):
                shape.types.add("string")
                shape.formats.add(detect_format(value))
            elif isinstance(value, dict):
                shape.types.add("object")
                shape.object_count += 1
                for name, child in value.items():
                    name = str(name)
                    stack.append((shape.properties.setdefault(name, Shape()), child))
                    shape.property_counts[name] = shape.property_counts.get(name, 0) + 1
            elif isinstance(value, list):
                shape.types.add("array")
                if shape.items is None:
                    shape.items = Shape()
                stack.extend((shape.items, element) for element in value)

    def children(self) -> Iterator[tuple[str, "Shape"]]:
        """Nested shapes with the step that leads to them."""
        for name in sorted(self.properties):
            yield name, self.properties[name]
        if self.items is not None:
            yield "[]", self.items

    def child(self, step: str) -> "Shape | None":
        if step == "[]":
            return self.items
        return self.properties.get(step)

    def required(self) -> list[str]:
        return sorted(
            name for name, count in self.property_counts.items()
            if count == self.object_count
        )


def merge_shapes(shapes: Iterable[Shape]) -> Shape:
    """Union of several shapes as a new shape."""
    merged = Shape()
    stack: list[tuple[Shape, list[Shape]]] = [(merged, list(shapes))]

    while stack:
        target, group = stack.pop()
        nested: dict[str, list[Shape]] = {}
        items: list[Shape] = []

        for shape in group:
            target.types |= shape.types
            target.formats |= shape.formats
            target.object_count += shape.object_count
            for name, count in shape.property_counts.items():
                target.property_counts[name] = target.property_counts.get(name, 0) + count
            for name, child in shape.properties.items():
                nested.setdefault(name, []).append(child)
            if shape.items is not None:
                items.append(shape.items)

        for name, members in nested.items():
            target.properties[name] = Shape()
            stack.append((target.properties[name], members))
        if items:
            target.items = Shape()
            stack.append((target.items, items))
    return merged


class SchemaInferencer:
    """
    Infers least-general JSON Schemas from sampled JSON bodies.
    Self-similar object shapes become named definitions referenced with $ref.
    """

    def __init__(
        self,
        config: Settings | None = None,
        ref_prefix: str = "#/components/schemas/"
    ):
        """
        Initialize inferencer.

        Args:
            config: Settings override (uses global settings if not provided)
            ref_prefix: Prefix of generated $ref values
        """
        self.config = config or default_settings
        self.ref_prefix = ref_prefix

    # =========================================================================
    # Cluster Sampling
    # =========================================================================

    def infer_responses(
        self,
        cluster: EndpointCluster
    ) -> tuple[InferredSchema | None, list[DiscoveryWarning]]:
        """
        Infer the success response schema of an endpoint.

        Args:
            cluster: Frozen endpoint cluster

        Returns:
            Schema (None if no JSON body was sampled) and warnings
        """
        exchanges = [e for e in cluster.exchanges if e.is_success]
        prefix = schema_name_prefix(cluster.template.method, cluster.template.path) + "Response"
        return self._infer_cluster(
            cluster,
            exchanges,
            lambda e: (e.response_body, e.response_header("content-type")),
            prefix,
        )

    def infer_requests(
        self,
        cluster: EndpointCluster
    ) -> tuple[InferredSchema | None, list[DiscoveryWarning]]:
        """
        Infer the JSON request body schema of an endpoint.

        Args:
            cluster: Frozen endpoint cluster

        Returns:
            Schema (None if no JSON body was sampled) and warnings
        """
        prefix = schema_name_prefix(cluster.template.method, cluster.template.path) + "Request"
        return self._infer_cluster(
            cluster,
            list(cluster.exchanges),
            lambda e: (e.request_body, e.request_header("content-type")),
            prefix,
        )

    def _infer_cluster(
        self,
        cluster: EndpointCluster,
        exchanges: list[Exchange],
        body_of,
        prefix: str
    ) -> tuple[InferredSchema | None, list[DiscoveryWarning]]:
        warnings: list[DiscoveryWarning] = []
        samples: list[Any] = []
        skipped = 0

        for exchange in exchanges:
            if len(samples) >= self.config.max_schema_samples:
                break
            body, content_type = body_of(exchange)
            if not _is_json_candidate(body, content_type):
                continue
            try:
                samples.append(_parse(body))
            except ValueError as e:
                skipped += 1
                message = f"unparseable JSON body skipped: {e}"
                logger.warning("%s (%s)", message, exchange.id)
                warnings.append(DiscoveryWarning(
                    kind=WarningKind.MALFORMED_EXCHANGE,
                    message=message,
                    endpoint=cluster.template.endpoint_key,
                    exchange_id=exchange.id,
                ))

        if not samples:
            return None, warnings

        schema, conflicts = self.infer_samples(samples, prefix)
        schema = schema.model_copy(update={"skipped_count": skipped})
        for path in conflicts:
            warnings.append(DiscoveryWarning(
                kind=WarningKind.SCHEMA_CONFLICT,
                message=f"irreconcilable types at {path}, emitted as a union",
                endpoint=cluster.template.endpoint_key,
            ))
        for path in schema.truncated_paths:
            message = f"nesting deeper than {MAX_RENDER_DEPTH} levels at {path} left unconstrained"
            logger.warning(message)
            warnings.append(DiscoveryWarning(
                kind=WarningKind.SCHEMA_CONFLICT,
                message=message,
                endpoint=cluster.template.endpoint_key,
            ))
        return schema, warnings

    # =========================================================================
    # Inference
    # =========================================================================

    def infer_schema(self, data: Any) -> dict[str, Any]:
        """
        Public method to infer schema from a single value.

        Args:
            data: Data to analyze (dict, list, or primitive)

        Returns:
            Inferred JSON schema with definitions inlined under $defs
        """
        inferencer = SchemaInferencer(self.config, ref_prefix="#/$defs/")
        schema, _ = inferencer.infer_samples([data], "Schema")
        result = dict(schema.root)
        if schema.definitions:
            result["$defs"] = schema.definitions
        return result

    def infer_samples(
        self,
        samples: list[Any],
        name_prefix: str
    ) -> tuple[InferredSchema, list[str]]:
        """
        Merge parsed samples into one schema.

        Args:
            samples: Decoded JSON values
            name_prefix: Prefix for definition names

        Returns:
            Inferred schema and the locations of type conflicts
        """
        root = Shape()
        for sample in samples:
            root.observe(sample)

        renderer = _Renderer(root, name_prefix, self.ref_prefix)
        rendered = renderer.render_root()
        return (
            InferredSchema(
                root=rendered,
                definitions=renderer.definitions,
                sample_count=len(samples),
                truncated_paths=renderer.truncated,
            ),
            renderer.conflicts,
        )


class _Renderer:
    """Turns a shape tree into JSON Schema with hoisted definitions."""

    def __init__(self, root: Shape, prefix: str, ref_prefix: str):
        self.root = root
        self.prefix = prefix
        self.ref_prefix = ref_prefix
        self.definitions: dict[str, dict[str, Any]] = {}
        self.conflicts: list[str] = []
        self.truncated: list[str] = []

        self.names: dict[frozenset[str], str] = {}
        self.ref_nodes: dict[int, frozenset[str]] = {}
        self._plan()

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def _plan(self) -> None:
        occurrences: dict[frozenset[str], list[tuple[int, str, Shape]]] = {}
        stack: list[tuple[Shape, int, str]] = [(self.root, 0, "")]
        while stack:
            node, depth, hint = stack.pop()
            if node.is_object and node.properties:
                occurrences.setdefault(node.key, []).append((depth, hint, node))
            for step, child in node.children():
                child_hint = hint if step == "[]" else step
                stack.append((child, depth + 1, child_hint))

        hoisted = {
            key: found for key, found in occurrences.items()
            if len({depth for depth, _, _ in found}) >= 2
        }

        used: set[str] = set()
        ordered = sorted(
            hoisted.items(),
            key=lambda kv: (min(d for d, _, _ in kv[1]), sorted(kv[0]))
        )
        for key, found in ordered:
            _, hint, _ = min(found, key=lambda item: (item[0], item[1]))
            base = self.prefix + pascal_case(singular(hint)) if hint else self.prefix
            name = base
            suffix = 2
            while name in used:
                name = f"{base}{suffix}"
                suffix += 1
            used.add(name)
            self.names[key] = name
            for _, _, node in found:
                self.ref_nodes[id(node)] = key

        # Smaller shapes in the slot a definition recurses through belong to it
        members: dict[frozenset[str], list[Shape]] = {
            key: [node for _, _, node in found] for key, found in hoisted.items()
        }
        for key, nodes in members.items():
            recursive_steps = {
                step
                for node in nodes
                for step, child in node.children()
                if self.ref_nodes.get(id(child)) == key
            }
            absorbed: list[Shape] = []
            for node in nodes:
                for step in recursive_steps:
                    child = node.child(step)
                    if (
                        child is not None
                        and child.is_object
                        and id(child) not in self.ref_nodes
                        and child.key <= key
                    ):
                        self.ref_nodes[id(child)] = key
                        absorbed.append(child)
            nodes.extend(absorbed)

        self._members = members

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def render_root(self) -> dict[str, Any]:
        schema = self._render(self.root, "$", original=True)
        for key in sorted(self._members, key=lambda k: self.names[k]):
            merged = merge_shapes(self._members[key])
            self.definitions[self.names[key]] = self._object(merged, self.names[key], original=False)
        return schema

    def _ref_key(self, node: Shape, original: bool) -> frozenset[str] | None:
        if original:
            return self.ref_nodes.get(id(node))
        # Merged definition bodies refer back by shape
        if node.is_object and node.key in self.names:
            return node.key
        return None

    def _render(self, node: Shape, path: str, original: bool, depth: int = 0) -> dict[str, Any]:
        if depth > MAX_RENDER_DEPTH:
            self.truncated.append(path)
            return {}

        scalars = {t for t in node.types if t in SCALAR_TYPES}
        if "string" in scalars:
            scalars -= {"integer", "number"}
        if {"integer", "number"} <= scalars:
            scalars.discard("integer")
        structural = [t for t in ("object", "array") if t in node.types]
        nullable = "null" in node.types

        variants: list[dict[str, Any]] = []
        for kind in structural:
            if kind == "object":
                ref_key = self._ref_key(node, original)
                if ref_key is not None:
                    variants.append({"$ref": self.ref_prefix + self.names[ref_key]})
                else:
                    variants.append(self._object(node, path, original, depth))
            else:
                items = self._render(node.items, path + "[]", original, depth + 1) if node.items else {}
                variants.append({"type": "array", "items": items})

        if scalars:
            scalar_schema: dict[str, Any] = {
                "type": sorted(scalars)[0] if len(scalars) == 1 else sorted(scalars)
            }
            if scalars == {"string"} and len(node.formats) == 1:
                string_format = next(iter(node.formats))
                if string_format:
                    scalar_schema["format"] = string_format
            variants.append(scalar_schema)

        if not variants:
            return {"type": "null"} if nullable else {}

        if len(variants) > 1:
            self.conflicts.append(path)
            if nullable:
                variants.append({"type": "null"})
            return {"anyOf": variants}

        schema = variants[0]
        if nullable:
            if "$ref" in schema:
                return {"anyOf": [schema, {"type": "null"}]}
            current = schema["type"]
            schema["type"] = (current if isinstance(current, list) else [current]) + ["null"]
        return schema

    def _object(self, node: Shape, path: str, original: bool, depth: int = 0) -> dict[str, Any]:
        schema: dict[str, Any] = {
            "type": "object",
            "properties": {
                name: self._render(node.properties[name], f"{path}.{name}", original, depth + 1)
                for name in sorted(node.properties)
            },
        }
        required = node.required()
        if required:
            schema["required"] = required
        return schema


def _is_json_candidate(body: str | None, content_type: str | None) -> bool:
    if not body or not body.strip():
        return False
    if content_type and "json" in content_type.lower():
        return True
    return body.lstrip()[:1] in ("{", "[")


def _parse(body: str) -> Any:
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise ValueError(str(e)) from e
    except RecursionError as e:
        raise ValueError("nested too deeply to decode") from e
