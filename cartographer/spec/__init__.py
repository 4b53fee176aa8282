"""Spec module - OpenAPI synthesis and version diffing."""

from .openapi_builder import OpenAPIBuilder, SpecSynthesizer, dump_spec, to_json, to_yaml
from .differ import SpecDiffer, flatten_schema

__all__ = [
    "OpenAPIBuilder",
    "SpecSynthesizer",
    "dump_spec",
    "to_json",
    "to_yaml",
    "SpecDiffer",
    "flatten_schema",
]
