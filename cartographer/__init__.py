"""
API Cartographer
================

Reverse-engineers versioned OpenAPI specifications from observed HTTP traffic.

Pipeline: Ingest → Cluster → Classify → Infer → Synthesize → Diff → Store
"""

__version__ = "0.1.0"
