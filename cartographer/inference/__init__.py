"""Inference module - URL clustering, pattern classifiers, and schema inference."""

from .url_clustering import EndpointModelBuilder
from .pagination import PaginationClassifier
from .auth import AuthClassifier, is_login_cluster
from .anti_bot import AntiBotClassifier
from .schema_merger import SchemaInferencer

__all__ = [
    "EndpointModelBuilder",
    "PaginationClassifier",
    "AuthClassifier",
    "is_login_cluster",
    "AntiBotClassifier",
    "SchemaInferencer",
]
