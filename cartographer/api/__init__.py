"""REST API for the discovery pipeline."""
