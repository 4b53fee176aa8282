"""API route modules."""

from . import sessions, specs

__all__ = ["sessions", "specs"]
