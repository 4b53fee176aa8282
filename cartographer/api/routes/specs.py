"""
Specs API - Read stored spec versions and changelogs.
"""

from typing import Any, Literal
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response

from ...core.models import ApiSpecVersion
from ...memory.spec_store import SpecStore
from ...spec.openapi_builder import dump_spec


router = APIRouter()

MEDIA_TYPES = {
    "json": "application/json",
    "yaml": "application/yaml",
}


def _store(req: Request) -> SpecStore:
    store = getattr(req.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=500, detail="Spec store not initialized")
    return store


def _render(spec: ApiSpecVersion, fmt: str) -> Response:
    return PlainTextResponse(dump_spec(spec, fmt), media_type=MEDIA_TYPES[fmt])


@router.get("/", response_model=list[str])
async def list_targets(req: Request) -> list[str]:
    """Targets with at least one stored spec."""
    return await _store(req).list_targets()


@router.get("/{target}/versions", response_model=list[dict])
async def list_versions(target: str, req: Request) -> list[dict[str, Any]]:
    """Stored versions of a target, oldest first."""
    versions = await _store(req).list_versions(target)
    if not versions:
        raise HTTPException(status_code=404, detail="No spec stored for target")
    return versions


@router.get("/{target}/latest")
async def get_latest(
    target: str,
    req: Request,
    format: Literal["json", "yaml"] | None = None
) -> Response:
    """
    Latest spec of a target as OpenAPI JSON or YAML.

    Args:
        target: Target name
        format: Output format (defaults to the configured spec format)
    """
    spec = await _store(req).latest(target)
    if spec is None:
        raise HTTPException(status_code=404, detail="No spec stored for target")
    return _render(spec, format or req.app.state.config.spec_format)


@router.get("/{target}/{version}")
async def get_version(
    target: str,
    version: str,
    req: Request,
    format: Literal["json", "yaml"] | None = None
) -> Response:
    """A specific spec version as OpenAPI JSON or YAML."""
    spec = await _store(req).get(target, version)
    if spec is None:
        raise HTTPException(status_code=404, detail="Spec version not found")
    return _render(spec, format or req.app.state.config.spec_format)


@router.get("/{target}/{version}/changelog", response_model=dict)
async def get_changelog(target: str, version: str, req: Request) -> dict[str, Any]:
    """Changelog stored with a spec version."""
    changelog = await _store(req).get_changelog(target, version)
    if changelog is None:
        raise HTTPException(status_code=404, detail="Changelog not found")
    return changelog.model_dump(mode="json")
