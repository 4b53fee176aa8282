"""
Sessions API - Manage discovery sessions and feed them traffic.
"""

from typing import Any
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ...capture.filters import filter_api_calls
from ...capture.har import HarLoader
from ...core.errors import MalformedExchange, SessionAborted, SpecStoreError
from ...core.models import Exchange
from ...core.session import DiscoverySession


router = APIRouter()


class CreateSessionRequest(BaseModel):
    """Request to create a new session."""
    target: str = Field(..., min_length=1, description="Name of the system being discovered")


class SessionResponse(BaseModel):
    """Session response model."""
    id: str
    target: str
    created_at: str
    aborted: bool
    templates: int
    exchanges: int
    unclassified: int
    warnings: int
    last_version: str | None


class IngestRequest(BaseModel):
    """Batch of exchanges in arrival order."""
    exchanges: list[Exchange]
    only_api_calls: bool = Field(default=False, description="Drop static assets and trackers first")


class IngestResponse(BaseModel):
    """Result of feeding a batch."""
    received: int
    clustered: int
    skipped: int
    templates: int


class SynthesisResponse(BaseModel):
    """A synthesized spec version and its changelog."""
    target: str
    version: str
    fingerprint: str
    document: dict[str, Any]
    changelog: dict[str, Any]
    warnings: list[dict[str, Any]]


def _get_session(req: Request, session_id: str) -> DiscoverySession:
    session = req.app.state.sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _ingest(session: DiscoverySession, exchanges: list[Exchange], skipped: int = 0) -> IngestResponse:
    try:
        clustered = session.ingest_many(exchanges)
    except SessionAborted as e:
        raise HTTPException(status_code=409, detail=str(e))
    return IngestResponse(
        received=len(exchanges) + skipped,
        clustered=clustered,
        skipped=skipped + len(exchanges) - clustered,
        templates=len(session.builder.templates),
    )


@router.post("/", response_model=SessionResponse)
async def create_session(
    request: CreateSessionRequest,
    req: Request
) -> SessionResponse:
    """
    Create a new discovery session.

    Args:
        request: Session parameters
        req: FastAPI request (for app state)

    Returns:
        Created session info
    """
    session = DiscoverySession(
        target=request.target,
        config=req.app.state.config,
        store=req.app.state.store,
    )
    req.app.state.sessions[session.id] = session
    return SessionResponse(**session.get_summary())


@router.get("/", response_model=list[SessionResponse])
async def list_sessions(req: Request) -> list[SessionResponse]:
    """List all sessions."""
    return [
        SessionResponse(**session.get_summary())
        for session in req.app.state.sessions.values()
    ]


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, req: Request) -> SessionResponse:
    """Get session details."""
    return SessionResponse(**_get_session(req, session_id).get_summary())


@router.post("/{session_id}/exchanges", response_model=IngestResponse)
async def ingest_exchanges(
    session_id: str,
    request: IngestRequest,
    req: Request
) -> IngestResponse:
    """
    Feed captured exchanges to a session.

    Malformed exchanges do not fail the request; they are counted as skipped
    and recorded as warnings.
    """
    session = _get_session(req, session_id)
    exchanges = request.exchanges
    dropped = 0
    if request.only_api_calls:
        exchanges = filter_api_calls(exchanges)
        dropped = len(request.exchanges) - len(exchanges)
    return _ingest(session, exchanges, dropped)


@router.post("/{session_id}/har", response_model=IngestResponse)
async def ingest_har(
    session_id: str,
    har: dict[str, Any],
    req: Request,
    only_api_calls: bool = True
) -> IngestResponse:
    """Feed a HAR 1.2 document to a session."""
    session = _get_session(req, session_id)
    loader = HarLoader()
    try:
        exchanges = loader.load(har)
    except MalformedExchange as e:
        raise HTTPException(status_code=400, detail=str(e))

    dropped = len(loader.skipped)
    if only_api_calls:
        kept = filter_api_calls(exchanges)
        dropped += len(exchanges) - len(kept)
        exchanges = kept
    return _ingest(session, exchanges, dropped)


@router.get("/{session_id}/templates", response_model=list[dict])
async def list_templates(session_id: str, req: Request) -> list[dict[str, Any]]:
    """Current endpoint templates sorted by (path, method)."""
    session = _get_session(req, session_id)
    return [
        template.model_dump(mode="json")
        for template in session.templates()
    ]


@router.get("/{session_id}/warnings", response_model=list[dict])
async def list_warnings(session_id: str, req: Request) -> list[dict[str, Any]]:
    """Warnings recorded by the session."""
    session = _get_session(req, session_id)
    return [warning.model_dump(mode="json") for warning in session.warnings]


@router.post("/{session_id}/abort", response_model=SessionResponse)
async def abort_session(session_id: str, req: Request) -> SessionResponse:
    """Abort a session, discarding its templates."""
    session = _get_session(req, session_id)
    session.abort()
    return SessionResponse(**session.get_summary())


@router.post("/{session_id}/synthesize", response_model=SynthesisResponse)
async def synthesize(session_id: str, req: Request) -> SynthesisResponse:
    """
    Synthesize a spec version, diff it against the stored baseline and persist it.

    Returns:
        The new version with its changelog
    """
    session = _get_session(req, session_id)
    try:
        spec, changelog = await session.synthesize()
    except SessionAborted as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SpecStoreError as e:
        # Another session stored the same version first
        raise HTTPException(status_code=409, detail=str(e))

    return SynthesisResponse(
        target=spec.target,
        version=spec.version,
        fingerprint=spec.fingerprint,
        document=spec.document,
        changelog=changelog.model_dump(mode="json"),
        warnings=[warning.model_dump(mode="json") for warning in session.warnings],
    )


@router.delete("/{session_id}")
async def delete_session(session_id: str, req: Request) -> dict[str, str]:
    """Forget a session."""
    _get_session(req, session_id)
    del req.app.state.sessions[session_id]
    return {"status": "deleted", "id": session_id}
