"""
Log Pulse - API Routes
======================

FastAPI endpoints for live tails, error groups and import sessions.

Engine components live on ``app.state`` (see main.lifespan). Store-backed
read endpoints are plain functions so FastAPI runs them in its threadpool;
tail and import endpoints are async because they drive asyncio work.
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Query, Request

from shared.constants import ErrorStatus
from shared.utils.logging import get_logger
from logpulse.config import get_settings
from logpulse.api.schemas import (
    EntryPage,
    ErrorGroup,
    ErrorGroupStats,
    FilePathRequest,
    IndexStats,
    Session,
    SessionStats,
    Spike,
    StartTailRequest,
    StatusUpdateRequest,
    TagRequest,
    TailEvent,
    TailStatus,
)

logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(tags=["log-pulse"])


# =============================================================================
# LIVE TAILS
# =============================================================================

@router.post("/tails/{source_id}", response_model=TailStatus, status_code=201)
async def start_tail(source_id: str, body: StartTailRequest, request: Request):
    """
    Start tailing a file for a source.

    Replaces any tail already running for the source. A file that does not
    exist yet is not an error here; it shows up as an error event and is
    picked up once created.
    """
    manager = request.app.state.tail_manager
    return await manager.start_tail(source_id, body.path, backfill=body.backfill)


@router.delete("/tails/{source_id}", status_code=204)
async def stop_tail(source_id: str, request: Request):
    """Stop the tail for a source."""
    stopped = await request.app.state.tail_manager.stop_tail(source_id)
    if not stopped:
        raise HTTPException(status_code=404, detail=f"No tail running for source {source_id}")


@router.get("/tails", response_model=list[TailStatus])
async def list_tails(request: Request):
    """List running tails."""
    return request.app.state.tail_manager.list_tails()


@router.get("/tails/{source_id}/events", response_model=list[TailEvent])
async def tail_events(
    source_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000)
):
    """Recent events of a source's tail, oldest first."""
    manager = request.app.state.tail_manager
    if manager.get_tailer(source_id) is None:
        raise HTTPException(status_code=404, detail=f"No tail running for source {source_id}")
    return manager.recent_events(source_id, limit=limit)


# =============================================================================
# ERROR GROUPS
# =============================================================================

@router.get("/sources/{source_id}/errors", response_model=list[ErrorGroup])
def list_error_groups(
    source_id: str,
    request: Request,
    status: Optional[ErrorStatus] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0)
):
    """List a source's error groups, most recently seen first."""
    return request.app.state.error_store.list_groups(
        source_id, status=status, limit=limit, offset=offset
    )


@router.get("/sources/{source_id}/errors/stats", response_model=ErrorGroupStats)
def error_group_stats(source_id: str, request: Request):
    """Group and occurrence totals for a source."""
    return request.app.state.error_store.stats(source_id)


@router.get("/sources/{source_id}/errors/spikes", response_model=list[Spike])
def error_spikes(
    source_id: str,
    request: Request,
    threshold: Optional[float] = Query(default=None, gt=0)
):
    """Errors whose last hour exceeds the previous hour by ``threshold`` times."""
    multiplier = threshold or settings.spike_threshold_multiplier
    return request.app.state.error_store.detect_spikes(source_id, threshold_multiplier=multiplier)


@router.post("/sources/{source_id}/index", response_model=IndexStats)
async def index_file(source_id: str, body: FilePathRequest, request: Request):
    """Index every error in a complete file into the source's groups."""
    return await request.app.state.importer.index_file(source_id, body.path)


@router.get("/errors/{group_id}", response_model=ErrorGroup)
def get_error_group(group_id: int, request: Request):
    return request.app.state.error_store.get_group(group_id)


@router.patch("/errors/{group_id}/status", response_model=ErrorGroup)
def set_error_group_status(group_id: int, body: StatusUpdateRequest, request: Request):
    """Mark a group open or resolved."""
    return request.app.state.error_store.set_status(group_id, body.status)


@router.post("/errors/{group_id}/tags", response_model=ErrorGroup)
def add_error_group_tag(group_id: int, body: TagRequest, request: Request):
    return request.app.state.error_store.add_tag(group_id, body.tag.strip())


# =============================================================================
# IMPORT SESSIONS
# =============================================================================

@router.post("/sessions/import", response_model=Session, status_code=201)
async def import_file(body: FilePathRequest, request: Request):
    """
    Import a complete log file into a new session.

    On failure the response reports the session id and how many entries
    were written before it; those entries remain queryable.
    """
    session = await request.app.state.importer.import_file(body.path)
    logger.info(
        f"Session {session.id} imported",
        extra={"session_id": session.id, "total_entries": session.total_entries}
    )
    return session


@router.get("/sessions", response_model=list[Session])
def list_sessions(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0)
):
    return request.app.state.session_store.list_sessions(limit=limit, offset=offset)


@router.get("/sessions/{session_id}", response_model=Session)
def get_session(session_id: int, request: Request):
    return request.app.state.session_store.get_session(session_id)


@router.get("/sessions/{session_id}/stats", response_model=SessionStats)
def get_session_stats(session_id: int, request: Request):
    """Entry counts per level bucket."""
    return request.app.state.session_store.get_session_stats(session_id)


@router.get("/sessions/{session_id}/entries", response_model=EntryPage)
def get_session_entries(
    session_id: int,
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=1000),
    level: Optional[str] = Query(default=None, description="Bucket (errors, warnings, info, debug) or exact level"),
    search: Optional[str] = Query(default=None, description="Case-insensitive text search")
):
    """Page through a session's entries in file order."""
    return request.app.state.session_store.get_entries(
        session_id, page=page, limit=limit, level=level, search=search
    )
