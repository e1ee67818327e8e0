"""Session endpoints: create, inspect and control supervised sessions."""

from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ...exceptions import RalphError
from ...models import ActivityEntry, ContextHealth, Prd, Session
from ..dependencies import get_manager, http_error

router = APIRouter()


class CreateSessionRequest(BaseModel):
    """Request body for creating a session."""
    project_path: str = Field(..., description="Path to a git repository")
    config: Optional[dict[str, Any]] = Field(
        default=None,
        description="SessionConfig fields; defaults are used for anything omitted"
    )


class SessionSummary(BaseModel):
    """Compact session view for listings."""
    id: str
    project_path: str
    state: str
    status: str
    current_iteration: int
    iteration_tokens: int
    lifetime_tokens: int
    context_health: ContextHealth
    context_percentage: float
    stories_total: int
    stories_passing: int


class SessionListResponse(BaseModel):
    """List of sessions."""
    sessions: list[SessionSummary]
    total: int


class ActivityResponse(BaseModel):
    """Recent activity entries for a session."""
    entries: list[ActivityEntry]
    total: int


class BranchInfo(BaseModel):
    name: str
    is_current: bool


class GitInfoResponse(BaseModel):
    """Git state of a session's project."""
    branch: str
    has_changes: bool
    staged_files: list[str]
    modified_files: list[str]
    untracked_files: list[str]
    last_commit_hash: Optional[str] = None
    last_commit_message: Optional[str] = None
    branches: list[BranchInfo]


class DeleteResponse(BaseModel):
    """Result of evicting a session."""
    success: bool
    message: str


def summarize(session: Session) -> SessionSummary:
    usage = session.token_usage
    stories = session.prd.stories if session.prd else []
    return SessionSummary(
        id=session.id,
        project_path=session.project_path,
        state=session.status.state.value,
        status=str(session.status),
        current_iteration=session.current_iteration,
        iteration_tokens=usage.iteration_tokens,
        lifetime_tokens=usage.lifetime_tokens,
        context_health=usage.health(session.config.warn_threshold, session.config.rotate_threshold),
        context_percentage=usage.percentage(session.config.rotate_threshold),
        stories_total=len(stories),
        stories_passing=sum(1 for s in stories if s.passes),
    )


@router.post("/sessions", response_model=Session, status_code=201)
async def create_session(request: Request, body: CreateSessionRequest) -> Session:
    """Register a new idle session for a project."""
    try:
        return await get_manager(request).create_session(body.project_path, body.config)
    except RalphError as e:
        raise http_error(e) from e


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request) -> SessionListResponse:
    """List all registered sessions, oldest first."""
    sessions = get_manager(request).list_sessions()
    return SessionListResponse(
        sessions=[summarize(s) for s in sessions],
        total=len(sessions),
    )


@router.get("/sessions/{session_id}", response_model=Session)
async def get_session(request: Request, session_id: str) -> Session:
    """Get a full session snapshot."""
    try:
        return get_manager(request).get_session(session_id)
    except RalphError as e:
        raise http_error(e) from e


@router.put("/sessions/{session_id}/prd", response_model=Session)
async def set_prd(request: Request, session_id: str, prd: Prd) -> Session:
    """Replace the session's PRD (not while running)."""
    try:
        return await get_manager(request).set_prd(session_id, prd)
    except RalphError as e:
        raise http_error(e) from e


@router.post("/sessions/{session_id}/start", response_model=Session)
async def start_session(request: Request, session_id: str) -> Session:
    """Start or resume the session's loop."""
    try:
        return await get_manager(request).start_session(session_id)
    except RalphError as e:
        raise http_error(e) from e


@router.post("/sessions/{session_id}/pause", response_model=Session)
async def pause_session(request: Request, session_id: str) -> Session:
    """Request a pause. The loop stops after terminating the agent."""
    try:
        return await get_manager(request).pause_session(session_id)
    except RalphError as e:
        raise http_error(e) from e


@router.post("/sessions/{session_id}/stop", response_model=Session)
async def stop_session(request: Request, session_id: str) -> Session:
    """Request a stop. The session ends as failed ("stopped by user")."""
    try:
        return await get_manager(request).stop_session(session_id)
    except RalphError as e:
        raise http_error(e) from e


@router.post("/sessions/{session_id}/reset", response_model=Session)
async def reset_session(request: Request, session_id: str) -> Session:
    """Clear a gutter halt so the session can be started again."""
    try:
        return await get_manager(request).reset_session(session_id)
    except RalphError as e:
        raise http_error(e) from e


@router.get("/sessions/{session_id}/activity", response_model=ActivityResponse)
async def get_activity(request: Request, session_id: str, limit: int = 100) -> ActivityResponse:
    """Most recent entries of the project's activity log for this session."""
    if limit < 0:
        raise HTTPException(status_code=400, detail="limit must be >= 0")
    try:
        entries = await get_manager(request).read_activity(session_id, limit)
    except RalphError as e:
        raise http_error(e) from e
    return ActivityResponse(entries=entries, total=len(entries))


@router.delete("/sessions/{session_id}", response_model=DeleteResponse)
async def delete_session(request: Request, session_id: str) -> DeleteResponse:
    """Evict a finished session from the registry."""
    try:
        get_manager(request).evict_session(session_id)
    except RalphError as e:
        raise http_error(e) from e
    return DeleteResponse(success=True, message=f"Session {session_id} evicted")


@router.get("/sessions/{session_id}/git", response_model=GitInfoResponse)
async def get_git_info(request: Request, session_id: str) -> GitInfoResponse:
    """Working tree status and local branches of the project."""
    try:
        status, branches = await get_manager(request).git_info(session_id)
    except RalphError as e:
        raise http_error(e) from e
    return GitInfoResponse(
        **asdict(status),
        branches=[BranchInfo(name=b.name, is_current=b.is_current) for b in branches],
    )
