"""Shared helpers for route handlers."""

from fastapi import HTTPException, Request

from ..exceptions import ConfigError, InvalidStateError, RalphError, SessionNotFoundError
from ..session_manager import SessionManager


def get_manager(request: Request) -> SessionManager:
    """Get the SessionManager from app state."""
    return request.app.state.manager


def http_error(error: RalphError) -> HTTPException:
    """Map a domain error to its HTTP status."""
    if isinstance(error, SessionNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConfigError):
        return HTTPException(status_code=400, detail={"kind": error.kind.value, "message": str(error)})
    if isinstance(error, InvalidStateError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
