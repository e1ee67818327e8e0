"""FastAPI application exposing the session manager.

Provides REST endpoints to create and drive sessions and a WebSocket
endpoint with their live activity.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .. import __version__
from ..session_manager import SessionManager
from .routes import guardrails, sessions
from .websocket import router as websocket_router


def create_app(manager: Optional[SessionManager] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        manager: SessionManager to serve; a fresh one if omitted

    Returns:
        Configured FastAPI application
    """
    manager = manager or SessionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Pause running sessions
        await manager.shutdown()

    app = FastAPI(
        title="Ralph API",
        description="Supervisor for autonomous coding-agent sessions",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.manager = manager

    app.include_router(sessions.router, prefix="/api", tags=["sessions"])
    app.include_router(guardrails.router, prefix="/api", tags=["guardrails"])
    app.include_router(websocket_router, prefix="/ws", tags=["websocket"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Ralph API",
            "version": __version__,
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "sessions": len(manager.registry)}

    return app


def run_server(
    manager: Optional[SessionManager] = None,
    host: str = "127.0.0.1",
    port: int = 8000,
) -> None:
    """Run the API server.

    Args:
        manager: SessionManager to serve
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    uvicorn.run(create_app(manager), host=host, port=port)
