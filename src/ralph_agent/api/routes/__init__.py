"""API routes."""

from . import sessions, guardrails

__all__ = ["sessions", "guardrails"]
