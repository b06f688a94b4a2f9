"""Shared API dependencies."""

from fastapi import Request

from session_guard.engine.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """The Runtime built by the app lifespan."""
    return request.app.state.runtime
