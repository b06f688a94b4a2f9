"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from session_guard import __version__
from session_guard.config import settings
from session_guard.database import create_db_and_tables, engine
from session_guard.engine.runtime import Runtime
from session_guard.errors import (
    ActiveSessionExists,
    InsufficientData,
    InvalidTransition,
    PayloadValidationError,
    SessionGuardError,
    SessionNotFound,
    SessionRuleViolation,
    TransientStoreError,
)
from session_guard.utils.logging import setup_logging
from session_guard.api import analytics, sessions, system

ERROR_STATUS: dict[type[SessionGuardError], int] = {
    SessionNotFound: 404,
    InvalidTransition: 409,
    ActiveSessionExists: 409,
    InsufficientData: 422,
    PayloadValidationError: 400,
    SessionRuleViolation: 400,
    TransientStoreError: 503,
}


async def session_guard_error_handler(request: Request, exc: SessionGuardError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        500,
    )
    content = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InsufficientData):
        content["sample_size"] = exc.sample_size
        content["required"] = exc.required
    return JSONResponse(status_code=status_code, content=content)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the app; pass a prebuilt runtime to skip database setup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        setup_logging()
        if getattr(app.state, "runtime", None) is None:
            create_db_and_tables()
            app.state.runtime = Runtime(engine, settings)
        await app.state.runtime.start()

        yield

        await app.state.runtime.stop()

    app = FastAPI(
        title="Session Guard",
        description="Time-boxed, loss-limited trading sessions with autonomous termination",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(SessionGuardError, session_guard_error_handler)

    # Mount routers
    app.include_router(sessions.router)
    app.include_router(analytics.router)
    app.include_router(system.router)
    return app


app = create_app()
