"""FastAPI application exposing the copilot runtime over HTTP."""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from copilot import __version__
from copilot.lib.config import ServerConfig
from copilot.models.runtime_messages import HealthStatus
from copilot.services.copilot_runtime import CopilotRuntime, InvalidRequestError
from copilot.services.ensemble_orchestrator import EnsembleExhaustedError
from copilot.services.session_manager import (
    DraftNotFoundError,
    DraftResolutionError,
    SessionCapacityError,
    SessionNotFoundError,
)


logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, details: Optional[List[Dict[str, Any]]] = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        body["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def _validation_details(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {"field": ".".join(str(loc) for loc in error.get("loc", ())), "message": error.get("msg", "")}
        for error in errors
    ]


def create_app(runtime: CopilotRuntime, config: Optional[ServerConfig] = None) -> FastAPI:
    """Create the FastAPI application around a runtime.

    Args:
        runtime: Fully wired CopilotRuntime
        config: Server configuration (CORS)

    Returns:
        Configured FastAPI application
    """
    config = config or ServerConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await runtime.shutdown()

    app = FastAPI(
        title="Copilot Ensemble API",
        description="Multi-persona deliberation with autonomy governance",
        version=__version__,
        lifespan=lifespan
    )
    app.state.runtime = runtime

    if config.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"]
        )

    _register_exception_handlers(app)
    _register_routes(app, runtime)

    return app


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(InvalidRequestError)
    async def invalid_request_handler(request: Request, exc: InvalidRequestError) -> JSONResponse:
        logger.warning(f"Invalid request on {request.url.path}: {exc}")
        return _error(422, "invalid_request", str(exc), _validation_details(exc.errors))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning(f"Request validation failed on {request.url.path}")
        return _error(422, "invalid_request", "Request validation failed", _validation_details(exc.errors()))

    @app.exception_handler(SessionNotFoundError)
    async def session_not_found_handler(request: Request, exc: SessionNotFoundError) -> JSONResponse:
        return _error(404, "session_not_found", str(exc))

    @app.exception_handler(DraftNotFoundError)
    async def draft_not_found_handler(request: Request, exc: DraftNotFoundError) -> JSONResponse:
        return _error(404, "draft_not_found", str(exc))

    @app.exception_handler(DraftResolutionError)
    async def draft_resolution_handler(request: Request, exc: DraftResolutionError) -> JSONResponse:
        return _error(409, "draft_already_resolved", str(exc))

    @app.exception_handler(SessionCapacityError)
    async def capacity_handler(request: Request, exc: SessionCapacityError) -> JSONResponse:
        logger.error(f"Session capacity exhausted: {exc}")
        return _error(503, "session_capacity", str(exc))

    @app.exception_handler(EnsembleExhaustedError)
    async def ensemble_exhausted_handler(request: Request, exc: EnsembleExhaustedError) -> JSONResponse:
        logger.error(f"Ensemble exhausted on {request.url.path}: {exc}")
        return _error(503, "ensemble_exhausted", "No persona produced a response; try again shortly")


def _register_routes(app: FastAPI, runtime: CopilotRuntime) -> None:

    @app.post("/invoke")
    async def invoke(payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        response = await runtime.invoke(payload)
        return response.model_dump(mode="json")

    @app.get("/ping")
    async def ping() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/health")
    async def health() -> JSONResponse:
        report = await runtime.health()
        status_code = 503 if report.status == HealthStatus.UNHEALTHY else 200
        return JSONResponse(status_code=status_code, content=report.model_dump(mode="json"))

    @app.get("/sessions")
    async def list_sessions(
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0)
    ) -> List[Dict[str, Any]]:
        return await runtime.list_sessions(limit=limit, offset=offset)

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        session = await runtime.get_session(session_id)
        return session.model_dump(mode="json")

    @app.post("/sessions/{session_id}/drafts/{draft_id}/confirm")
    async def confirm_draft(session_id: str, draft_id: str) -> Dict[str, Any]:
        record = await runtime.confirm_draft(session_id, draft_id)
        return record.model_dump(mode="json")

    @app.post("/sessions/{session_id}/drafts/{draft_id}/reject")
    async def reject_draft(session_id: str, draft_id: str) -> Dict[str, Any]:
        draft = await runtime.reject_draft(session_id, draft_id)
        return draft.model_dump(mode="json")

    @app.get("/capabilities/{autonomy_mode}")
    async def capabilities(autonomy_mode: str, is_background: bool = False) -> Dict[str, Any]:
        return runtime.describe_capabilities(autonomy_mode, is_background=is_background)
