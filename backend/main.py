"""FastAPI main application: the drift monitor as an HTTP service for chat hosts."""
import logging
import time as _time
from collections import defaultdict as _defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api import chats as chats_api
from backend.app.config import DEFAULT_DB_PATH, DEFAULT_EXPORT_DIR, DriftSettings, load_settings
from backend.app.constants import APP_NAME, APP_VERSION
from backend.app.core.analysis import Analyzer
from backend.app.core.controller import DriftService
from backend.app.core.error_handling import create_error_response, error_code, log_error_with_context
from backend.app.core.llm_provider import create_backend
from backend.app.core.store import SqliteChatMetadataStore, SqliteSettingsStore
from backend.app.prompts.registry import prompt_registry_snapshot
from shared.runtime_settings import SecuritySettings, load_security_settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_RATE_LIMIT_WINDOW = 60  # seconds
_RATE_LIMIT_MAX = 10     # max scoring requests per minute per IP


def build_service(settings: DriftSettings, db_path: str | None = None) -> DriftService:
    """Wire the analysis backend and the SQLite stores into a DriftService."""
    path = db_path or DEFAULT_DB_PATH
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    return DriftService(
        settings,
        Analyzer(create_backend(settings)),
        SqliteChatMetadataStore(path),
        SqliteSettingsStore(path),
    )


def _collect_environment_diagnostics(app: FastAPI) -> dict:
    """Collect structured environment diagnostics for /health/detail."""
    service: DriftService = app.state.service
    checks: dict[str, dict] = {}

    db_path = Path(getattr(service.metadata_store, "db_path", DEFAULT_DB_PATH))
    checks["database"] = {"ok": db_path.parent.exists(), "path": str(db_path)}

    export_dir = Path(app.state.export_dir)
    checks["export_dir"] = {"ok": export_dir.exists() or export_dir.parent.exists(), "path": str(export_dir)}

    try:
        prompts = prompt_registry_snapshot()
        checks["prompts"] = {"ok": True, "versions": prompts}
    except (OSError, KeyError) as e:
        checks["prompts"] = {"ok": False, "error": str(e)}

    backend = service.analyzer.backend
    checks["analysis_backend"] = {
        "ok": service.analyzer.available is not False,
        "name": backend.name,
        "cached_health": service.analyzer.available,
    }

    overall_ok = all(v.get("ok", False) for v in checks.values())
    return {"ok": overall_ok, "checks": checks}


def _node_for_path(path: str) -> str:
    if "/score" in path or "/events" in path:
        return "scoring"
    if "/calibrate" in path or "/dimensions" in path:
        return "calibration"
    if "/report" in path:
        return "report"
    if "/state" in path or "/injections" in path:
        return "state"
    return "api"


def _extract_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "").strip()
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return request.headers.get("X-API-Key", "").strip()


def create_app(
    settings: Optional[DriftSettings] = None,
    service: Optional[DriftService] = None,
    security: Optional[SecuritySettings] = None,
    export_dir: str | None = None,
) -> FastAPI:
    """Build the API. Tests pass their own service (fake backend, in-memory stores)."""
    security = security or load_security_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        problems = security.startup_problems()
        if problems:
            raise RuntimeError(" ".join(problems))
        if service is None:
            app.state.service = build_service(settings or load_settings())
        logger.info(
            "API startup complete (dev_mode=%s, auth=%s, backend=%s)",
            security.dev_mode,
            "enabled" if security.auth_enabled else "disabled",
            app.state.service.analyzer.backend.name,
        )
        try:
            yield
        finally:
            await app.state.service.aclose()

    app = FastAPI(title=f"{APP_NAME} API", version=APP_VERSION, lifespan=lifespan)
    app.state.service = service
    app.state.hosts = {}
    app.state.export_dir = export_dir or DEFAULT_EXPORT_DIR
    app.state.rate_limits = _defaultdict(list)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=security.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        if request.method.upper() == "OPTIONS":
            return await call_next(request)
        if not security.auth_enabled:
            return await call_next(request)
        path = request.url.path or ""
        if path in ("/", "/health"):
            return await call_next(request)
        if security.dev_mode and (path.startswith("/docs") or path.startswith("/redoc") or path.startswith("/openapi")):
            return await call_next(request)

        provided = _extract_token(request)
        if provided != security.api_token:
            error_response = create_error_response(
                error_code=error_code("auth", 401),
                message="Unauthorized",
                node="api",
                details={"path": path},
            )
            return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content=error_response)
        return await call_next(request)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """Simple per-IP rate limiting for the scoring endpoints."""
        path = request.url.path or ""
        if not path.endswith("/score"):
            return await call_next(request)
        limits: dict[str, list[float]] = app.state.rate_limits
        client_ip = request.client.host if request.client else "unknown"
        now = _time.monotonic()
        limits[client_ip] = [t for t in limits[client_ip] if now - t < _RATE_LIMIT_WINDOW]
        if len(limits[client_ip]) >= _RATE_LIMIT_MAX:
            return JSONResponse(
                status_code=429,
                content={
                    "error": f"Rate limit exceeded. Max {_RATE_LIMIT_MAX} scoring requests per minute.",
                    "error_code": "RATE_LIMIT",
                },
            )
        limits[client_ip].append(now)
        return await call_next(request)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTPExceptions with structured error responses."""
        node = _node_for_path(request.url.path)
        error_response = create_error_response(
            error_code=error_code(node, exc.status_code),
            message=exc.detail,
            node=node,
            details={
                "status_code": exc.status_code,
                "path": request.url.path,
            },
        )
        return JSONResponse(status_code=exc.status_code, content=error_response)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler: return structured error responses with logging."""
        chat_id = None
        if hasattr(request, "path_params") and "chat_id" in request.path_params:
            chat_id = request.path_params.get("chat_id")
        node = _node_for_path(request.url.path)

        log_error_with_context(
            error=exc,
            stage=node,
            chat_id=chat_id,
            extra_context={
                "method": request.method,
                "path": request.url.path,
                "query_params": dict(request.query_params),
            },
        )

        message = f"An error occurred: {type(exc).__name__}"
        if str(exc):
            message = str(exc)
        error_response = create_error_response(
            error_code=error_code(node, "ERROR"),
            message=message,
            node=node,
            details={
                "exception_type": type(exc).__name__,
                "path": request.url.path,
            },
        )
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error_response)

    app.include_router(chats_api.router)

    @app.get("/")
    async def root():
        return {"message": f"{APP_NAME} API", "version": APP_VERSION}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.get("/health/detail")
    async def health_detail():
        """Structured readiness diagnostics for deployment checks."""
        diag = _collect_environment_diagnostics(app)
        return {"status": "healthy" if diag.get("ok") else "degraded", **diag}

    @app.post("/health/backend")
    async def health_backend() -> dict[str, Any]:
        """Probe the analysis backend now (bypasses the health cache)."""
        return await app.state.service.analyzer.test_connection()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
