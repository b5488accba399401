import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .core.config import Settings, settings as default_settings
from .core.errors import ConnectorError
from .core.logging import set_request_id, setup_logging
from .db.models import Base
from .db.session import make_engine, make_session_factory
from .routers import auth as auth_router
from .routers import health
from .routers import websites as websites_router
from .security.service_identity import ServiceIdentityVerifier
from .services.connections import ConnectionStore
from .services.crypto import TokenCipher
from .services.executor import CallExecutor
from .services.google_oauth import GoogleOAuthClient
from .services.grants import GrantManager
from .services.retry import RetryPolicy

log = logging.getLogger("app")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        set_request_id(rid)
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = int((time.perf_counter() - start) * 1000)
        client = request.client.host if request.client else "-"
        logging.getLogger("app.request").info(
            f"{client} {request.method} {request.url.path} {response.status_code} {dur_ms}ms",
            extra={"method": request.method, "path": str(request.url.path), "status": response.status_code, "dur_ms": dur_ms},
        )
        response.headers["X-Request-ID"] = rid
        return response


async def connector_error_handler(request: Request, exc: ConnectorError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(p) for p in e.get('loc', ()) if p != 'body')}: {e.get('msg')}"
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "BAD_REQUEST", "message": "; ".join(problems)})


async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("unhandled error", extra={"path": str(request.url.path)})
    return JSONResponse(status_code=500, content={"error": "INTERNAL_ERROR", "message": "internal server error"})


def create_app(
    settings: Optional[Settings] = None,
    *,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> FastAPI:
    """
    Build the service from an explicit settings object. Every collaborator gets its
    configuration here; nothing below reads the environment on its own.
    """
    settings = settings or default_settings

    engine = make_engine(settings.DATABASE_URL)
    store = ConnectionStore(TokenCipher(settings.ENCRYPTION_KEY))
    oauth = GoogleOAuthClient(settings, transport=http_transport)
    grants = GrantManager(settings, store, oauth)
    executor = CallExecutor(settings, grants, policy=retry_policy, transport=http_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=engine)
        yield
        engine.dispose()

    app = FastAPI(title="Google Analytics Connector", version="1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.verifier = ServiceIdentityVerifier(settings.SERVICE_SHARED_SECRET)
    app.state.grant_manager = grants
    app.state.executor = executor

    if settings.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(ConnectorError, connector_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(health.router)
    app.include_router(auth_router.router)
    app.include_router(websites_router.router)

    if not settings.SERVICE_SHARED_SECRET:
        log.warning("SERVICE_SHARED_SECRET is empty; every /api request will be rejected")
    return app


def build_default_app() -> FastAPI:
    setup_logging(default_settings.LOG_DIR, default_settings.LOG_LEVEL)
    return create_app(default_settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:build_default_app", factory=True, host="0.0.0.0", port=8000, reload=True)
