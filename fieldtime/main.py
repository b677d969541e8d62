import os

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import inspect

from .config import settings
from .db import Base, engine
from .errors import FieldTimeError
from .logging import setup_logging, RequestIdMiddleware
from .routes.jobs import router as jobs_router
from .routes.notifications import router as notifications_router
from .routes.pay_rates import router as pay_rates_router
from .routes.time_entries import router as time_entries_router

logger = structlog.get_logger(__name__)


async def field_time_error_handler(request: Request, exc: FieldTimeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(FieldTimeError, field_time_error_handler)

    # Routers
    app.include_router(jobs_router)
    app.include_router(time_entries_router)
    app.include_router(pay_rates_router)
    app.include_router(notifications_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "environment": settings.environment}

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            existing_tables = set(inspect(engine).get_table_names())
            missing = set(Base.metadata.tables.keys()) - existing_tables
            if missing:
                logger.info("startup_create_tables", missing=sorted(missing))
                Base.metadata.create_all(bind=engine)
        logger.info("startup_complete", app=settings.app_name, environment=settings.environment)

    return app


app = create_app()
