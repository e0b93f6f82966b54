import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from propstudio.core.config import get_settings
from propstudio.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from propstudio.core.logging import bind_request_id, configure_logging, get_logger
from propstudio.routers import credits, generate, jobs
from propstudio.services.container import build_services
from propstudio.services.dispatch import ArqDispatcher, InlineDispatcher

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="PropStudio Generation API",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        bind_request_id(request_id)
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        log.info(
            "request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(AppError, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Routers
    app.include_router(generate.router, prefix="/v1/generate", tags=["generate"])
    app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
    app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])

    @app.on_event("startup")
    async def startup():
        if settings.sentry_dsn:
            import sentry_sdk
            sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
            log.info("startup", msg="Sentry enabled")
        if getattr(app.state, "services", None) is None:
            if settings.store_backend == "mongo":
                from propstudio.db.init import init_db
                await init_db()
                log.info("startup", msg="DB connected")
            app.state.services = build_services(settings)
        if getattr(app.state, "dispatcher", None) is None:
            if settings.job_runner == "inline":
                app.state.dispatcher = InlineDispatcher(app.state.services.orchestrator)
            else:
                app.state.dispatcher = ArqDispatcher()
        log.info("startup", store_backend=settings.store_backend, job_runner=settings.job_runner)

    @app.on_event("shutdown")
    async def shutdown():
        dispatcher = getattr(app.state, "dispatcher", None)
        if dispatcher is not None:
            await dispatcher.aclose()
        services = getattr(app.state, "services", None)
        if services is not None:
            await services.aclose()

    @app.get("/health")
    async def health():
        """Health check for load balancers and monitoring."""
        return {"status": "ok"}

    return app


app = create_app()
