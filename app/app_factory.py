"""
FastAPI application factory.

Creates and configures the FastAPI application with:
- CORS middleware
- Error mapping for scheduling exceptions
- Appointment, availability and rescheduling-queue routes
- Master-data webhooks
- Health and Prometheus endpoints
"""
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.errors import to_http_exception
from app.exceptions import SchedulingError, StoreError
from app.startup import lifespan

logger = logging.getLogger(__name__)


def configure_cors(app: FastAPI):
    """Configure CORS middleware for the front-desk frontend."""
    origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "*"  # Allow all origins as fallback
    ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )


def configure_exception_handlers(app: FastAPI):
    """Turn scheduling errors that escape a route into JSON error bodies."""
    async def _handle(request: Request, exc: Exception):
        http_exc = to_http_exception(exc)
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=http_exc.status_code,
            content={"detail": http_exc.detail},
            headers=http_exc.headers,
        )

    app.add_exception_handler(SchedulingError, _handle)
    app.add_exception_handler(StoreError, _handle)


def register_routes(app: FastAPI):
    """Mount every router."""
    from app.api.appointments_api import router as appointments_router
    from app.api.metrics_endpoint import router as metrics_router
    from app.api.rescheduling_queue_api import router as queue_router
    from app.webhooks.master_data_webhooks import router as master_data_router

    app.include_router(appointments_router)
    app.include_router(queue_router)
    app.include_router(master_data_router)
    app.include_router(metrics_router)

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "healthy", "service": "scheduling-engine"}


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        use_lifespan: Start background workers with the app (off in route tests)

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="Dental Scheduling Engine",
        description="""
Appointment scheduling and rescheduling engine for dental clinics.

## Features
- Conflict-free booking across doctors, units and patients
- Optimistic concurrency with appointment versions
- Automatic rescheduling queue with backoff and escalation
- At-least-once event delivery to the notification gateway
""",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else None,
        redirect_slashes=False,  # Prevent HTTP redirects from HTTPS requests
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    configure_cors(app)
    configure_exception_handlers(app)
    register_routes(app)

    return app
