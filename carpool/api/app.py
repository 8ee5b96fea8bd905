"""
FastAPI application factory.

* Registers routes for drivers, passengers, payments and admin.
* Starts / stops the background expiry worker via lifespan events.
* Renders domain errors as ``{"code": ..., "detail": ...}``.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from carpool.api.middleware import limiter
from carpool.api.routes import admin, drivers, passengers, payments
from carpool.domain.errors import CarpoolError
from carpool.infrastructure.redis_client import close_redis
from carpool.workers import expiry as _expiry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry worker on startup; stop on shutdown."""
    await _expiry.start_expiry_loop()
    yield
    await _expiry.stop_expiry_loop()
    await close_redis()


async def carpool_error_handler(request: Request, exc: CarpoolError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.detail)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "detail": exc.detail},
        headers=headers,
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Campus Carpool API",
        description=(
            "Trip, booking and payment lifecycle for a university carpool.  "
            "Drivers publish trips, passengers book seats and pay by card or "
            "cash, and admins can intervene with audited overrides."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Domain errors
    app.add_exception_handler(CarpoolError, carpool_error_handler)

    # Routers
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(passengers.router, prefix="/api/v1")
    app.include_router(payments.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
