"""
FastAPI application factory.

* Registers routes for bookings, drivers, tracking and admin.
* Builds the message channel, change feed, routing client and dispatch
  service in the lifespan and tears them down on shutdown.
* Maps domain errors to HTTP responses.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

from src.api.middleware import limiter
from src.api.routes import admin, bookings, drivers, tracking
from src.api.schemas import ErrorResponse
from src.domain.exceptions import (
    ActiveTripExists,
    ActorNotPermitted,
    BookingNotFound,
    DriverUnavailable,
    StoreUnavailable,
)
from src.infrastructure.change_feed import ChangeFeed
from src.infrastructure.database import async_session_factory
from src.infrastructure.message_channel import MessageChannel
from src.infrastructure.redis_client import get_redis
from src.infrastructure.routing import RoutingClient
from src.services.dispatch import DispatchService
from src.services.lifecycle import BookingLifecycle

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the dispatch services on startup; release them on shutdown."""
    channel = MessageChannel(get_redis)
    change_feed = ChangeFeed(get_redis)
    routing = RoutingClient()
    lifecycle = BookingLifecycle(async_session_factory, change_feed, channel, get_redis)
    dispatch = DispatchService(async_session_factory, lifecycle, change_feed, channel)

    app.state.session_factory = async_session_factory
    app.state.channel = channel
    app.state.change_feed = change_feed
    app.state.routing = routing
    app.state.lifecycle = lifecycle
    app.state.dispatch = dispatch

    await change_feed.start()
    await dispatch.start()
    try:
        yield
    finally:
        await dispatch.stop()
        await change_feed.stop()
        await routing.aclose()


async def _not_found(request: Request, exc: BookingNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content=ErrorResponse(detail=str(exc)).model_dump())


async def _forbidden(request: Request, exc: ActorNotPermitted) -> JSONResponse:
    return JSONResponse(status_code=403, content=ErrorResponse(detail=str(exc)).model_dump())


async def _conflict(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=409, content=ErrorResponse(detail=str(exc)).model_dump())


async def _unavailable(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            detail="Service temporarily unavailable, please retry", retryable=True
        ).model_dump(),
    )


def create_app(lifespan=lifespan) -> FastAPI:
    app = FastAPI(
        title="Ambulance Dispatch API",
        description=(
            "Books ambulances, offers pending bookings to available drivers "
            "with a race-safe accept, and tracks the assigned ambulance with "
            "a live ETA."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Domain errors
    app.add_exception_handler(BookingNotFound, _not_found)
    app.add_exception_handler(ActorNotPermitted, _forbidden)
    app.add_exception_handler(DriverUnavailable, _conflict)
    app.add_exception_handler(ActiveTripExists, _conflict)
    app.add_exception_handler(StoreUnavailable, _unavailable)
    app.add_exception_handler(SQLAlchemyError, _unavailable)
    app.add_exception_handler(RedisError, _unavailable)

    # Routers
    app.include_router(bookings.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(tracking.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
