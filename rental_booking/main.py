import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi_limiter import FastAPILimiter
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models
from .booking_scheduler import run_booking_scheduler
from .config import settings
from .database import engine
from .exceptions import BookingServiceError, ForbiddenError, NotFoundError, ValidationError
from .outbox_poller import run_outbox_poller
from .routers import booking_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("booking_service")

# Creates 'bookings', 'outbox_events' and 'listing_locks' if they don't exist
models.Base.metadata.create_all(bind=engine)


async def _stop_task(task: asyncio.Task, name: str):
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info(f"{name} task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during {name} shutdown: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Starts the rate limiter and the background tasks, and stops them on shutdown.
    """
    logger.info("Starting background tasks...")

    redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
    try:
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    poller_task = asyncio.create_task(run_outbox_poller())
    scheduler_task = asyncio.create_task(run_booking_scheduler())

    yield

    logger.info("Shutting down background tasks...")
    await _stop_task(poller_task, "Outbox poller")
    await _stop_task(scheduler_task, "Booking scheduler")
    await redis_client.aclose()


app = FastAPI(
    title="Rental Booking Service API",
    description="Reserves rentable equipment over date ranges without overselling it.",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(BookingServiceError)
async def booking_error_handler(request: Request, exc: BookingServiceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies and query strings get the same 400 as domain validation."""
    problems = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"detail": "; ".join(problems) or "Invalid request.", "code": ValidationError.code},
    )


# Codes for errors raised by FastAPI itself or its dependencies (auth, rate limiter, routing)
HTTP_ERROR_CODES = {
    401: "unauthorized",
    403: ForbiddenError.code,
    404: NotFoundError.code,
    405: "method_not_allowed",
    429: "rate_limited",
}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": HTTP_ERROR_CODES.get(exc.status_code, "http_error")},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"Storage failure on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "code": "server_error"},
    )


app.include_router(booking_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Rental Booking Service"}
