import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from circulation.api import routes
from circulation.core.config import configure_logging, get_settings
from circulation.core.database import Base, SessionLocal, engine
from circulation.core.errors import CirculationError, ErrorKind
from circulation.services.sweeper import Sweeper, build_scheduler

configure_logging()
logger = logging.getLogger("circulation")

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INACTIVE_BORROWER: 403,
    ErrorKind.ALREADY_HELD: 409,
    ErrorKind.ALREADY_RESERVED: 409,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.NO_COPIES_AVAILABLE: 409,
    ErrorKind.INVALID_INPUT: 422,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("Creating database tables (if not present)...")
    Base.metadata.create_all(bind=engine)
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = build_scheduler(Sweeper(SessionLocal, settings))
        scheduler.start()
        logger.info("Sweeper schedule started")
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)


app = FastAPI(title="Library Circulation Engine", lifespan=lifespan)
app.include_router(routes.router)


@app.exception_handler(CirculationError)
def circulation_error_handler(request: Request, exc: CirculationError):
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, 400),
        content={"detail": exc.reason, "kind": exc.kind.value},
    )
