# clinicdesk/main.py
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import get_settings
from .core.logging import setup_logging
from .crud import CRUDError
from .database import create_tables
from .errors import DataIntegrityError, EngineError
from .limiter import limiter
from .routers import appointments, health, invoices, payments, services, slots, visits

settings = get_settings()
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    logger.info("startup", app=settings.app_name, version=settings.app_version, environment=settings.environment)
    yield
    logger.info("shutdown")


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if isinstance(exc, DataIntegrityError):
        logger.error("data_integrity_error", path=request.url.path, detail=exc.message, field=exc.field)
    else:
        logger.info("request_rejected", path=request.url.path, error=exc.kind, detail=exc.message, field=exc.field)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(CRUDError)
async def crud_error_handler(request: Request, exc: CRUDError):
    logger.error("storage_error", path=request.url.path, detail=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "STORAGE_ERROR", "detail": "A database error occurred.", "field": None},
    )


app.include_router(appointments.router, prefix="/api/v1")
app.include_router(slots.router, prefix="/api/v1")
app.include_router(visits.router, prefix="/api/v1")
app.include_router(invoices.router, prefix="/api/v1")
app.include_router(payments.router, prefix="/api/v1")
app.include_router(services.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("clinicdesk.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
