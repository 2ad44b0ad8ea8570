import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load .env before settings are read (tests control env directly)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from cvarchitect.core.config import settings, validate_config
from cvarchitect.core.database import create_all_tables, get_database_url
from cvarchitect.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from cvarchitect.core.logging import configure_logging
from cvarchitect.core.middleware.request_id import RequestIdMiddleware
from cvarchitect.core.validation import validate_env
from cvarchitect.api import health, licensing, pricing, subscriptions

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("cvarchitect")
    logger.info("Starting CV Architect backend...")
    if get_database_url():
        create_all_tables()
    else:
        logger.warning("DATABASE_URL not set; subscription endpoints will fail until configured")
    try:
        yield
    finally:
        logger.info("Stopping CV Architect backend...")


app = FastAPI(title="CV Architect - Credits & Entitlements", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(pricing.router, prefix="/api", tags=["pricing"])
app.include_router(subscriptions.router, prefix="/api", tags=["subscription"])
app.include_router(licensing.router, prefix="/api", tags=["licensing"])
app.include_router(health.root_router, tags=["health"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("cvarchitect.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
