import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

# Load env from gallery_backend/.env
backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

from gallery_backend.core.config import settings, validate_config  # noqa: E402
from gallery_backend.core.database import create_all_tables  # noqa: E402
from gallery_backend.core.logging import configure_logging  # noqa: E402
from gallery_backend.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from gallery_backend.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from gallery_backend.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from gallery_backend.api import billing, cron, health, lifecycle, metrics  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("gallery")
    logger.info("Starting gallery lifecycle backend...")
    app.state.startup_time = time.time()
    # No separate migrations ship; create_all skips tables that already exist
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping gallery lifecycle backend...")


app = FastAPI(title="Gallery - Subscription Lifecycle", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(billing.router)
app.include_router(cron.router)
app.include_router(lifecycle.router)
app.include_router(health.root_router)
app.include_router(metrics.router)
