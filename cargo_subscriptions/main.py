import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

# Load env from the project .env (tests configure the environment themselves)
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(project_dir, ".env"))

from cargo_subscriptions.api import health  # noqa: E402
from cargo_subscriptions.core.config import settings, validate_config  # noqa: E402
from cargo_subscriptions.core.database import create_all_tables  # noqa: E402
from cargo_subscriptions.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from cargo_subscriptions.core.logging import configure_logging  # noqa: E402
from cargo_subscriptions.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from cargo_subscriptions.features.plans.service import seed_plans  # noqa: E402
from cargo_subscriptions.workers.subscription_jobs import build_scheduler  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("cargo_subscriptions")
    logger.info("Starting subscription engine...")
    try:
        create_all_tables()
        seeded = seed_plans()
        if seeded:
            logger.info("Seeded default plans", extra={"count": seeded})
    except Exception as e:
        # readyz reports the store as unavailable; the process still serves health checks
        logger.error(f"Schema/plan bootstrap failed: {e}")

    scheduler = build_scheduler()
    app.state.scheduler = scheduler
    app.state.scheduler_enabled = settings.SCHEDULER_ENABLED
    if settings.SCHEDULER_ENABLED:
        scheduler.start()
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")
    try:
        yield
    finally:
        scheduler.stop_all()
        logger.info("Stopping subscription engine...")


app = FastAPI(title="Cargo Subscriptions", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router, tags=["health"])
app.include_router(health.root_router, tags=["health"])
