import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from the working directory before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from quotaledger.api import admin_subscriptions, health, quotas
from quotaledger.core.config import settings, validate_config
from quotaledger.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from quotaledger.core.logging import configure_logging
from quotaledger.core.middleware.request_id import RequestIdMiddleware
from quotaledger.features.audit.service import get_audit_trail
from quotaledger.features.store.factory import get_store
from quotaledger.features.subscriptions.service import (
    register_post_commit_hook,
    unregister_post_commit_hook,
)

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("quotaledger")
    logger.info("Starting quotaledger...")
    app.state.startup_time = time.time()
    app.state.store = get_store()

    audit_trail = get_audit_trail()
    register_post_commit_hook(audit_trail.subscription_hook)
    audit_trail.start()
    try:
        yield
    finally:
        unregister_post_commit_hook(audit_trail.subscription_hook)
        audit_trail.stop()
        logger.info("Stopping quotaledger...")


def create_app() -> FastAPI:
    app = FastAPI(title="quotaledger", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(quotas.router)
    app.include_router(admin_subscriptions.router)
    return app


app = create_app()
