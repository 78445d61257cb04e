import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

from subscription_billing.api import billing
from subscription_billing.core.config import settings, validate_config
from subscription_billing.core.database import check_connection
from subscription_billing.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from subscription_billing.core.logging import configure_logging
from subscription_billing.core.middleware import RequestIdMiddleware

load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("billing")
    logger.info("Starting billing service...")
    try:
        yield
    finally:
        logger.info("Stopping billing service...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

    app = FastAPI(title="Subscription Billing", lifespan=lifespan)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(billing.router)

    @app.get("/health")
    def health():
        database_ok = check_connection()
        return {"status": "ok" if database_ok else "degraded", "database": database_ok}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("subscription_billing.main:app", host="0.0.0.0", port=8000)
