# main.py
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.billing.errors import BillingError
from middleware import RequestContextMiddleware
from routes.admin_payments import router as admin_payments_router
from routes.admin_transactions import router as admin_transactions_router
from routes.checkout import router as checkout_router
from routes.cron import router as cron_router
from routes.health import router as health_router
from routes.metrics import router as metrics_router
from routes.payments import router as payments_router
from routes.transactions import router as transactions_router
from routes.webhooks import router as webhooks_router
from services.http_errors import billing_error_handler
from settings import settings, validate_env_settings

logger = logging.getLogger("billing")


def _configure_logging() -> None:
    logging.basicConfig(
        level=(settings.LOG_LEVEL or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app() -> FastAPI:
    _configure_logging()
    validate_env_settings()

    app = FastAPI(title="Billing API", version="1.0.0")
    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(checkout_router)
    app.include_router(transactions_router)
    app.include_router(payments_router)
    app.include_router(admin_payments_router)
    app.include_router(admin_transactions_router)
    app.include_router(webhooks_router)
    app.include_router(cron_router)

    app.add_exception_handler(BillingError, billing_error_handler)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    logger.info("app_started env=%s store=%s gateway_mode=%s", settings.ENV, settings.BILLING_STORE, settings.GATEWAY_MODE)
    return app


app = create_app()
