"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from loyalty_processor.api import monitoring, transactions, users, webhooks
from loyalty_processor.core.config import Settings, get_settings
from loyalty_processor.core.logging import setup_logging
from loyalty_processor.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy
from loyalty_processor.db.resources import Resources

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, resources: Optional[Resources] = None) -> FastAPI:
    """Build the application

    Args:
        settings: Settings to use (loaded from the environment if omitted)
        resources: Pre-built resource handles; the app then neither creates
            nor closes them
    """
    if settings is None:
        settings = resources.settings if resources is not None else get_settings()
    owns_resources = resources is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan event handler for startup and shutdown"""
        # Startup
        if initialize_otel(settings, role="api"):
            logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.info("OpenTelemetry not configured - running without distributed tracing")

        res = resources if resources is not None else Resources.create(settings)
        app.state.resources = res

        if owns_resources:
            logger.info("Initializing database...")
            try:
                res.database.ping()
                res.database.init_db()
                logger.info("Database initialized successfully")
            except Exception as e:
                logger.error(f"Database initialization failed: {e}")
                raise

            logger.info("Testing Redis connection...")
            try:
                res.queue.ping()
                logger.info("Redis connection successful")
            except Exception as e:
                logger.error(f"Redis connection failed: {e}")
                raise

            instrument_sqlalchemy(res.database.engine)

        worker_pool = None
        if settings.WORKER_IN_PROCESS:
            from loyalty_processor.tasks.payment_worker import PaymentWorkerPool
            worker_pool = PaymentWorkerPool.from_resources(res)
            await worker_pool.start()
            logger.info("In-process payment worker started")

        yield

        # Shutdown
        logger.info("Shutting down...")
        if worker_pool is not None:
            await worker_pool.stop()
        if owns_resources:
            res.close()

    app = FastAPI(
        title="Loyalty Webhook Processor",
        description="Ingests signed payment webhooks and awards loyalty points exactly once",
        version="1.0.0",
        lifespan=lifespan
    )

    # Instrument FastAPI with OpenTelemetry
    if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        instrument_fastapi(app)

    app.include_router(webhooks.router)
    app.include_router(users.router)
    app.include_router(transactions.router)
    app.include_router(monitoring.router)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={"error": "NOT_FOUND", "message": f"Route {request.method} {request.url.path} not found"}
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "HTTP_ERROR", "message": str(exc.detail)}
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "INTERNAL_ERROR", "message": "Internal server error"}
        )

    @app.get("/")
    def root():
        return {
            "service": "loyalty-webhook-processor",
            "status": "running",
            "endpoints": {
                "webhook": "POST /webhooks/payment",
                "users": "GET /users/{id}",
                "transactions": "GET /transactions",
                "health": "GET /health",
                "metrics": "GET /metrics",
            },
        }

    return app


def run() -> None:
    """Entry point for `loyalty-api`"""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
