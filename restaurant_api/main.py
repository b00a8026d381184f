import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

import restaurant_api.models  # noqa: F401  (registers tables on Base.metadata)
from restaurant_api.config import settings
from restaurant_api.database import Base, engine
from restaurant_api.errors import InternalError, OrderingError, ValidationError
from restaurant_api.middleware.metrics import MetricsMiddleware
from restaurant_api.middleware.request_id import RequestIDMiddleware
from restaurant_api.routers import audit, orders, payments, webhooks
from restaurant_api.utils.logging import setup_logging
from restaurant_api.utils.tracing import setup_tracing

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

setup_tracing("restaurant-api", settings.otlp_endpoint)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up: creating database tables")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    logger.info("Startup complete")

    yield

    await engine.dispose()
    logger.info("Shutting down")


app = FastAPI(
    title="Restaurant Ordering API",
    description="Orders, status workflow and payment reconciliation",
    version="1.0.0",
    lifespan=lifespan,
)

FastAPIInstrumentor.instrument_app(app)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIDMiddleware)
app.include_router(orders.router, prefix="/orders", tags=["orders"])
app.include_router(payments.router, prefix="/payments", tags=["payments"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(audit.router, prefix="/audit-events", tags=["audit"])

# Expose Prometheus metrics at /metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.exception_handler(OrderingError)
async def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
    if isinstance(exc, InternalError):
        return await unhandled_error_handler(request, exc)
    logger.info(
        "Request rejected",
        extra={"path": request.url.path, "error_kind": exc.kind, "error": str(exc)},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "message": str(exc)},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'invalid input')}" if field else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": ValidationError.kind, "message": message},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled error",
        exc_info=exc,
        extra={"path": request.url.path, "method": request.method},
    )
    return JSONResponse(
        status_code=500,
        content={"error": InternalError.kind, "message": "Internal server error"},
    )


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
