from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError

from registry.api.routes import auth, categories, events, gifts, payments, reports
from registry.core.config import settings
from registry.core.errors import AccountingError
from registry.core.logger import configure_logging
from registry.db.session import Database
from registry.services.accounting import ContributionService
from registry.services.reconciliation import ReconciliationService


logger = configure_logging()


def _new_metrics() -> dict[str, Any]:
    return {
        "requests_total": 0,
        "errors_total": 0,
        "latency_total_ms": 0.0,
        "by_path": defaultdict(lambda: {"count": 0, "errors": 0, "latency_total_ms": 0.0}),
    }


def _record_request(metrics: dict[str, Any], path: str, duration_ms: float, error: bool) -> None:
    metrics["requests_total"] += 1
    metrics["latency_total_ms"] += duration_ms
    path_metrics = metrics["by_path"][path]
    path_metrics["count"] += 1
    path_metrics["latency_total_ms"] += duration_ms
    if error:
        metrics["errors_total"] += 1
        path_metrics["errors"] += 1


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    database: Database = app.state.database
    try:
        db_url = make_url(database.url)
        logger.info(
            "DB config driver=%s host=%s database=%s",
            db_url.get_backend_name(),
            db_url.host,
            db_url.database,
        )
    except Exception:
        logger.warning("DB config parse failed", exc_info=True)

    await database.ensure_schema_ready()
    try:
        yield
    finally:
        await database.dispose()
        logger.info("Database handle disposed")


def create_app(database: Database | None = None) -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        description="Wedding gift registry with partial contributions",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.database = database or Database()
    app.state.accounting = ContributionService(app.state.database)
    app.state.reconciliation = ReconciliationService(app.state.database, app.state.accounting)
    app.state.metrics = _new_metrics()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.backend_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=600,
    )

    @app.middleware("http")
    async def tracing_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        start = perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (perf_counter() - start) * 1000.0
            _record_request(app.state.metrics, request.url.path, duration_ms, error=True)
            logger.exception(
                "Request failed id=%s method=%s path=%s duration_ms=%.2f",
                request_id,
                request.method,
                request.url.path,
                duration_ms,
            )
            raise

        duration_ms = (perf_counter() - start) * 1000.0
        _record_request(app.state.metrics, request.url.path, duration_ms, error=response.status_code >= 500)
        logger.info(
            "Request completed id=%s method=%s path=%s status=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(AccountingError)
    async def accounting_error_handler(request: Request, exc: AccountingError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def storage_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception("Storage error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Storage unavailable; nothing was committed. Re-check the gift status before retrying.",
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    app.include_router(auth.router)
    app.include_router(gifts.router)
    app.include_router(payments.router)
    app.include_router(reports.router)
    app.include_router(categories.router)
    app.include_router(events.router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/health/db")
    async def health_db():
        try:
            async with app.state.database.session() as session:
                result = await session.execute(select(1))
                return {"status": "ok", "database": str(result.scalar())}
        except SQLAlchemyError as e:
            logger.exception("DB health check failed")
            return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})

    @app.get("/metrics")
    async def get_metrics() -> dict[str, object]:
        metrics = app.state.metrics
        by_path = {
            path: {
                "count": data["count"],
                "errors": data["errors"],
                "avg_latency_ms": (data["latency_total_ms"] / data["count"] if data["count"] else 0.0),
            }
            for path, data in metrics["by_path"].items()
        }
        return {
            "requests_total": metrics["requests_total"],
            "errors_total": metrics["errors_total"],
            "avg_latency_ms": (
                metrics["latency_total_ms"] / metrics["requests_total"]
                if metrics["requests_total"]
                else 0.0
            ),
            "by_path": by_path,
        }

    return app


app = create_app()
