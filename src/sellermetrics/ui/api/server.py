"""HTTP surface for dashboard metrics."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import loguru
from loguru import logger
from pydantic import Field
from sqlalchemy.exc import SQLAlchemyError

from sellermetrics.adapters.db.facade import DB
from sellermetrics.core.config import AppConfig, load_app_config_from_env
from sellermetrics.core.periods import Period, PeriodError, PeriodName, resolve_period
from sellermetrics.core.tenant import TenantScope
from sellermetrics.services.metrics import (
    CamelModel,
    ErrorResponse,
    MetricsModel,
    compute_asin_metrics,
    compute_metrics,
)

DEFAULT_PERIOD = PeriodName.TODAY.value


class BadRequestError(ValueError):
    """Request parameters that cannot be served."""


class PeriodRequest(CamelModel):
    label: str | None = None
    period: str | None = None
    start_date: str | None = None
    end_date: str | None = None


class MetricsRequest(CamelModel):
    user_id: str | None = None
    period: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    exclude_canceled: bool | None = None
    debug: bool = False
    periods: list[PeriodRequest] | None = None


class MultiPeriodResponse(CamelModel):
    success: bool = True
    periods: dict[str, MetricsModel] = Field(default_factory=dict)


class ApiLogger:
    """Handles all logging for the HTTP surface."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def bad_request(self, path: str, error: Exception) -> None:
        self._logger.bind(path=path).warning("Bad request to {}: {}", path, error)

    def database_error(self, path: str, error: Exception) -> None:
        self._logger.bind(path=path).opt(exception=error).error(
            "Database error serving {}", path
        )


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts) or "Invalid request"


def _scope(user_id: str | None) -> TenantScope:
    if not user_id or not user_id.strip():
        raise BadRequestError("userId is required")
    return TenantScope(user_id.strip())


def _period(
    period: str | None,
    start_date: str | None,
    end_date: str | None,
    *,
    now: datetime,
    config: AppConfig,
    label: str | None = None,
) -> Period:
    name = period or ("custom" if start_date or end_date else DEFAULT_PERIOD)
    return resolve_period(
        name,
        now=now,
        start_date=start_date,
        end_date=end_date,
        clock=config.clock(),
        label=label,
    )


def create_app(
    db: DB,
    config: AppConfig,
    *,
    clock: Callable[[], datetime] | None = None,
    api_logger: ApiLogger | None = None,
) -> FastAPI:
    """Build the FastAPI application around a database and config."""
    now = clock or (lambda: datetime.now(timezone.utc))
    log = api_logger or ApiLogger()
    app = FastAPI(title="sellermetrics")

    @app.exception_handler(BadRequestError)
    @app.exception_handler(PeriodError)
    async def bad_request_handler(request: Request, exc: Exception) -> JSONResponse:
        log.bad_request(request.url.path, exc)
        return JSONResponse(
            status_code=400, content=ErrorResponse(error=str(exc)).to_json_dict()
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        message = _validation_message(exc)
        log.bad_request(request.url.path, ValueError(message))
        return JSONResponse(
            status_code=400, content=ErrorResponse(error=message).to_json_dict()
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log.database_error(request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="Database error").to_json_dict(),
        )

    @app.get("/api/dashboard/metrics")
    def get_metrics(
        user_id: str | None = Query(default=None, alias="userId"),
        period: str | None = Query(default=None),
        start_date: str | None = Query(default=None, alias="startDate"),
        end_date: str | None = Query(default=None, alias="endDate"),
        exclude_canceled: bool | None = Query(default=None, alias="excludeCanceled"),
        debug: bool = Query(default=False),
    ) -> JSONResponse:
        scope = _scope(user_id)
        resolved = _period(period, start_date, end_date, now=now(), config=config)
        response = compute_metrics(
            db,
            scope,
            resolved,
            config,
            exclude_canceled=exclude_canceled,
            debug=debug,
        )
        return JSONResponse(content=response.to_json_dict())

    @app.post("/api/dashboard/metrics")
    def post_metrics(body: MetricsRequest) -> JSONResponse:
        scope = _scope(body.user_id)
        reference = now()

        if body.periods:
            result = MultiPeriodResponse()
            for entry in body.periods:
                resolved = _period(
                    entry.period,
                    entry.start_date,
                    entry.end_date,
                    now=reference,
                    config=config,
                    label=entry.label,
                )
                if resolved.label in result.periods:
                    raise BadRequestError(f"Duplicate period label {resolved.label!r}")
                response = compute_metrics(
                    db,
                    scope,
                    resolved,
                    config,
                    exclude_canceled=body.exclude_canceled,
                )
                result.periods[resolved.label] = response.metrics
            return JSONResponse(content=result.to_json_dict())

        resolved = _period(
            body.period, body.start_date, body.end_date, now=reference, config=config
        )
        response = compute_metrics(
            db,
            scope,
            resolved,
            config,
            exclude_canceled=body.exclude_canceled,
            debug=body.debug,
        )
        return JSONResponse(content=response.to_json_dict())

    @app.get("/api/dashboard/metrics/by-asin")
    def get_metrics_by_asin(
        user_id: str | None = Query(default=None, alias="userId"),
        period: str | None = Query(default=None),
        start_date: str | None = Query(default=None, alias="startDate"),
        end_date: str | None = Query(default=None, alias="endDate"),
        exclude_canceled: bool | None = Query(default=None, alias="excludeCanceled"),
    ) -> JSONResponse:
        scope = _scope(user_id)
        resolved = _period(period, start_date, end_date, now=now(), config=config)
        response = compute_asin_metrics(
            db, scope, resolved, config, exclude_canceled=exclude_canceled
        )
        return JSONResponse(content=response.to_json_dict())

    return app


def main(host: str = "127.0.0.1", port: int = 8000) -> None:
    """Main entry point for the metrics server."""
    import uvicorn

    load_dotenv(override=False)
    config = load_app_config_from_env()
    app = create_app(DB(config.database_url), config)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
