import math

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.container import Container, get_container
from app.errors import MarketDataError
from app.schemas.market import (
    ErrorResponse,
    MarketSnapshot,
    SnapshotState,
    SymbolQuote,
    TimeSeriesResponse,
)

router = APIRouter()

_ERROR_RESPONSES = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_429_TOO_MANY_REQUESTS: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _raise_market_error(exc: MarketDataError) -> None:
    headers = None
    if exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS and exc.retry_after is not None:
        headers = {"Retry-After": str(max(math.ceil(exc.retry_after), 1))}
    raise HTTPException(status_code=exc.status_code, detail=exc.to_payload(), headers=headers)


def _split_symbols(symbols: str) -> list[str]:
    return [symbol for symbol in (part.strip() for part in symbols.split(",")) if symbol]


@router.get("/market-snapshot", response_model=MarketSnapshot, responses=_ERROR_RESPONSES)
async def market_snapshot_endpoint(
    container: Container = Depends(get_container),
) -> MarketSnapshot:
    try:
        return await container.service.get_market_snapshot()
    except MarketDataError as exc:
        _raise_market_error(exc)


@router.get("/market-snapshot/state", response_model=SnapshotState)
async def market_snapshot_state_endpoint(
    container: Container = Depends(get_container),
) -> SnapshotState:
    return await container.snapshots.refresh_if_stale(
        container.settings.snapshot_max_age_seconds
    )


@router.get("/quote", response_model=SymbolQuote, responses=_ERROR_RESPONSES)
async def quote_endpoint(
    symbol: str = Query("AAPL"),
    container: Container = Depends(get_container),
) -> SymbolQuote:
    try:
        return await container.service.get_quote(symbol)
    except MarketDataError as exc:
        _raise_market_error(exc)


@router.get("/market-data", response_model=TimeSeriesResponse, responses=_ERROR_RESPONSES)
async def market_data_endpoint(
    symbol: str = Query("AAPL"),
    interval: str | None = Query(None),
    outputsize: int | None = Query(None, ge=1, le=5000),
    container: Container = Depends(get_container),
) -> TimeSeriesResponse:
    try:
        return await container.service.get_time_series(symbol, interval, outputsize)
    except MarketDataError as exc:
        _raise_market_error(exc)


@router.get(
    "/market-data-batch", response_model=dict[str, SymbolQuote], responses=_ERROR_RESPONSES
)
async def market_data_batch_endpoint(
    symbols: str | None = Query(None),
    container: Container = Depends(get_container),
) -> dict[str, SymbolQuote]:
    requested = _split_symbols(symbols) if symbols else container.settings.symbol_list
    try:
        return await container.service.get_batch_quotes(requested)
    except MarketDataError as exc:
        _raise_market_error(exc)


@router.get("/status")
async def status_endpoint(container: Container = Depends(get_container)) -> dict:
    return {
        "breaker": container.breaker.status(),
        "queue": container.queue.status(),
        "cache": container.cache.stats(),
        "snapshot": {
            "status": container.snapshots.status.value,
            "credits_exhausted": container.snapshots.get_state().credits_exhausted,
        },
        "durable_cache": container.store is not None,
    }


@router.post("/admin/reset", response_model=SnapshotState)
async def admin_reset_endpoint(container: Container = Depends(get_container)) -> SnapshotState:
    container.breaker.reset()
    container.cache.reset_attempts()
    container.snapshots.reset()
    return container.snapshots.get_state()
