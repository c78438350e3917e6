from __future__ import annotations

import logging

import asyncpg
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_client import Counter, make_asgi_app

from .chain_registry import chains_payload
from .config import get_settings
from .history import (
    HistoryQueryError,
    build_global_stats_query,
    build_history_query,
    build_token_stats_query,
    build_user_stats_query,
    history_row_payload,
    normalize_address
)

settings = get_settings()
logger = logging.getLogger(__name__)

QUERIES_SERVED_TOTAL = Counter(
    'splitter_api_queries_total',
    'Read queries served by the splitter API',
    ['endpoint']
)

app = FastAPI(title=settings.app_name, default_response_class=ORJSONResponse)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[x.strip() for x in settings.cors_origins.split(',') if x.strip()],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*']
)
app.mount('/metrics', make_asgi_app())

_pg_pool: asyncpg.Pool | None = None


@app.on_event('startup')
async def startup() -> None:
    global _pg_pool
    _pg_pool = await asyncpg.create_pool(
        dsn=settings.postgres_dsn,
        min_size=settings.pg_pool_min_size,
        max_size=settings.pg_pool_max_size
    )
    logger.info('postgres pool ready app=%s environment=%s', settings.app_name, settings.environment)


@app.on_event('shutdown')
async def shutdown() -> None:
    global _pg_pool
    if _pg_pool is not None:
        await _pg_pool.close()
        _pg_pool = None


def _pool() -> asyncpg.Pool:
    if _pg_pool is None:
        raise HTTPException(status_code=503, detail='database pool is not initialized')
    return _pg_pool


async def _fetch(sql: str, params: list) -> list:
    async with _pool().acquire() as conn:
        return await conn.fetch(sql, *params)


@app.get('/health')
async def health() -> dict[str, str]:
    return {'status': 'ok'}


@app.get('/health/ready')
async def ready() -> dict[str, str]:
    async with _pool().acquire() as conn:
        await conn.fetchval('SELECT 1')
    return {'status': 'ready'}


@app.get('/chains')
async def chains() -> dict:
    return chains_payload()


async def _history(
    endpoint: str,
    address: str,
    role: str,
    order_by: str,
    direction: str,
    chain_id: int | None,
    split_type: str | None,
    limit: int,
    offset: int
) -> dict:
    try:
        sql, params = build_history_query(
            address,
            role=role,
            order_by=order_by,
            direction=direction,
            chain_id=chain_id,
            split_type=split_type,
            limit=limit,
            offset=offset
        )
    except HistoryQueryError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    rows = await _fetch(sql, params)
    QUERIES_SERVED_TOTAL.labels(endpoint=endpoint).inc()
    return {'rows': [history_row_payload(r) for r in rows]}


@app.get('/history/{address}')
async def history(
    address: str,
    order_by: str = Query(default='block_number'),
    direction: str = Query(default='desc'),
    chain_id: int | None = Query(default=None, gt=0),
    split_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0)
) -> dict:
    return await _history('history', address, 'sender', order_by, direction, chain_id, split_type, limit, offset)


@app.get('/history/{address}/received')
async def history_received(
    address: str,
    order_by: str = Query(default='block_number'),
    direction: str = Query(default='desc'),
    chain_id: int | None = Query(default=None, gt=0),
    split_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0)
) -> dict:
    return await _history(
        'history_received',
        address,
        'recipient',
        order_by,
        direction,
        chain_id,
        split_type,
        limit,
        offset
    )


@app.get('/stats/users/{address}')
async def user_stats(address: str, chain_id: int | None = Query(default=None, gt=0)) -> dict:
    try:
        normalized = normalize_address(address)
        sql, params = build_user_stats_query(normalized, chain_id)
    except HistoryQueryError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    rows = await _fetch(sql, params)
    QUERIES_SERVED_TOTAL.labels(endpoint='user_stats').inc()
    return {'address': normalized, 'rows': [dict(r) for r in rows]}


@app.get('/stats/tokens')
async def token_stats(
    chain_id: int | None = Query(default=None, gt=0),
    limit: int = Query(default=100, ge=1, le=500)
) -> dict:
    sql, params = build_token_stats_query(chain_id, limit)
    rows = await _fetch(sql, params)
    QUERIES_SERVED_TOTAL.labels(endpoint='token_stats').inc()
    return {'rows': [dict(r) for r in rows]}


@app.get('/stats/global')
async def global_stats(chain_id: int | None = Query(default=None, gt=0)) -> dict:
    sql, params = build_global_stats_query(chain_id)
    rows = await _fetch(sql, params)
    QUERIES_SERVED_TOTAL.labels(endpoint='global_stats').inc()
    return {'rows': [dict(r) for r in rows]}


@app.get('/')
async def root() -> dict:
    return {'service': settings.app_name, 'status': 'ok'}
