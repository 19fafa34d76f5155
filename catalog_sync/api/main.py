"""FastAPI application exposing sync triggers."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from catalog_sync.db.session import create_engine_from_env
from catalog_sync.ingest import ConfigError
from catalog_sync.ingest.bigcommerce import RateLimitExceeded
from catalog_sync.jobs import sync as sync_jobs

logger = logging.getLogger(__name__)

app = FastAPI(title="Catalog Sync API")


class SyncResponse(BaseModel):
    status: str
    message: str
    report: dict[str, Any]


class HealthResponse(BaseModel):
    status: str
    database: bool


def get_engine() -> Engine:
    return create_engine_from_env()


@app.get("/health", response_model=HealthResponse)
async def health(engine: Engine = Depends(get_engine)) -> HealthResponse:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database")
        return HealthResponse(status="degraded", database=False)
    return HealthResponse(status="ok", database=True)


@app.post("/sync/products/{channel}", response_model=SyncResponse)
async def sync_products(channel: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    report = await sync_jobs.run_sync(channel, engine=engine)
    body = SyncResponse(status=report.status, message=report.message, report=report.to_dict())
    status_code = 500 if report.status == "error" else 200
    return JSONResponse(body.model_dump(), status_code=status_code)


@app.post("/sync/categories", response_model=SyncResponse)
async def sync_categories(engine: Engine = Depends(get_engine)) -> SyncResponse:
    try:
        result = await sync_jobs.run_category_sync(engine=engine)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (httpx.HTTPError, RateLimitExceeded, SQLAlchemyError) as exc:
        logger.exception("Category sync failed")
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return SyncResponse(status="success", message=f"{result['saved']} categories saved", report=result)


@app.post("/sync/brands", response_model=SyncResponse)
async def sync_brands(engine: Engine = Depends(get_engine)) -> SyncResponse:
    try:
        result = await sync_jobs.run_brand_sync(engine=engine)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (httpx.HTTPError, RateLimitExceeded, SQLAlchemyError) as exc:
        logger.exception("Brand sync failed")
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return SyncResponse(status="success", message=f"{result['saved']} brands saved", report=result)


@app.post("/sync/safety-stock/{channel}", response_model=SyncResponse)
async def sync_safety_stock(channel: str, engine: Engine = Depends(get_engine)) -> SyncResponse:
    try:
        result = await sync_jobs.run_safety_stock_sync(channel, engine=engine)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (httpx.HTTPError, RateLimitExceeded, SQLAlchemyError) as exc:
        logger.exception("Safety stock sync for %s failed", channel)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return SyncResponse(status="success", message=f"{result['saved']} safety stock records saved", report=result)
