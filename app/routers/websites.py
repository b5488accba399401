from __future__ import annotations
from datetime import datetime, timezone
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.security.service_identity import require_service_identity
from app.services import metrics, properties
from app.services.executor import CallExecutor

router = APIRouter(
    prefix="/api/websites/{website_id}",
    tags=["websites"],
    dependencies=[Depends(require_service_identity)],
)


def get_executor(request: Request) -> CallExecutor:
    return request.app.state.executor


class StatusResp(BaseModel):
    connected: bool
    scopes: List[str] = []
    scProperty: Optional[str] = None
    ga4PropertyId: Optional[str] = None
    googleUserEmail: Optional[str] = None
    expiresAt: Optional[datetime] = None


class ScPropertyReq(BaseModel):
    property: str = Field(..., min_length=1)


class ScPropertyResp(BaseModel):
    success: bool
    property: str


class Ga4PropertyReq(BaseModel):
    propertyId: str = Field(..., min_length=1)


class Ga4PropertyResp(BaseModel):
    success: bool
    propertyId: str


@router.get("/status", response_model=StatusResp, summary="Connection status for a website")
def status(
    website_id: str = Path(..., min_length=1, max_length=255),
    db: Session = Depends(get_db),
    executor: CallExecutor = Depends(get_executor),
):
    store = executor.grants.store
    row = store.get(db, website_id)
    if row is None:
        return StatusResp(connected=False)
    return StatusResp(
        connected=True,
        scopes=store.scopes(row),
        scProperty=row.sc_property,
        ga4PropertyId=row.ga4_property_id,
        googleUserEmail=row.google_user_email,
        expiresAt=datetime.fromtimestamp(row.expiry_date / 1000, tz=timezone.utc),
    )


@router.post("/search-console/property", response_model=ScPropertyResp, summary="Select the Search Console site")
async def set_search_console_property(
    payload: ScPropertyReq,
    website_id: str = Path(..., min_length=1, max_length=255),
    db: Session = Depends(get_db),
    executor: CallExecutor = Depends(get_executor),
):
    row = await properties.select_search_console_property(db, executor, website_id, payload.property)
    return ScPropertyResp(success=True, property=row.sc_property)


@router.post("/ga4/property", response_model=Ga4PropertyResp, summary="Select the GA4 property")
async def set_ga4_property(
    payload: Ga4PropertyReq,
    website_id: str = Path(..., min_length=1, max_length=255),
    db: Session = Depends(get_db),
    executor: CallExecutor = Depends(get_executor),
):
    row = await properties.select_ga4_property(db, executor, website_id, payload.propertyId)
    return Ga4PropertyResp(success=True, propertyId=row.ga4_property_id)


@router.get("/search-console/summary", summary="Search Console totals and daily series")
async def search_console_summary(
    website_id: str = Path(..., min_length=1, max_length=255),
    start_date: str = Query(metrics.DEFAULT_START, alias="startDate"),
    end_date: str = Query(metrics.DEFAULT_END, alias="endDate"),
    db: Session = Depends(get_db),
    executor: CallExecutor = Depends(get_executor),
):
    return await metrics.search_console_summary(db, executor, website_id, start_date, end_date)


@router.get("/search-console/top", summary="Top Search Console queries or pages")
async def search_console_top(
    website_id: str = Path(..., min_length=1, max_length=255),
    dimension: Literal["query", "page"] = Query("query"),
    start_date: str = Query(metrics.DEFAULT_START, alias="startDate"),
    end_date: str = Query(metrics.DEFAULT_END, alias="endDate"),
    limit: int = Query(10, ge=1, le=1000),
    db: Session = Depends(get_db),
    executor: CallExecutor = Depends(get_executor),
):
    return await metrics.search_console_top(
        db, executor, website_id, dimension=dimension, start_date=start_date, end_date=end_date, limit=limit
    )


@router.get("/ga4/summary", summary="GA4 totals and daily series")
async def ga4_summary(
    website_id: str = Path(..., min_length=1, max_length=255),
    start_date: str = Query(metrics.DEFAULT_START, alias="startDate"),
    end_date: str = Query(metrics.DEFAULT_END, alias="endDate"),
    db: Session = Depends(get_db),
    executor: CallExecutor = Depends(get_executor),
):
    return await metrics.ga4_summary(db, executor, website_id, start_date, end_date)


@router.get("/ga4/top-landing-pages", summary="GA4 landing pages by sessions")
async def ga4_top_landing_pages(
    website_id: str = Path(..., min_length=1, max_length=255),
    start_date: str = Query(metrics.DEFAULT_START, alias="startDate"),
    end_date: str = Query(metrics.DEFAULT_END, alias="endDate"),
    limit: int = Query(10, ge=1, le=1000),
    db: Session = Depends(get_db),
    executor: CallExecutor = Depends(get_executor),
):
    return await metrics.ga4_top_landing_pages(
        db, executor, website_id, start_date=start_date, end_date=end_date, limit=limit
    )


@router.get("/metrics", summary="Search Console and GA4 summaries in one call")
async def combined(
    website_id: str = Path(..., min_length=1, max_length=255),
    start_date: str = Query(metrics.DEFAULT_START, alias="startDate"),
    end_date: str = Query(metrics.DEFAULT_END, alias="endDate"),
    db: Session = Depends(get_db),
    executor: CallExecutor = Depends(get_executor),
):
    return await metrics.combined_metrics(db, executor, website_id, start_date, end_date)
