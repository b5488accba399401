from __future__ import annotations
import re
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.errors import BadRequest, ConnectorError, NoProperty
from app.services.executor import CallExecutor
from app.services.google_apis import AnalyticsDataClient, SearchConsoleClient

DEFAULT_START = "30daysAgo"
DEFAULT_END = "yesterday"

_DAYS_AGO = re.compile(r"^(\d{1,4})daysAgo$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

GA4_SUMMARY_METRICS = ["sessions", "totalUsers", "screenPageViews", "averageSessionDuration", "bounceRate", "conversions"]
GA4_LANDING_METRICS = ["sessions", "totalUsers", "screenPageViews", "conversions"]


def resolve_date(expr: str, today: Optional[date] = None) -> str:
    """
    `today`, `yesterday`, `NdaysAgo` or `YYYY-MM-DD` -> `YYYY-MM-DD`.
    Search Console only understands absolute dates; GA4 accepts both forms.
    """
    today = today or date.today()
    expr = (expr or "").strip()
    if expr == "today":
        return today.isoformat()
    if expr == "yesterday":
        return (today - timedelta(days=1)).isoformat()
    m = _DAYS_AGO.match(expr)
    if m:
        return (today - timedelta(days=int(m.group(1)))).isoformat()
    if _ISO_DATE.match(expr):
        try:
            return date.fromisoformat(expr).isoformat()
        except ValueError:
            pass
    raise BadRequest(f"invalid date '{expr}' (use YYYY-MM-DD, today, yesterday or NdaysAgo)")


def _date_range(start: str, end: str) -> tuple[str, str]:
    s, e = resolve_date(start), resolve_date(end)
    if s > e:
        raise BadRequest("startDate must not be after endDate")
    return s, e


def _num(v: Any) -> float:
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


# ---- Search Console ----------------------------------------------------------
def _require_sc_property(executor: CallExecutor, db: Session, website_id: str) -> str:
    row = executor.grants.load(db, website_id)
    if not row.sc_property:
        raise NoProperty("Search Console property not configured")
    return row.sc_property


def _sc_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "clicks": _num(row.get("clicks")),
        "impressions": _num(row.get("impressions")),
        "ctr": _num(row.get("ctr")),
        "position": _num(row.get("position")),
    }


def shape_search_console_summary(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    by_day = [{"date": (r.get("keys") or [""])[0], **_sc_row(r)} for r in rows]
    totals = {"clicks": 0, "impressions": 0, "ctr": 0, "position": 0}
    if by_day:
        totals["clicks"] = sum(d["clicks"] for d in by_day)
        totals["impressions"] = sum(d["impressions"] for d in by_day)
        totals["ctr"] = totals["clicks"] / (totals["impressions"] or 1)
        totals["position"] = sum(d["position"] for d in by_day) / len(by_day)
    return {"totals": totals, "byDay": by_day}


async def search_console_summary(db: Session, executor: CallExecutor, website_id: str,
                                 start_date: str = DEFAULT_START, end_date: str = DEFAULT_END) -> Dict[str, Any]:
    start, end = _date_range(start_date, end_date)
    site = _require_sc_property(executor, db, website_id)
    body = {"startDate": start, "endDate": end, "dimensions": ["date"]}
    rows = await executor.execute(db, website_id, SearchConsoleClient, lambda c: c.query(site, body))
    return shape_search_console_summary(rows)


async def search_console_top(db: Session, executor: CallExecutor, website_id: str, *,
                             dimension: str = "query", start_date: str = DEFAULT_START,
                             end_date: str = DEFAULT_END, limit: int = 10) -> Dict[str, Any]:
    if dimension not in ("query", "page"):
        raise BadRequest("dimension must be 'query' or 'page'")
    start, end = _date_range(start_date, end_date)
    site = _require_sc_property(executor, db, website_id)
    body = {"startDate": start, "endDate": end, "dimensions": [dimension], "rowLimit": limit}
    rows = await executor.execute(db, website_id, SearchConsoleClient, lambda c: c.query(site, body))
    items = [{dimension: (r.get("keys") or [""])[0], **_sc_row(r)} for r in rows]
    return {"dimension": dimension, "items": items}


# ---- GA4 ---------------------------------------------------------------------
def _require_ga4_property(executor: CallExecutor, db: Session, website_id: str) -> str:
    row = executor.grants.load(db, website_id)
    if not row.ga4_property_id:
        raise NoProperty("GA4 property not configured")
    return row.ga4_property_id


def _metric_values(row: Dict[str, Any]) -> List[str]:
    return [m.get("value", "0") for m in row.get("metricValues") or []]


def _dimension_value(row: Dict[str, Any]) -> str:
    dims = row.get("dimensionValues") or [{}]
    return dims[0].get("value", "")


def shape_ga4_summary(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    by_day = []
    for r in rows:
        m = _metric_values(r) + ["0"] * len(GA4_SUMMARY_METRICS)
        by_day.append({
            "date": _dimension_value(r),
            "sessions": int(_num(m[0])),
            "users": int(_num(m[1])),
            "pageViews": int(_num(m[2])),
            "avgSessionDuration": _num(m[3]),
            "bounceRate": _num(m[4]),
            "conversions": int(_num(m[5])),
        })

    totals = {"sessions": 0, "users": 0, "pageViews": 0, "avgSessionDuration": 0, "bounceRate": 0, "conversions": 0}
    if by_day:
        for k in ("sessions", "users", "pageViews", "conversions"):
            totals[k] = sum(d[k] for d in by_day)
        totals["avgSessionDuration"] = sum(d["avgSessionDuration"] for d in by_day) / len(by_day)
        totals["bounceRate"] = sum(d["bounceRate"] for d in by_day) / len(by_day)
    return {"totals": totals, "byDay": by_day}


async def ga4_summary(db: Session, executor: CallExecutor, website_id: str,
                      start_date: str = DEFAULT_START, end_date: str = DEFAULT_END) -> Dict[str, Any]:
    start, end = _date_range(start_date, end_date)
    prop = _require_ga4_property(executor, db, website_id)
    body = {
        "dateRanges": [{"startDate": start, "endDate": end}],
        "dimensions": [{"name": "date"}],
        "metrics": [{"name": n} for n in GA4_SUMMARY_METRICS],
    }
    rows = await executor.execute(db, website_id, AnalyticsDataClient, lambda c: c.run_report(prop, body))
    return shape_ga4_summary(rows)


async def ga4_top_landing_pages(db: Session, executor: CallExecutor, website_id: str, *,
                                start_date: str = DEFAULT_START, end_date: str = DEFAULT_END,
                                limit: int = 10) -> Dict[str, Any]:
    start, end = _date_range(start_date, end_date)
    prop = _require_ga4_property(executor, db, website_id)
    body = {
        "dateRanges": [{"startDate": start, "endDate": end}],
        "dimensions": [{"name": "landingPage"}],
        "metrics": [{"name": n} for n in GA4_LANDING_METRICS],
        "limit": str(limit),
        "orderBys": [{"metric": {"metricName": "sessions"}, "desc": True}],
    }
    rows = await executor.execute(db, website_id, AnalyticsDataClient, lambda c: c.run_report(prop, body))
    items = []
    for r in rows:
        m = _metric_values(r) + ["0"] * len(GA4_LANDING_METRICS)
        items.append({
            "landingPage": _dimension_value(r),
            "sessions": int(_num(m[0])),
            "users": int(_num(m[1])),
            "pageViews": int(_num(m[2])),
            "conversions": int(_num(m[3])),
        })
    return {"items": items}


# ---- Combined ----------------------------------------------------------------
async def combined_metrics(db: Session, executor: CallExecutor, website_id: str,
                           start_date: str = DEFAULT_START, end_date: str = DEFAULT_END) -> Dict[str, Any]:
    """Both summaries for one range; a section that fails carries its own error instead of failing the whole."""
    start, end = _date_range(start_date, end_date)
    executor.grants.load(db, website_id)

    out: Dict[str, Any] = {"websiteId": website_id, "startDate": start, "endDate": end}
    for key, fn in (("searchConsole", search_console_summary), ("ga4", ga4_summary)):
        try:
            out[key] = await fn(db, executor, website_id, start, end)
        except ConnectorError as e:
            out[key] = e.to_dict()
    return out
