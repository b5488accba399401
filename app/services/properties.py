from __future__ import annotations
import logging
import re

from sqlalchemy.orm import Session

from app.core.errors import BadRequest, InsufficientScope, InvalidProperty, ProviderError
from app.db.models import Connection
from app.services.executor import CallExecutor
from app.services.google_apis import AnalyticsDataClient, SearchConsoleClient

log = logging.getLogger(__name__)

_GA4_ID = re.compile(r"^(?:properties/)?(\d+)$")


def normalize_ga4_property_id(value: str) -> str:
    m = _GA4_ID.match((value or "").strip())
    if not m:
        raise BadRequest("propertyId must be a numeric GA4 property id")
    return m.group(1)


async def select_search_console_property(
    db: Session, executor: CallExecutor, website_id: str, site_url: str
) -> Connection:
    """Persist `site_url` only if it appears verbatim in the account's site list."""
    site_url = (site_url or "").strip()
    if not site_url:
        raise BadRequest("property is required")

    executor.grants.load(db, website_id)
    sites = await executor.execute(db, website_id, SearchConsoleClient, lambda c: c.list_sites())
    if site_url not in sites:
        raise InvalidProperty(available=sites)

    row = executor.grants.load(db, website_id)
    log.info("search console property selected", extra={"website_id": website_id})
    return executor.grants.store.set_sc_property(db, row, site_url)


async def select_ga4_property(
    db: Session, executor: CallExecutor, website_id: str, property_id: str
) -> Connection:
    """Persist `property_id` only if a one-row report against it succeeds."""
    property_id = normalize_ga4_property_id(property_id)
    executor.grants.load(db, website_id)
    executor.check_scope(db, website_id, AnalyticsDataClient)

    probe = {
        "dateRanges": [{"startDate": "yesterday", "endDate": "yesterday"}],
        "metrics": [{"name": "sessions"}],
        "limit": "1",
    }
    try:
        await executor.execute(db, website_id, AnalyticsDataClient, lambda c: c.run_report(property_id, probe))
    except InsufficientScope as e:
        raise InvalidProperty(f"Property not accessible: {e.message}") from e
    except ProviderError as e:
        if e.extra.get("providerStatus") == 400:
            raise InvalidProperty(f"Property not accessible: {e.message}") from e
        raise

    row = executor.grants.load(db, website_id)
    log.info("ga4 property selected", extra={"website_id": website_id})
    return executor.grants.store.set_ga4_property(db, row, property_id)
