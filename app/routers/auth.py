from __future__ import annotations
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.core.errors import AuthorizationDenied, BadRequest, ConnectorError
from app.db.session import get_db
from app.services.grants import GrantManager

log = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["google-oauth"])


def get_grant_manager(request: Request) -> GrantManager:
    return request.app.state.grant_manager


def _post_auth_redirect(request: Request, **params: str) -> Optional[RedirectResponse]:
    base = request.app.state.settings.POST_AUTH_REDIRECT_BASE
    if not base:
        return None
    return RedirectResponse(f"{base.rstrip('/')}/integrations/google?{urlencode(params)}", status_code=302)


@router.get("/start", summary="Redirect to Google consent for a website")
def auth_start(
    website_id: Optional[str] = Query(default=None),
    grants: GrantManager = Depends(get_grant_manager),
):
    if not website_id or not website_id.strip():
        raise BadRequest("website_id query parameter is required")
    url = grants.begin_authorization(website_id.strip())
    return RedirectResponse(url, status_code=302)


@router.get("/callback", summary="OAuth callback: exchange code and store the connection")
async def auth_callback(
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    grants: GrantManager = Depends(get_grant_manager),
):
    try:
        if error:
            raise AuthorizationDenied(error)
        if not code or not state:
            raise BadRequest("Missing code or state parameter")
        conn = await grants.complete_authorization(db, code=code, state=state)
    except ConnectorError as e:
        log.warning("oauth callback failed", extra={"code": e.code})
        redirect = _post_auth_redirect(request, status="error", message=e.message)
        if redirect is not None:
            return redirect
        raise

    redirect = _post_auth_redirect(request, website_id=conn.website_id, status="success")
    if redirect is not None:
        return redirect
    return {
        "success": True,
        "message": "Google account connected successfully",
        "websiteId": conn.website_id,
        "email": conn.google_user_email,
    }
