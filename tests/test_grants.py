import asyncio
import time
from urllib.parse import parse_qs, urlparse

import pytest

from app.core.errors import (
    IncompleteGrant,
    InvalidState,
    NotConnected,
    ReauthorizationRequired,
    TokenExchangeFailed,
)
from app.db.models import Connection
from app.services.google_oauth import GOOGLE_TOKEN_ENDPOINT, GOOGLE_USERINFO_ENDPOINT, REQUIRED_SCOPES
from app.services.state import create_state
from tests.conftest import SHARED_SECRET, google_error, token_reply


def consent_params(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def test_begin_authorization_builds_offline_consent_url(grants):
    url = grants.begin_authorization("site-1")
    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    params = consent_params(url)
    assert params["access_type"] == "offline"
    assert params["prompt"] == "consent"
    assert params["response_type"] == "code"
    assert params["redirect_uri"] == "http://test/auth/callback"
    assert params["scope"].split() == REQUIRED_SCOPES
    assert params["state"].count(".") == 2


def test_begin_authorization_persists_nothing(grants, db):
    grants.begin_authorization("site-1")
    assert db.query(Connection).count() == 0


@pytest.mark.asyncio
async def test_complete_authorization_stores_connection(grants, db, fake_google, userinfo_ok):
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, token_reply())
    state = consent_params(grants.begin_authorization("site-1"))["state"]

    conn = await grants.complete_authorization(db, code="auth-code", state=state)

    assert conn.website_id == "site-1"
    assert conn.google_user_email == "owner@example.com"
    assert grants.store.access_token(conn) == "at-1"
    assert grants.store.refresh_token(conn) == "rt-1"
    assert conn.expiry_date > time.time() * 1000 + 3500 * 1000
    assert sorted(grants.store.scopes(conn)) == sorted(REQUIRED_SCOPES)
    # encrypted at rest
    assert "at-1" not in conn.access_token_enc

    exchange = fake_google.token_calls("authorization_code")
    assert len(exchange) == 1
    assert exchange[0]["code"] == "auth-code"


@pytest.mark.asyncio
async def test_second_grant_overwrites_first(grants, db, fake_google, userinfo_ok, seed_connection):
    seed_connection("site-1", sc_property="https://old.example/", ga4_property_id="111")
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, token_reply(access="at-2", refresh="rt-2"))
    state = create_state("site-1", secret=SHARED_SECRET)

    await grants.complete_authorization(db, code="c", state=state)

    rows = db.query(Connection).filter(Connection.website_id == "site-1").all()
    assert len(rows) == 1
    assert grants.store.refresh_token(rows[0]) == "rt-2"
    assert rows[0].sc_property is None
    assert rows[0].ga4_property_id is None


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", [
    token_reply(refresh=None),
    token_reply(access=None),
    (200, {"access_token": "at", "refresh_token": "rt"}),
])
async def test_partial_grant_is_never_persisted(grants, db, fake_google, userinfo_ok, reply):
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, reply)
    state = create_state("site-1", secret=SHARED_SECRET)
    with pytest.raises(IncompleteGrant):
        await grants.complete_authorization(db, code="c", state=state)
    assert db.query(Connection).count() == 0


@pytest.mark.asyncio
async def test_rejected_code_is_token_exchange_failure(grants, db, fake_google):
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, (400, {"error": "invalid_grant", "error_description": "Bad Request"}))
    state = create_state("site-1", secret=SHARED_SECRET)
    with pytest.raises(TokenExchangeFailed, match="Bad Request"):
        await grants.complete_authorization(db, code="used", state=state)
    assert db.query(Connection).count() == 0


@pytest.mark.asyncio
async def test_bad_state_stops_before_exchange(grants, db, fake_google):
    with pytest.raises(InvalidState):
        await grants.complete_authorization(db, code="c", state=create_state("site-1", secret="other"))
    assert fake_google.requests == []


@pytest.mark.asyncio
async def test_userinfo_failure_keeps_the_grant(grants, db, fake_google):
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, token_reply())
    fake_google.reply("GET", GOOGLE_USERINFO_ENDPOINT, (500, {"error": "x"}))
    state = create_state("site-1", secret=SHARED_SECRET)

    conn = await grants.complete_authorization(db, code="c", state=state)
    assert conn.google_user_email == ""


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [["unexpected"], "owner@example.com", None, {"email": None}])
async def test_odd_userinfo_body_keeps_the_grant(grants, db, fake_google, body):
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, token_reply())
    fake_google.reply("GET", GOOGLE_USERINFO_ENDPOINT, (200, body))
    state = create_state("site-1", secret=SHARED_SECRET)

    conn = await grants.complete_authorization(db, code="c", state=state)
    assert conn.google_user_email == ""
    assert db.get(Connection, "site-1") is not None


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_network(grants, db, fake_google, seed_connection):
    seed_connection("site-1", expires_in_s=301 + 60)
    assert await grants.ensure_fresh_access_token(db, "site-1") == "at-stored"
    assert fake_google.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("expires_in_s", [299, 0, -3600])
async def test_expiring_token_is_refreshed_once(grants, db, fake_google, seed_connection, expires_in_s):
    seed_connection("site-1", expires_in_s=expires_in_s)
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, token_reply(access="at-new", refresh=None))

    assert await grants.ensure_fresh_access_token(db, "site-1") == "at-new"

    refreshes = fake_google.token_calls("refresh_token")
    assert len(refreshes) == 1
    assert refreshes[0]["refresh_token"] == "rt-stored"
    row = grants.store.get(db, "site-1", fresh=True)
    assert grants.store.access_token(row) == "at-new"
    assert grants.store.refresh_token(row) == "rt-stored"
    assert row.expiry_date > time.time() * 1000 + 3000 * 1000


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_kept(grants, db, fake_google, seed_connection):
    seed_connection("site-1", expires_in_s=10)
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, token_reply(access="at-new", refresh="rt-rotated"))
    await grants.ensure_fresh_access_token(db, "site-1")
    assert grants.store.refresh_token(grants.store.get(db, "site-1", fresh=True)) == "rt-rotated"


@pytest.mark.asyncio
async def test_revoked_refresh_token_requires_reauthorization(grants, db, fake_google, seed_connection):
    seed_connection("site-1", expires_in_s=10)
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, (400, {"error": "invalid_grant", "error_description": "Token has been expired or revoked."}))
    with pytest.raises(ReauthorizationRequired):
        await grants.ensure_fresh_access_token(db, "site-1")
    assert len(fake_google.token_calls("refresh_token")) == 1


@pytest.mark.asyncio
async def test_unknown_website_is_not_connected(grants, db, fake_google):
    with pytest.raises(NotConnected):
        await grants.ensure_fresh_access_token(db, "nobody")
    assert fake_google.requests == []


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_exchange(grants, db, fake_google, seed_connection):
    seed_connection("site-1", expires_in_s=10)
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, token_reply(access="at-new", refresh=None))
    fake_google.delay = 0.01

    results = await asyncio.gather(*[grants.ensure_fresh_access_token(db, "site-1") for _ in range(3)])

    assert results == ["at-new"] * 3
    assert len(fake_google.token_calls("refresh_token")) == 1
    assert grants._locks == {}


@pytest.mark.asyncio
async def test_callback_with_other_secret_state_does_not_touch_google(grants, db, fake_google):
    fake_google.reply("POST", GOOGLE_TOKEN_ENDPOINT, google_error(500))
    with pytest.raises(InvalidState):
        await grants.complete_authorization(db, code="c", state="x.y.z")
    assert fake_google.token_calls() == []
