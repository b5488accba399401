import asyncio
import time
from collections import defaultdict
from urllib.parse import parse_qs, quote

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient

from app.core.config import Settings
from app.db.models import Base
from app.main import create_app
from app.services.google_apis import ANALYTICS_DATA_BASE, SEARCH_CONSOLE_BASE
from app.services.google_oauth import GOOGLE_TOKEN_ENDPOINT, GOOGLE_USERINFO_ENDPOINT, REQUIRED_SCOPES
from app.services.retry import RetryPolicy

SHARED_SECRET = "test-shared-secret"
API_HEADERS = {"X-API-Key": SHARED_SECRET}
SITE = "https://www.example.com/"
GA4_ID = "123456789"

SITES_URL = f"{SEARCH_CONSOLE_BASE}/sites"
SC_QUERY_URL = f"{SEARCH_CONSOLE_BASE}/sites/{quote(SITE, safe='')}/searchAnalytics/query"
GA4_REPORT_URL = f"{ANALYTICS_DATA_BASE}/properties/{GA4_ID}:runReport"

FAST_RETRY = RetryPolicy(max_attempts=5, base_delay=0.0, max_delay=0.0, jitter=False)


def token_reply(access="at-1", refresh="rt-1", expires_in=3599, scope=" ".join(REQUIRED_SCOPES)):
    body = {"access_token": access, "expires_in": expires_in, "scope": scope, "token_type": "Bearer"}
    if refresh:
        body["refresh_token"] = refresh
    return 200, body


def google_error(status, message="error", reason=None, api_status=None):
    err = {"code": status, "message": message}
    if reason:
        err["errors"] = [{"reason": reason, "message": message}]
    if api_status:
        err["status"] = api_status
    return status, {"error": err}


class FakeGoogle:
    """Scripted stand-in for every Google endpoint the service calls."""

    def __init__(self):
        self._replies = defaultdict(list)
        self.requests = []
        self.delay = 0.0
        self.transport = httpx.MockTransport(self._handle)

    @staticmethod
    def _key(method, url):
        url = httpx.URL(url)
        return method.upper(), url.host, url.raw_path.split(b"?")[0]

    def reply(self, method, url, *replies):
        """Queue (status, json) replies; the last one repeats once the queue drains."""
        self._replies[self._key(method, url)].extend(replies)
        return self

    def calls(self, method, url):
        key = self._key(method, url)
        return [r for r in self.requests if self._key(r.method, r.url) == key]

    def token_calls(self, grant_type=None):
        out = []
        for r in self.calls("POST", GOOGLE_TOKEN_ENDPOINT):
            form = {k: v[0] for k, v in parse_qs(r.content.decode()).items()}
            if grant_type is None or form.get("grant_type") == grant_type:
                out.append(form)
        return out

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        queue = self._replies.get(self._key(request.method, request.url))
        if not queue:
            return httpx.Response(404, json={"error": {"code": 404, "message": f"unscripted {request.url}"}})
        status, body = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(status, json=body)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.sqlite3'}",
        LOG_DIR=str(tmp_path / "logs"),
        GOOGLE_CLIENT_ID="client-id",
        GOOGLE_CLIENT_SECRET="client-secret",
        GOOGLE_REDIRECT_URI="http://test/auth/callback",
        SERVICE_SHARED_SECRET=SHARED_SECRET,
        POST_AUTH_REDIRECT_BASE=None,
        ENCRYPTION_KEY=Fernet.generate_key().decode(),
    )


@pytest.fixture
def fake_google():
    return FakeGoogle()


@pytest.fixture
def app(settings, fake_google):
    application = create_app(settings, http_transport=fake_google.transport, retry_policy=FAST_RETRY)
    Base.metadata.create_all(bind=application.state.engine)
    yield application
    application.state.engine.dispose()


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def grants(app):
    return app.state.grant_manager


@pytest.fixture
def executor(app):
    return app.state.executor


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def seed_connection(db, grants):
    def _seed(website_id="site-1", *, expires_in_s=3600, scopes=REQUIRED_SCOPES,
              sc_property=None, ga4_property_id=None, access="at-stored", refresh="rt-stored"):
        store = grants.store
        row = store.upsert_grant(
            db,
            website_id=website_id,
            access_token=access,
            refresh_token=refresh,
            expiry_date=int(time.time() * 1000) + expires_in_s * 1000,
            scopes=scopes,
            google_user_email="owner@example.com",
        )
        if sc_property:
            row = store.set_sc_property(db, row, sc_property)
        if ga4_property_id:
            row = store.set_ga4_property(db, row, ga4_property_id)
        return row
    return _seed


@pytest.fixture
def userinfo_ok(fake_google):
    fake_google.reply("GET", GOOGLE_USERINFO_ENDPOINT, (200, {"email": "owner@example.com"}))
    return fake_google
