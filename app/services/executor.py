from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Type, TypeVar

import httpx
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import ConnectorError, InsufficientScope
from app.services.google_apis import GoogleApiClient
from app.services.grants import GrantManager
from app.services.provider_errors import handle_provider_error
from app.services.retry import RetryPolicy, execute_with_policy

log = logging.getLogger(__name__)

C = TypeVar("C", bound=GoogleApiClient)
T = TypeVar("T")


class CallExecutor:
    """
    Runs one provider operation for a website: fresh token -> bound client -> call with retry.
    Nothing raised past `execute` is a raw httpx/Google exception.
    """

    def __init__(
        self,
        settings: Settings,
        grants: GrantManager,
        policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.grants = grants
        self.policy = policy or RetryPolicy.from_settings(settings)
        self._transport = transport
        self._sleep = sleep

    def check_scope(self, db: Session, website_id: str, client_cls: Type[GoogleApiClient]) -> None:
        if not client_cls.required_scope:
            return
        granted = self.grants.store.scopes(self.grants.load(db, website_id))
        # an empty list means Google never reported scopes; let the API decide
        if granted and client_cls.required_scope not in granted:
            raise InsufficientScope(f"{client_cls.name} requires {client_cls.required_scope}")

    async def execute(
        self,
        db: Session,
        website_id: str,
        client_cls: Type[C],
        call: Callable[[C], Awaitable[T]],
    ) -> T:
        self.check_scope(db, website_id, client_cls)
        # refresh is not retried: a dead refresh token never heals by itself
        token = await self.grants.ensure_fresh_access_token(db, website_id)
        client = client_cls(token, timeout=self.settings.HTTP_TIMEOUT_SECONDS, transport=self._transport)

        try:
            return await execute_with_policy(self.policy, lambda: call(client), sleep=self._sleep)
        except ConnectorError:
            raise
        except Exception as exc:
            err = handle_provider_error(exc)
            log.warning(
                "provider call failed",
                extra={"website_id": website_id, "provider": client_cls.name, "code": err.code},
            )
            raise err from exc
