from __future__ import annotations
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from app.core.config import Settings
from app.services.provider_errors import FailureKind, ProviderHTTPError, parse_provider_failure

log = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_status(status: Optional[int]) -> bool:
    """429 and any 5xx are worth another attempt; every other status is final."""
    if status is None:
        return False
    return status == 429 or 500 <= status <= 599


def default_classifier(exc: BaseException) -> bool:
    """Only raw Google answers are retried: 429, 5xx and quota denials sent as 403."""
    if not isinstance(exc, ProviderHTTPError):
        return False
    if is_transient_status(exc.status_code):
        return True
    return parse_provider_failure(exc).kind is FailureKind.RATE_LIMIT


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 8.0
    max_total_delay: float = 20.0
    jitter: bool = True
    classifier: Callable[[BaseException], bool] = field(default=default_classifier)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.RETRY_MAX_ATTEMPTS),
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            factor=settings.RETRY_BACKOFF_FACTOR,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            max_total_delay=settings.RETRY_MAX_TOTAL_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based), computed from the attempt count alone."""
        delay = min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)
        if self.jitter:
            # equal jitter: never less than half the nominal delay
            delay = delay / 2 + random.uniform(0, delay / 2)
        return delay


async def execute_with_policy(
    policy: RetryPolicy,
    call: Callable[[], Awaitable[T]],
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `call` until it succeeds, raises something the classifier rejects,
    or the attempt/total-delay budget is spent. The last exception is re-raised as-is.
    """
    waited = 0.0
    attempt = 1
    while True:
        try:
            return await call()
        except Exception as exc:
            if not policy.classifier(exc) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            if waited + delay > policy.max_total_delay:
                log.warning("retry budget exhausted", extra={"attempt": attempt, "waited_s": round(waited, 3)})
                raise
            log.info(
                "transient provider failure, retrying",
                extra={"attempt": attempt, "delay_s": round(delay, 3), "status": getattr(exc, "status_code", None)},
            )
            await sleep(delay)
            waited += delay
            attempt += 1
