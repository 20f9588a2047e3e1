from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Protocol, Union

from expensegate.config import GateConfig
from expensegate.logging import get_logger
from expensegate.service.errors import StoreUnavailableError
from expensegate.storage.common import call_store, normalize_ip_address
from expensegate.storage.errors import StoreUnavailable
from expensegate.storage.models import LockoutRecord, utcnow

logger = get_logger(__name__)


class LockoutBackend(Protocol):
    """Storage for per-IP failed attempt counters.

    ``increment_attempt`` must reset the counter to 1 when no record exists or
    ``now - last_attempt_at >= window``, otherwise increment it, and stamp
    ``now``. The read-modify-write is atomic per IP.
    """

    def increment_attempt(
        self, ip_addr: str, now: datetime, window: timedelta
    ) -> Union[LockoutRecord, Awaitable[LockoutRecord]]: ...

    def get_lockout(
        self, ip_addr: str
    ) -> Union[Optional[LockoutRecord], Awaitable[Optional[LockoutRecord]]]: ...


@dataclass(frozen=True)
class LockoutDecision:
    allowed: bool
    attempts: int
    retry_after_seconds: int = 0


class LockoutTracker:
    """Per-IP brute-force lockout using sliding-window-by-reset counters."""

    def __init__(
        self,
        backend: LockoutBackend,
        config: GateConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.max_attempts = config.max_attempts
        self.window = config.lockout_window
        self._clock = clock

    async def record_attempt(self, ip_addr: str) -> LockoutDecision:
        ip_text = normalize_ip_address(ip_addr)
        try:
            record = await call_store(
                self.backend.increment_attempt, ip_text, self._clock(), self.window
            )
        except StoreUnavailable as exc:
            logger.error(
                "store_unavailable",
                backend=exc.backend,
                operation="increment_attempt",
                error=str(exc),
            )
            raise StoreUnavailableError() from exc

        allowed = record.attempts <= self.max_attempts
        if allowed:
            return LockoutDecision(allowed=True, attempts=record.attempts)
        if record.attempts == self.max_attempts + 1:
            logger.warning(
                "lockout_triggered",
                client_ip=ip_text,
                attempts=record.attempts,
                window_seconds=int(self.window.total_seconds()),
            )
        # Every denied attempt restamps the record, so the full window applies.
        return LockoutDecision(
            allowed=False,
            attempts=record.attempts,
            retry_after_seconds=math.ceil(self.window.total_seconds()),
        )

    async def check_locked(self, ip_addr: str) -> LockoutDecision:
        """Report whether ``ip_addr`` is locked out without counting an attempt.

        A record over the limit stays locked until a full window has passed
        since its last attempt; ``retry_after_seconds`` is the time remaining.
        """
        record = await self._read(normalize_ip_address(ip_addr))
        if record is None:
            return LockoutDecision(allowed=True, attempts=0)
        elapsed = self._clock() - record.last_attempt_at
        if elapsed >= self.window:
            return LockoutDecision(allowed=True, attempts=0)
        if record.attempts <= self.max_attempts:
            return LockoutDecision(allowed=True, attempts=record.attempts)
        return LockoutDecision(
            allowed=False,
            attempts=record.attempts,
            retry_after_seconds=math.ceil((self.window - elapsed).total_seconds()),
        )

    async def current_attempts(self, ip_addr: str) -> int:
        """Return the stored attempt count for ``ip_addr`` without mutating it."""
        record = await self._read(normalize_ip_address(ip_addr))
        return record.attempts if record else 0

    async def _read(self, ip_text: str) -> Optional[LockoutRecord]:
        try:
            return await call_store(self.backend.get_lockout, ip_text)
        except StoreUnavailable as exc:
            logger.error(
                "store_unavailable",
                backend=exc.backend,
                operation="get_lockout",
                error=str(exc),
            )
            raise StoreUnavailableError() from exc
