from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from expensegate.config import GateConfig
from expensegate.logging import get_logger
from expensegate.service.errors import (
    AccountNotFoundError,
    AccountRestrictedError,
    InvalidTokenError,
    ServiceError,
    SessionExpiredError,
    SessionRevokedError,
    StoreUnavailableError,
    TooManyAttemptsError,
)
from expensegate.service.lockout import LockoutTracker
from expensegate.service.tokens import TokenClaims, TokenCodec, TokenVerificationError
from expensegate.storage.common import call_store, normalize_ip_address
from expensegate.storage.errors import StoreUnavailable
from expensegate.storage.models import Account, Session, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def find_session(self, account_id: str, token: str) -> Optional[Session]: ...


class AccountStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def record_account_ip(self, account_id: str, ip_addr: str) -> Optional[Account]: ...


@dataclass(frozen=True)
class Principal:
    """Authenticated caller attached to the request context."""

    subject_id: str
    role: str
    display_name: Optional[str] = None


@dataclass(frozen=True)
class GateResult:
    principal: Optional[Principal] = None

    @property
    def anonymous(self) -> bool:
        return self.principal is None


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token of a ``Bearer`` header, or None when absent or malformed."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        return None
    return token


class AuthGate:
    """Per-request authentication and brute-force gate.

    Requests without a credential are counted against the source IP and pass
    through anonymously until the IP is locked out; route guards decide whether
    an anonymous caller may reach a given handler. Requests with a credential
    must carry a valid token bound to a live session of a live account.
    """

    def __init__(
        self,
        config: GateConfig,
        *,
        codec: TokenCodec,
        sessions: SessionStore,
        accounts: AccountStore,
        lockout: LockoutTracker,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.codec = codec
        self.sessions = sessions
        self.accounts = accounts
        self.lockout = lockout
        self._clock = clock

    async def evaluate(
        self, authorization: Optional[str], source_ip: Optional[str]
    ) -> GateResult:
        ip_text = normalize_ip_address(source_ip)
        try:
            return await self._evaluate(authorization, ip_text)
        except ServiceError as exc:
            if not isinstance(exc, StoreUnavailableError):
                logger.info(
                    "auth_denied",
                    reason=exc.reason,
                    status_code=exc.status_code,
                    client_ip=ip_text,
                )
            raise

    async def _evaluate(self, authorization: Optional[str], ip_text: str) -> GateResult:
        token = extract_bearer(authorization)
        if token is None:
            await self._count_attempt(ip_text)
            return GateResult(principal=None)

        try:
            claims = self.codec.verify(token)
        except TokenVerificationError as exc:
            await self._count_attempt(ip_text)
            raise InvalidTokenError(detail={"kind": exc.kind.value}) from None

        session = await self._call(self.sessions.find_session, claims.subject_id, token)
        if session is None or not session.is_usable:
            raise SessionRevokedError()

        account = await self._call(self.accounts.get_account, claims.subject_id)
        if account is None:
            raise AccountNotFoundError()
        if account.is_revoked or account.is_banned:
            raise AccountRestrictedError()

        # Store round-trips above may have carried the token past its expiry.
        if self._clock() >= claims.expires_at:
            raise SessionExpiredError()

        await self._call(self.accounts.record_account_ip, account.id, ip_text)
        return GateResult(principal=self._principal(claims, account))

    async def _count_attempt(self, ip_text: str) -> None:
        decision = await self.lockout.record_attempt(ip_text)
        if not decision.allowed:
            raise TooManyAttemptsError(retry_after=decision.retry_after_seconds)

    async def _call(self, fn, *args):
        try:
            return await call_store(fn, *args)
        except StoreUnavailable as exc:
            logger.error(
                "store_unavailable",
                backend=exc.backend,
                operation=getattr(fn, "__name__", "store_call"),
                error=str(exc),
            )
            raise StoreUnavailableError() from exc

    @staticmethod
    def _principal(claims: TokenClaims, account: Account) -> Principal:
        return Principal(
            subject_id=account.id,
            role=account.role,
            display_name=account.name or claims.display_name,
        )
