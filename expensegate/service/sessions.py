from __future__ import annotations

from datetime import datetime
from typing import Callable, List, NoReturn, Optional, Protocol

from expensegate.config import GateConfig
from expensegate.logging import get_logger
from expensegate.service.errors import (
    AccountRestrictedError,
    InvalidCredentialsError,
    NotFoundError,
    ServiceError,
    StoreUnavailableError,
    TooManyAttemptsError,
)
from expensegate.service.gate import Principal
from expensegate.service.lockout import LockoutTracker
from expensegate.service.tokens import TokenCodec
from expensegate.storage.common import call_store, normalize_ip_address
from expensegate.storage.errors import StoreUnavailable
from expensegate.storage.models import Account, Session, utcnow

logger = get_logger(__name__)


class LifecycleStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_code(self, code: str) -> Optional[Account]: ...

    def list_accounts(self, *, banned: Optional[bool] = None) -> List[Account]: ...

    def ban_account(self, account_id: str) -> Optional[Account]: ...

    def record_account_ip(self, account_id: str, ip_addr: str) -> Optional[Account]: ...

    def mark_login(self, account_id: str, at: datetime) -> None: ...

    def mark_logout(self, account_id: str, at: datetime) -> None: ...

    def create_session(self, account_id: str, token: str) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_session(self, account_id: str, token: str) -> Optional[Session]: ...

    def list_sessions(self, *, revoked: Optional[bool] = None) -> List[Session]: ...

    def revoke_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def ban_account_sessions(self, account_id: str) -> int: ...

    def delete_account_sessions(self, account_id: str) -> int: ...


class SessionService:
    """Access-code login and administrative session lifecycle."""

    def __init__(
        self,
        store: LifecycleStore,
        config: GateConfig,
        *,
        codec: TokenCodec,
        lockout: LockoutTracker,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.codec = codec
        self.lockout = lockout
        self._clock = clock
        self.logger = logger

    async def _call(self, fn, *args, **kwargs):
        try:
            return await call_store(fn, *args, **kwargs)
        except StoreUnavailable as exc:
            self.logger.error(
                "store_unavailable",
                backend=exc.backend,
                operation=getattr(fn, "__name__", "store_call"),
                error=str(exc),
            )
            raise StoreUnavailableError() from exc

    async def _reject(self, ip_text: str, exc: ServiceError) -> NoReturn:
        decision = await self.lockout.record_attempt(ip_text)
        if not decision.allowed:
            raise TooManyAttemptsError(retry_after=decision.retry_after_seconds)
        raise exc

    async def login(
        self, code: str, ip_addr: Optional[str]
    ) -> tuple[Account, Session, str]:
        """Exchange an access code for a signed token bound to a new session.

        A locked-out ``ip_addr`` is refused with ``TooManyAttemptsError``
        before the code is looked up, even when the code is valid. Unknown,
        inactive, restricted and expired codes each count as a failed attempt
        for ``ip_addr``; once the attempt crosses the limit
        ``TooManyAttemptsError`` replaces the specific rejection.
        """
        ip_text = normalize_ip_address(ip_addr)
        locked = await self.lockout.check_locked(ip_text)
        if not locked.allowed:
            self.logger.info("login_rejected", client_ip=ip_text, reason="too_many_attempts")
            raise TooManyAttemptsError(retry_after=locked.retry_after_seconds)

        account = await self._call(self.store.get_account_by_code, code) if code else None
        if account is not None and account.is_restricted:
            self.logger.info("login_rejected", account_id=account.id, reason="account_restricted")
            await self._reject(ip_text, AccountRestrictedError())
        if account is None or not account.is_active:
            await self._reject(ip_text, InvalidCredentialsError())

        now = self._clock()
        if account.valid_until is not None and now > account.valid_until:
            self.logger.info("login_rejected", account_id=account.id, reason="access_code_expired")
            await self._reject(
                ip_text,
                InvalidCredentialsError(
                    "access code has expired", detail={"reason": "access_code_expired"}
                ),
            )

        token = self.codec.sign(
            {"sub": account.id, "role": account.role, "name": account.name},
            now + self.config.token_ttl,
        )
        session = await self._call(self.store.create_session, account.id, token)
        await self._call(self.store.mark_login, account.id, now)
        updated = await self._call(self.store.record_account_ip, account.id, ip_text)
        self.logger.info(
            "login_succeeded", account_id=account.id, session_id=session.id, role=account.role
        )
        return updated or account, session, token

    async def logout(self, principal: Principal, token: str) -> Optional[Session]:
        session = await self._call(self.store.find_session, principal.subject_id, token)
        if session is None:
            return None
        revoked = await self._call(self.store.revoke_session, session.id)
        await self._call(self.store.mark_logout, principal.subject_id, self._clock())
        self.logger.info("logout", account_id=principal.subject_id, session_id=session.id)
        return revoked

    async def get_session(self, session_id: str) -> Session:
        session = await self._call(self.store.get_session, session_id)
        if session is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        return session

    async def revoke_session(self, session_id: str) -> Session:
        session = await self._call(self.store.revoke_session, session_id)
        if session is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        self.logger.info("session_revoked", session_id=session_id, account_id=session.account_id)
        return session

    async def revoke_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        count = await self._call(
            self.store.revoke_account_sessions, account_id, except_session_id
        )
        self.logger.info("account_sessions_revoked", account_id=account_id, count=count)
        return count

    async def ban_account_sessions(self, account_id: str) -> int:
        count = await self._call(self.store.ban_account_sessions, account_id)
        self.logger.info("account_sessions_banned", account_id=account_id, count=count)
        return count

    async def delete_account_sessions(self, account_id: str) -> int:
        count = await self._call(self.store.delete_account_sessions, account_id)
        self.logger.info("account_sessions_deleted", account_id=account_id, count=count)
        return count

    async def ban_account(self, account_id: str) -> Account:
        """Ban an account and every session it holds."""
        account = await self._call(self.store.ban_account, account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        sessions_banned = await self._call(self.store.ban_account_sessions, account_id)
        self.logger.warning(
            "account_banned", account_id=account_id, sessions_banned=sessions_banned
        )
        return account

    async def list_active_sessions(self) -> List[Session]:
        return await self._call(self.store.list_sessions, revoked=False)

    async def list_revoked_sessions(self) -> List[Session]:
        return await self._call(self.store.list_sessions, revoked=True)

    async def list_banned_accounts(self) -> List[Account]:
        return await self._call(self.store.list_accounts, banned=True)
