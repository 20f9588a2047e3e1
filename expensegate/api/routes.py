from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from expensegate.api.dependencies import require_principal, require_role, runtime_dep
from expensegate.api.middleware import resolve_client_ip
from expensegate.api.schemas import (
    AccountResponse,
    CountResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    PrincipalResponse,
    SessionResponse,
)
from expensegate.service.errors import ForbiddenError, NotFoundError
from expensegate.service.gate import Principal, extract_bearer
from expensegate.service.runtime import Runtime

router = APIRouter(prefix="/api")

require_admin = require_role("admin")


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, request: Request, runtime: Runtime = Depends(runtime_dep)
):
    """Exchange an access code for a bearer token.

    Raises:
        401: If the access code is unknown, inactive or expired
        403: If the account is revoked or banned
        429: If the source IP is locked out
    """
    client_ip = resolve_client_ip(
        request, trust_forwarded_for=runtime.settings.trust_forwarded_for
    )
    account, session, token = await runtime.sessions.login(body.access_code, client_ip)
    claims = runtime.codec.verify(token)
    return Envelope(
        status="ok",
        data=LoginResponse(
            account_id=account.id,
            session_id=session.id,
            role=account.role,
            name=account.name,
            access_token=token,
            expires_at=claims.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    principal: Principal = Depends(require_principal),
    runtime: Runtime = Depends(runtime_dep),
):
    token = extract_bearer(request.headers.get("Authorization"))
    session = await runtime.sessions.logout(principal, token or "")
    return Envelope(status="ok", data={"revoked": session is not None})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(require_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            subject_id=principal.subject_id,
            role=principal.role,
            display_name=principal.display_name,
        ),
    )


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_active_sessions(
    principal: Principal = Depends(require_admin),
    runtime: Runtime = Depends(runtime_dep),
):
    sessions = await runtime.sessions.list_active_sessions()
    return Envelope(status="ok", data=[SessionResponse.from_model(s) for s in sessions])


@router.get("/sessions/revoked", response_model=Envelope, tags=["sessions"])
async def list_revoked_sessions(
    principal: Principal = Depends(require_admin),
    runtime: Runtime = Depends(runtime_dep),
):
    sessions = await runtime.sessions.list_revoked_sessions()
    return Envelope(status="ok", data=[SessionResponse.from_model(s) for s in sessions])


@router.get("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def get_session(
    session_id: str,
    principal: Principal = Depends(require_principal),
    runtime: Runtime = Depends(runtime_dep),
):
    session = await runtime.sessions.get_session(session_id)
    if principal.role != "admin" and session.account_id != principal.subject_id:
        # Other accounts' sessions are reported as missing
        raise NotFoundError("session not found", detail={"session_id": session_id})
    return Envelope(status="ok", data=SessionResponse.from_model(session))


@router.put("/sessions/{session_id}/revoke", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str,
    principal: Principal = Depends(require_admin),
    runtime: Runtime = Depends(runtime_dep),
):
    session = await runtime.sessions.revoke_session(session_id)
    return Envelope(status="ok", data=SessionResponse.from_model(session))


@router.put(
    "/accounts/{account_id}/sessions/revoke", response_model=Envelope, tags=["sessions"]
)
async def revoke_account_sessions(
    account_id: str,
    principal: Principal = Depends(require_admin),
    runtime: Runtime = Depends(runtime_dep),
):
    count = await runtime.sessions.revoke_account_sessions(account_id)
    return Envelope(status="ok", data=CountResponse(account_id=account_id, count=count))


@router.put(
    "/accounts/{account_id}/sessions/ban", response_model=Envelope, tags=["sessions"]
)
async def ban_account_sessions(
    account_id: str,
    principal: Principal = Depends(require_admin),
    runtime: Runtime = Depends(runtime_dep),
):
    count = await runtime.sessions.ban_account_sessions(account_id)
    return Envelope(status="ok", data=CountResponse(account_id=account_id, count=count))


@router.delete(
    "/accounts/{account_id}/sessions", response_model=Envelope, tags=["sessions"]
)
async def delete_account_sessions(
    account_id: str,
    principal: Principal = Depends(require_admin),
    runtime: Runtime = Depends(runtime_dep),
):
    count = await runtime.sessions.delete_account_sessions(account_id)
    return Envelope(status="ok", data=CountResponse(account_id=account_id, count=count))


@router.get("/accounts/banned", response_model=Envelope, tags=["accounts"])
async def list_banned_accounts(
    principal: Principal = Depends(require_admin),
    runtime: Runtime = Depends(runtime_dep),
):
    accounts = await runtime.sessions.list_banned_accounts()
    return Envelope(status="ok", data=[AccountResponse.from_model(a) for a in accounts])


@router.put("/accounts/{account_id}/ban", response_model=Envelope, tags=["accounts"])
async def ban_account(
    account_id: str,
    principal: Principal = Depends(require_admin),
    runtime: Runtime = Depends(runtime_dep),
):
    if account_id == principal.subject_id:
        raise ForbiddenError("administrators cannot ban themselves")
    account = await runtime.sessions.ban_account(account_id)
    return Envelope(status="ok", data=AccountResponse.from_model(account))
