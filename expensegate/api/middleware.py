from __future__ import annotations

from typing import Callable, Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from expensegate.api.error_handling import service_error_response
from expensegate.service.errors import ServiceError
from expensegate.service.gate import AuthGate


DEFAULT_EXEMPT_PATHS = ("/healthz", "/api/auth/login")


def resolve_client_ip(request: Request, *, trust_forwarded_for: bool = False) -> Optional[str]:
    """Return the caller's IP, honoring ``X-Forwarded-For`` only when trusted."""
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else None


class AuthGateMiddleware(BaseHTTPMiddleware):
    """Run the auth gate for each request and expose ``request.state.principal``."""

    def __init__(
        self,
        app,
        *,
        gate_provider: Callable[[], AuthGate],
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        trust_forwarded_for: bool = False,
    ) -> None:
        super().__init__(app)
        self.gate_provider = gate_provider
        self.exempt_paths = frozenset(exempt_paths)
        self.trust_forwarded_for = trust_forwarded_for

    async def dispatch(self, request: Request, call_next):
        request.state.principal = None
        if request.method == "OPTIONS" or request.url.path in self.exempt_paths:
            return await call_next(request)

        client_ip = resolve_client_ip(request, trust_forwarded_for=self.trust_forwarded_for)
        try:
            result = await self.gate_provider().evaluate(
                request.headers.get("Authorization"), client_ip
            )
        except ServiceError as exc:
            # Raised before routing, so app exception handlers never see it.
            return service_error_response(exc)
        request.state.principal = result.principal
        return await call_next(request)
