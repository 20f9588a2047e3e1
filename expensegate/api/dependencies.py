from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request

from expensegate.service.errors import AuthenticationError, InsufficientRoleError
from expensegate.service.gate import Principal
from expensegate.service.runtime import Runtime, get_runtime
from expensegate.storage.common import validate_role


def runtime_dep(request: Request) -> Runtime:
    provider = getattr(request.app.state, "runtime_provider", None)
    return provider() if provider else get_runtime()


def get_principal(request: Request) -> Optional[Principal]:
    """Principal attached by the gate, or None for anonymous callers."""
    return getattr(request.state, "principal", None)


def require_principal(
    principal: Optional[Principal] = Depends(get_principal),
) -> Principal:
    if principal is None:
        raise AuthenticationError()
    return principal


def require_role(*roles: str):
    """Build a dependency admitting only principals holding one of ``roles``."""
    allowed = frozenset(validate_role(role) for role in roles)

    def _check(principal: Principal = Depends(require_principal)) -> Principal:
        if principal.role not in allowed:
            raise InsufficientRoleError(detail={"required": sorted(allowed)})
        return principal

    return _check
