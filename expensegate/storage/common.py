"""Helpers shared between the memory and Postgres stores and their callers."""

from __future__ import annotations

import asyncio
import inspect
import uuid
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Callable, Dict, Optional

from expensegate.storage.errors import ConstraintViolation
from expensegate.storage.models import ROLES, Account

# Fields an administrator may change through update_account. IP audit fields
# are written only by record_account_ip.
ACCOUNT_MUTABLE_FIELDS = frozenset(
    {"name", "code", "role", "valid_until", "is_active", "is_revoked", "is_banned"}
)


def generate_uuid() -> str:
    return str(uuid.uuid4())


def validate_role(role: str) -> str:
    if role not in ROLES:
        raise ConstraintViolation("unknown role", {"role": role, "allowed": list(ROLES)})
    return role


def normalize_ip_address(raw_ip: Any) -> str:
    """Canonical text form of an IP so history set-semantics hold.

    Values that are not IP literals (e.g. the ``testclient`` host) are kept as-is.
    """
    if raw_ip is None:
        return "unknown"
    text = str(raw_ip).strip()
    if not text:
        return "unknown"
    try:
        return str(ip_address(text))
    except ValueError:
        return text


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def check_account_update(updates: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(updates) - ACCOUNT_MUTABLE_FIELDS
    if unknown:
        raise ConstraintViolation(
            "fields cannot be updated", {"fields": sorted(unknown)}
        )
    if "role" in updates:
        validate_role(updates["role"])
    return updates


def enforce_status_invariant(account: Account) -> None:
    try:
        account.check_status_invariant()
    except ValueError as exc:
        raise ConstraintViolation(
            str(exc),
            {
                "account_id": account.id,
                "is_active": account.is_active,
                "is_revoked": account.is_revoked,
                "is_banned": account.is_banned,
            },
        ) from exc


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


async def call_store(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Await a store operation, pushing blocking implementations to a worker thread."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args, **kwargs)
    result = await asyncio.to_thread(fn, *args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result
