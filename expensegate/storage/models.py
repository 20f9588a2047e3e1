from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

ROLES = ("viewer", "family", "admin")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    code: str
    role: str
    name: Optional[str] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    is_revoked: bool = False
    is_banned: bool = False
    last_login: Optional[datetime] = None
    last_logout: Optional[datetime] = None
    last_ip_address: Optional[str] = None
    ip_history: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_restricted(self) -> bool:
        return self.is_revoked or self.is_banned

    def check_status_invariant(self) -> None:
        """Banned implies revoked, revoked implies inactive."""
        if self.is_banned and not self.is_revoked:
            raise ValueError("banned account must also be revoked")
        if self.is_revoked and self.is_active:
            raise ValueError("revoked account must be inactive")

    def record_ip(self, ip_address: str) -> bool:
        """Overwrite last-seen IP and append to history. Returns True if new."""
        self.last_ip_address = ip_address
        if ip_address in self.ip_history:
            return False
        self.ip_history.append(ip_address)
        return True


@dataclass
class Session:
    id: str
    account_id: str
    token: str
    created_at: datetime
    revoked: bool = False
    banned: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(cls, account_id: str, token: str) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token=token,
            created_at=utcnow(),
        )

    @property
    def is_usable(self) -> bool:
        return not (self.revoked or self.banned)


@dataclass
class LockoutRecord:
    ip_address: str
    attempts: int
    last_attempt_at: datetime
