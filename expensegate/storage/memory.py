from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from expensegate.logging import get_logger
from expensegate.storage.common import (
    check_account_update,
    enforce_status_invariant,
    generate_uuid,
    normalize_ip_address,
    to_utc,
    validate_role,
)
from expensegate.storage.errors import ConstraintViolation, StoreUnavailable
from expensegate.storage.models import Account, LockoutRecord, Session, utcnow


class MemoryStore:
    """In-process store for accounts, sessions and lockout records.

    Used for tests and single-node development. Read-modify-write cycles on a
    single lockout or account record serialize on a per-key lock, so updates for
    different keys never wait on each other. ``_data_lock`` guards whole-collection
    operations and persistence snapshots and is never taken while a key lock is
    held.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.lockouts: Dict[str, LockoutRecord] = {}
        self._session_index: Dict[Tuple[str, str], str] = {}
        self._data_lock = threading.RLock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    # accounts
    def create_account(
        self,
        code: str,
        role: str,
        *,
        name: Optional[str] = None,
        valid_until: Optional[datetime] = None,
        is_active: bool = True,
    ) -> Account:
        validate_role(role)
        with self._data_lock:
            if any(acct.code == code for acct in self.accounts.values()):
                raise ConstraintViolation("access code already exists", {"code": code})
            account = Account(
                id=generate_uuid(),
                code=code,
                role=role,
                name=name,
                valid_until=to_utc(valid_until),
                is_active=is_active,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_code(self, code: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.code == code:
                    return copy.deepcopy(account)
            return None

    def list_accounts(self, *, banned: Optional[bool] = None) -> List[Account]:
        with self._data_lock:
            results = [
                copy.deepcopy(a)
                for a in self.accounts.values()
                if banned is None or a.is_banned == banned
            ]
        return sorted(results, key=lambda a: a.created_at)

    def update_account(self, account_id: str, **updates: Any) -> Optional[Account]:
        check_account_update(updates)
        with self._lock_for(f"account:{account_id}"):
            account = self.accounts.get(account_id)
            if not account:
                return None
            if "code" in updates and any(
                a.code == updates["code"] and a.id != account_id
                for a in list(self.accounts.values())
            ):
                raise ConstraintViolation(
                    "access code already exists", {"code": updates["code"]}
                )
            candidate = copy.deepcopy(account)
            for field_name, value in updates.items():
                if field_name == "valid_until":
                    value = to_utc(value)
                setattr(candidate, field_name, value)
            enforce_status_invariant(candidate)
            candidate.updated_at = utcnow()
            self.accounts[account_id] = candidate
            snapshot = copy.deepcopy(candidate)
        self._persist_state()
        return snapshot

    def revoke_account(self, account_id: str) -> Optional[Account]:
        return self.update_account(account_id, is_revoked=True, is_active=False)

    def ban_account(self, account_id: str) -> Optional[Account]:
        return self.update_account(
            account_id, is_banned=True, is_revoked=True, is_active=False
        )

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            removed = self.accounts.pop(account_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def record_account_ip(self, account_id: str, ip_addr: str) -> Optional[Account]:
        ip_text = normalize_ip_address(ip_addr)
        with self._lock_for(f"account:{account_id}"):
            account = self.accounts.get(account_id)
            if not account:
                return None
            added = account.record_ip(ip_text)
            account.updated_at = utcnow()
            snapshot = copy.deepcopy(account)
        self._persist_state()
        if added:
            self.logger.info("account_ip_recorded", account_id=account_id, ip=ip_text)
        return snapshot

    def mark_login(self, account_id: str, at: datetime) -> None:
        self._stamp_account(account_id, "last_login", at)

    def mark_logout(self, account_id: str, at: datetime) -> None:
        self._stamp_account(account_id, "last_logout", at)

    def _stamp_account(self, account_id: str, field_name: str, at: datetime) -> None:
        # Same key lock as update_account, which swaps in a modified copy
        with self._lock_for(f"account:{account_id}"):
            account = self.accounts.get(account_id)
            if not account:
                return
            setattr(account, field_name, to_utc(at))
        self._persist_state()

    # sessions
    def create_session(self, account_id: str, token: str) -> Session:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": account_id}
                )
            if (account_id, token) in self._session_index:
                raise ConstraintViolation("token already issued", {"account_id": account_id})
            sess = Session.new(account_id=account_id, token=token)
            self.sessions[sess.id] = sess
            self._session_index[(account_id, token)] = sess.id
            self._persist_state()
            return copy.copy(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.copy(sess) if sess else None

    def find_session(self, account_id: str, token: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._session_index.get((account_id, token))
            sess = self.sessions.get(session_id) if session_id else None
            return copy.copy(sess) if sess else None

    def list_sessions(self, *, revoked: Optional[bool] = None) -> List[Session]:
        with self._data_lock:
            results = [
                copy.copy(s)
                for s in self.sessions.values()
                if revoked is None or s.revoked == revoked
            ]
        return sorted(results, key=lambda s: s.created_at)

    def revoke_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            if not sess.revoked:
                sess.revoked = True
                sess.revoked_at = utcnow()
                self._persist_state()
            return copy.copy(sess)

    def revoke_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        now = utcnow()
        revoked = 0
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.account_id != account_id or sess.id == except_session_id:
                    continue
                if not sess.revoked:
                    sess.revoked = True
                    sess.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
        return revoked

    def ban_account_sessions(self, account_id: str) -> int:
        banned = 0
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.account_id == account_id and not sess.banned:
                    sess.banned = True
                    banned += 1
            if banned:
                self._persist_state()
        return banned

    def delete_account_sessions(self, account_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.account_id == account_id]
            for sid in stale:
                sess = self.sessions.pop(sid)
                self._session_index.pop((sess.account_id, sess.token), None)
            if stale:
                self._persist_state()
        return len(stale)

    # lockout
    def increment_attempt(
        self, ip_addr: str, now: datetime, window: timedelta
    ) -> LockoutRecord:
        """Atomically reset-or-increment the failed attempt counter for ``ip_addr``."""
        ip_text = normalize_ip_address(ip_addr)
        now = to_utc(now)
        with self._lock_for(f"lockout:{ip_text}"):
            existing = self.lockouts.get(ip_text)
            if existing is None or now - existing.last_attempt_at >= window:
                attempts = 1
            else:
                attempts = existing.attempts + 1
            record = LockoutRecord(ip_address=ip_text, attempts=attempts, last_attempt_at=now)
            self.lockouts[ip_text] = record
        self._persist_state()
        return copy.copy(record)

    def get_lockout(self, ip_addr: str) -> Optional[LockoutRecord]:
        with self._data_lock:
            record = self.lockouts.get(normalize_ip_address(ip_addr))
            return copy.copy(record) if record else None

    # persistence
    def _state_path(self) -> Optional[Path]:
        if not self.fs_root:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "gate_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return to_utc(datetime.fromisoformat(raw)) if raw else None

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "code": account.code,
            "role": account.role,
            "name": account.name,
            "valid_until": self._serialize_datetime(account.valid_until),
            "is_active": account.is_active,
            "is_revoked": account.is_revoked,
            "is_banned": account.is_banned,
            "last_login": self._serialize_datetime(account.last_login),
            "last_logout": self._serialize_datetime(account.last_logout),
            "last_ip_address": account.last_ip_address,
            "ip_history": list(account.ip_history),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            code=data["code"],
            role=data["role"],
            name=data.get("name"),
            valid_until=self._deserialize_datetime(data.get("valid_until")),
            is_active=data.get("is_active", True),
            is_revoked=data.get("is_revoked", False),
            is_banned=data.get("is_banned", False),
            last_login=self._deserialize_datetime(data.get("last_login")),
            last_logout=self._deserialize_datetime(data.get("last_logout")),
            last_ip_address=data.get("last_ip_address"),
            ip_history=list(data.get("ip_history", [])),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "account_id": sess.account_id,
            "token": sess.token,
            "revoked": sess.revoked,
            "banned": sess.banned,
            "created_at": self._serialize_datetime(sess.created_at),
            "revoked_at": self._serialize_datetime(sess.revoked_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            token=data["token"],
            revoked=data.get("revoked", False),
            banned=data.get("banned", False),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        with self._data_lock:
            # list() copies are atomic; key-locked writers may add entries meanwhile
            accounts = list(self.accounts.values())
            sessions = list(self.sessions.values())
            lockouts = list(self.lockouts.values())
            state = {
                "accounts": [self._serialize_account(a) for a in accounts],
                "sessions": [self._serialize_session(s) for s in sessions],
                "lockouts": [
                    {
                        "ip_address": r.ip_address,
                        "attempts": r.attempts,
                        "last_attempt_at": self._serialize_datetime(r.last_attempt_at),
                    }
                    for r in lockouts
                ],
            }
            try:
                path = self._state_path()
                tmp_path = path.with_suffix(".tmp")
                tmp_path.write_text(json.dumps(state, indent=2))
                tmp_path.replace(path)
            except OSError as exc:
                self.logger.error("memory_store_persist_failed", error=str(exc))
                raise StoreUnavailable(
                    f"failed to persist in-memory state: {exc}", backend="memory"
                ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._session_index = {
            (s.account_id, s.token): s.id for s in self.sessions.values()
        }
        self.lockouts = {}
        for entry in data.get("lockouts", []):
            record = LockoutRecord(
                ip_address=entry["ip_address"],
                attempts=int(entry.get("attempts", 0)),
                last_attempt_at=self._deserialize_datetime(entry["last_attempt_at"]),
            )
            self.lockouts[record.ip_address] = record
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
            lockouts=len(self.lockouts),
        )
        return True
