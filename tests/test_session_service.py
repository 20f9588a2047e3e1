from datetime import timedelta

import pytest

from expensegate.service.errors import (
    AccountRestrictedError,
    InvalidCredentialsError,
    NotFoundError,
    SessionRevokedError,
    TooManyAttemptsError,
)
from expensegate.service.gate import AuthGate
from expensegate.service.lockout import LockoutTracker
from expensegate.service.sessions import SessionService
from expensegate.service.tokens import TokenCodec
from expensegate.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def parts(store, gate_config, clock):
    codec = TokenCodec(gate_config.token_secret, clock=clock)
    tracker = LockoutTracker(store, gate_config, clock=clock)
    service = SessionService(store, gate_config, codec=codec, lockout=tracker, clock=clock)
    gate = AuthGate(
        gate_config,
        codec=codec,
        sessions=store,
        accounts=store,
        lockout=tracker,
        clock=clock,
    )
    return service, gate, codec


async def test_login_issues_token_bound_to_session(parts, store, clock):
    service, gate, codec = parts
    created = store.create_account("sunrise", "family", name="Robin")

    account, session, token = await service.login("sunrise", "10.0.0.5")

    assert session.account_id == created.id
    assert store.find_session(created.id, token).id == session.id
    claims = codec.verify(token)
    assert claims.subject_id == created.id
    assert claims.expires_at == clock() + timedelta(minutes=60)
    assert account.last_ip_address == "10.0.0.5"
    assert store.get_account(created.id).last_login == clock()

    result = await gate.evaluate(f"Bearer {token}", "10.0.0.5")
    assert result.principal.subject_id == created.id


async def test_login_unknown_code_counts_toward_lockout(parts, store):
    service, _, _ = parts

    for _ in range(4):
        with pytest.raises(InvalidCredentialsError):
            await service.login("guess", "10.0.0.6")
    with pytest.raises(TooManyAttemptsError):
        await service.login("guess", "10.0.0.6")
    assert store.get_lockout("10.0.0.6").attempts == 5


async def test_login_rejects_inactive_and_expired_codes(parts, store, clock):
    service, _, _ = parts
    store.create_account("sleepy", "viewer", is_active=False)
    store.create_account("stale", "viewer", valid_until=clock() - timedelta(days=1))

    with pytest.raises(InvalidCredentialsError):
        await service.login("sleepy", "10.0.0.7")
    with pytest.raises(InvalidCredentialsError) as excinfo:
        await service.login("stale", "10.0.0.7")
    assert excinfo.value.detail["reason"] == "access_code_expired"


async def test_login_rejects_banned_account(parts, store):
    service, _, _ = parts
    account = store.create_account("banned", "family")
    store.ban_account(account.id)

    with pytest.raises(AccountRestrictedError):
        await service.login("banned", "10.0.0.8")


async def test_locked_out_ip_cannot_log_in_with_valid_code(parts, store, clock):
    service, _, _ = parts
    store.create_account("right-code", "family")

    for _ in range(4):
        with pytest.raises(InvalidCredentialsError):
            await service.login("wrong-code", "203.0.113.5")
    with pytest.raises(TooManyAttemptsError):
        await service.login("wrong-code", "203.0.113.5")

    clock.advance(minutes=30)
    with pytest.raises(TooManyAttemptsError) as excinfo:
        await service.login("right-code", "203.0.113.5")
    assert excinfo.value.retry_after == 1800
    assert store.list_sessions() == []
    assert store.get_lockout("203.0.113.5").attempts == 5

    clock.advance(minutes=30)
    account, session, _ = await service.login("right-code", "203.0.113.5")
    assert session.account_id == account.id


async def test_restricted_and_expired_codes_count_as_failed_attempts(parts, store, clock):
    service, _, _ = parts
    banned = store.create_account("banned", "family")
    store.ban_account(banned.id)
    store.create_account("stale", "viewer", valid_until=clock() - timedelta(days=1))

    with pytest.raises(AccountRestrictedError):
        await service.login("banned", "10.0.0.9")
    with pytest.raises(InvalidCredentialsError):
        await service.login("stale", "10.0.0.9")
    assert store.get_lockout("10.0.0.9").attempts == 2

    with pytest.raises(AccountRestrictedError):
        await service.login("banned", "10.0.0.9")
    with pytest.raises(InvalidCredentialsError):
        await service.login("stale", "10.0.0.9")
    with pytest.raises(TooManyAttemptsError):
        await service.login("banned", "10.0.0.9")


async def test_logout_revokes_only_that_session(parts, store):
    service, gate, _ = parts
    store.create_account("sunrise", "family")
    _, _, first = await service.login("sunrise", "10.0.0.5")
    _, _, second = await service.login("sunrise", "10.0.0.5")
    principal = (await gate.evaluate(f"Bearer {first}", "10.0.0.5")).principal

    revoked = await service.logout(principal, first)

    assert revoked.revoked
    assert store.get_account(principal.subject_id).last_logout is not None
    with pytest.raises(SessionRevokedError):
        await gate.evaluate(f"Bearer {first}", "10.0.0.5")
    assert (await gate.evaluate(f"Bearer {second}", "10.0.0.5")).principal is not None


async def test_ban_account_bans_every_session(parts, store):
    service, _, _ = parts
    store.create_account("sunrise", "family")
    account, _, _ = await service.login("sunrise", "10.0.0.5")
    await service.login("sunrise", "10.0.0.5")

    banned = await service.ban_account(account.id)

    assert banned.is_banned and banned.is_revoked and not banned.is_active
    assert all(s.banned for s in store.list_sessions())
    assert [a.id for a in await service.list_banned_accounts()] == [account.id]


async def test_listing_and_bulk_operations(parts, store):
    service, _, _ = parts
    store.create_account("sunrise", "family")
    account, first, _ = await service.login("sunrise", "10.0.0.5")
    await service.login("sunrise", "10.0.0.5")

    await service.revoke_session(first.id)
    assert len(await service.list_active_sessions()) == 1
    assert [s.id for s in await service.list_revoked_sessions()] == [first.id]

    assert await service.revoke_account_sessions(account.id) == 1
    assert await service.ban_account_sessions(account.id) == 2
    assert await service.delete_account_sessions(account.id) == 2
    assert await service.list_active_sessions() == []


async def test_missing_targets_raise_not_found(parts):
    service, _, _ = parts

    with pytest.raises(NotFoundError):
        await service.revoke_session("missing")
    with pytest.raises(NotFoundError):
        await service.get_session("missing")
    with pytest.raises(NotFoundError):
        await service.ban_account("missing")
