import asyncio
import threading
from datetime import timedelta

import pytest

from expensegate.service.errors import StoreUnavailableError
from expensegate.service.lockout import LockoutTracker
from expensegate.storage.errors import StoreUnavailable
from expensegate.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tracker(store, gate_config, clock):
    return LockoutTracker(store, gate_config, clock=clock)


async def test_first_attempt_creates_record(tracker, store):
    decision = await tracker.record_attempt("10.0.0.1")

    assert decision.allowed
    assert decision.attempts == 1
    assert store.get_lockout("10.0.0.1").attempts == 1


async def test_four_allowed_fifth_denied_then_window_reset(tracker, store, clock):
    first = clock()
    for offset_seconds in (0, 15, 30, 45):
        clock.now = first + timedelta(seconds=offset_seconds)
        assert (await tracker.record_attempt("203.0.113.9")).allowed

    clock.now = first + timedelta(minutes=1)
    denied = await tracker.record_attempt("203.0.113.9")
    assert not denied.allowed
    assert denied.attempts == 5
    assert denied.retry_after_seconds == 3600

    clock.now = first + timedelta(minutes=61)
    reset = await tracker.record_attempt("203.0.113.9")
    assert reset.allowed
    assert reset.attempts == 1
    assert store.get_lockout("203.0.113.9").last_attempt_at == clock.now


async def test_denied_attempts_extend_the_window(tracker, clock):
    for _ in range(5):
        await tracker.record_attempt("198.51.100.7")

    clock.advance(minutes=59)
    assert not (await tracker.record_attempt("198.51.100.7")).allowed
    clock.advance(minutes=59)
    assert not (await tracker.record_attempt("198.51.100.7")).allowed
    clock.advance(minutes=60)
    assert (await tracker.record_attempt("198.51.100.7")).allowed


async def test_ips_are_tracked_independently(tracker):
    for _ in range(5):
        await tracker.record_attempt("10.0.0.1")

    other = await tracker.record_attempt("10.0.0.2")
    assert other.allowed
    assert other.attempts == 1
    assert await tracker.current_attempts("10.0.0.1") == 5
    assert await tracker.current_attempts("10.9.9.9") == 0


async def test_equivalent_ip_spellings_share_a_counter(tracker):
    await tracker.record_attempt("2001:db8::1")
    decision = await tracker.record_attempt("2001:0db8:0000::0001")

    assert decision.attempts == 2


async def test_concurrent_attempts_are_not_lost(tracker, store):
    decisions = await asyncio.gather(
        *(tracker.record_attempt("192.0.2.50") for _ in range(10))
    )

    assert store.get_lockout("192.0.2.50").attempts == 10
    assert sorted(d.attempts for d in decisions) == list(range(1, 11))
    assert sum(1 for d in decisions if not d.allowed) == 6


async def test_check_locked_reads_without_counting(tracker, store, clock):
    assert (await tracker.check_locked("10.0.0.2")).allowed
    for _ in range(5):
        await tracker.record_attempt("10.0.0.2")

    clock.advance(minutes=10)
    decision = await tracker.check_locked("10.0.0.2")

    assert not decision.allowed
    assert decision.retry_after_seconds == 3000
    assert store.get_lockout("10.0.0.2").attempts == 5

    clock.advance(minutes=50)
    assert (await tracker.check_locked("10.0.0.2")).allowed


def test_store_increment_is_atomic_across_threads(store, clock):
    barrier = threading.Barrier(20)

    def worker():
        barrier.wait()
        store.increment_attempt("192.0.2.99", clock(), timedelta(minutes=60))

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get_lockout("192.0.2.99").attempts == 20


class _BrokenBackend:
    def increment_attempt(self, ip_addr, now, window):
        raise StoreUnavailable("database unavailable", backend="postgres")

    def get_lockout(self, ip_addr):
        raise StoreUnavailable("database unavailable", backend="postgres")


async def test_backend_outage_is_a_server_fault(gate_config, clock):
    tracker = LockoutTracker(_BrokenBackend(), gate_config, clock=clock)

    with pytest.raises(StoreUnavailableError) as excinfo:
        await tracker.record_attempt("10.0.0.1")
    assert excinfo.value.status_code == 503
    assert excinfo.value.error_code == "server_error"
    assert excinfo.value.detail["reason"] == "store_unavailable"


async def test_memory_persist_failure_is_a_server_fault(gate_config, clock, tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    (tmp_path / "state" / "gate_store.tmp").mkdir(parents=True)
    tracker = LockoutTracker(store, gate_config, clock=clock)

    with pytest.raises(StoreUnavailableError) as excinfo:
        await tracker.record_attempt("10.0.0.1")
    assert excinfo.value.status_code == 503
