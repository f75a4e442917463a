import random
import threading
import time

import pytest

from relayPing.correlator import IdentifierAllocator, ReplyCorrelator
from relayPing.errors import DuplicateKeyError
from relayPing.stats import CANCELLED, Lost, Replied


def test_allocate_unique_among_live_sessions():
    allocator = IdentifierAllocator(first=0xFFFE)
    ids = [allocator.allocate() for _ in range(4)]
    assert ids == [0xFFFE, 0xFFFF, 0, 1]
    allocator.release(0)
    assert len(allocator) == 3
    # освобождённый id выдаётся снова только после обхода остальных
    assert allocator.allocate() == 2


def test_allocate_skips_live_ids():
    allocator = IdentifierAllocator(first=5)
    first = allocator.allocate()
    allocator.next_id = first
    assert allocator.allocate() == first + 1


def test_sequences_start_at_one_and_wrap(allocator):
    session_id = allocator.allocate()
    assert [allocator.next_sequence(session_id) for _ in range(3)] == [1, 2, 3]
    allocator.sequences[session_id] = 0xFFFE
    assert [allocator.next_sequence(session_id) for _ in range(3)] == [0xFFFF, 0, 1]


def test_sequences_are_per_session(allocator):
    a, b = allocator.allocate(), allocator.allocate()
    allocator.next_sequence(a)
    allocator.next_sequence(a)
    assert allocator.next_sequence(b) == 1


def test_register_duplicate_key(correlator):
    correlator.register(1, 1)
    with pytest.raises(DuplicateKeyError):
        correlator.register(1, 1)
    correlator.register(2, 1)
    assert correlator.pending_count() == 2


def test_resolve(correlator):
    request = correlator.register(7, 3, sequence=70003)
    assert correlator.resolve(7, 3, 58, request.sent_at + 0.004) == 7
    outcome = request.wait(0)
    assert outcome == Replied(58, pytest.approx(0.004))
    assert request.sequence == 70003
    assert correlator.pending_count() == 0


def test_resolve_never_negative(correlator):
    request = correlator.register(7, 3)
    correlator.resolve(7, 3, 58, request.sent_at - 1)
    assert request.outcome.rtt == 0.


def test_foreign_reply_is_ignored(correlator):
    request = correlator.register(7, 3)
    assert correlator.resolve(7, 4, 64, time.monotonic()) is None
    assert correlator.resolve(8, 3, 64, time.monotonic()) is None
    assert not request.done.is_set()
    assert correlator.pending_count(7) == 1


def test_late_reply_does_not_undo_loss(correlator):
    request = correlator.register(7, 3)
    assert correlator.expire(7, 3)
    assert correlator.resolve(7, 3, 64, time.monotonic()) is None
    assert request.outcome == Lost()


def test_expire_after_reply(correlator):
    request = correlator.register(7, 3)
    correlator.resolve(7, 3, 64, time.monotonic())
    assert not correlator.expire(7, 3)
    assert request.outcome.replied


def test_scheduled_expiry(correlator):
    completed = []
    request = correlator.register(1, 1, on_complete=lambda r, outcome: completed.append(outcome))
    assert correlator.schedule_expiry(request, 0.05)
    assert request.wait(2) == Lost()
    assert completed == [Lost()]
    assert correlator.pending_count() == 0


def test_reply_cancels_expiry(correlator):
    completed = []
    request = correlator.register(1, 1, on_complete=lambda r, outcome: completed.append(outcome))
    correlator.schedule_expiry(request, 0.05)
    correlator.resolve(1, 1, 64, time.monotonic())
    time.sleep(0.1)
    assert len(completed) == 1 and completed[0].replied


def test_no_expiry_for_resolved_request(correlator):
    request = correlator.register(1, 1)
    correlator.resolve(1, 1, 64, time.monotonic())
    assert not correlator.schedule_expiry(request, 0.01)
    assert correlator.expiries == []


def test_stale_expiry_does_not_expire_new_request(correlator):
    old = correlator.register(1, 1)
    correlator.schedule_expiry(old, 0.05)
    correlator.resolve(1, 1, 64, time.monotonic())
    new = correlator.register(1, 1)
    correlator.schedule_expiry(new, 5)
    time.sleep(0.15)
    assert not new.done.is_set()
    assert correlator.pending_count() == 1


def test_earlier_deadline_scheduled_later(correlator):
    completed = []
    record = lambda r, outcome: completed.append(r.icmp_sequence)
    late = correlator.register(1, 1, on_complete=record)
    correlator.schedule_expiry(late, 0.3)
    early = correlator.register(1, 2, on_complete=record)
    correlator.schedule_expiry(early, 0.05)
    assert early.wait(0.2) == Lost()
    assert not late.done.is_set()
    assert late.wait(2) == Lost()
    assert completed == [2, 1]


def test_expiry_uses_one_thread(correlator):
    before = threading.active_count()
    requests = [correlator.register(1, sequence) for sequence in range(1, 2001)]
    for request in requests:
        assert correlator.schedule_expiry(request, 600)
    assert threading.active_count() <= before + 1
    assert correlator.cancel_session(1) == 2000
    assert correlator.expiries == []


def test_close_stops_expiry():
    correlator = ReplyCorrelator()
    request = correlator.register(1, 1)
    correlator.schedule_expiry(request, 600)
    correlator.close()
    assert not correlator.expiry_thread.is_alive()
    assert not correlator.schedule_expiry(correlator.register(1, 2), 1)


def test_cancel_session(correlator):
    completed = []
    record = lambda r, outcome: completed.append((r.session_id, outcome))
    for sequence in range(1, 4):
        request = correlator.register(1, sequence, on_complete=record)
        correlator.schedule_expiry(request, 5)
    other = correlator.register(2, 1)
    assert correlator.cancel_session(1) == 3
    assert completed == [(1, CANCELLED)] * 3
    assert correlator.pending_count() == 1
    assert not other.done.is_set()
    assert correlator.cancel_session(1) == 0


def test_concurrent_sessions_without_leakage(correlator):
    completed = []
    lock = threading.Lock()

    def record(request, outcome):
        with lock:
            completed.append((request.session_id, request.icmp_sequence, outcome))

    def register(session_id):
        for sequence in range(1, 21):
            correlator.register(session_id, sequence, on_complete=record)

    threads = [threading.Thread(target=register, args=(session_id,)) for session_id in range(100, 105)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert correlator.pending_count() == 100

    keys = [(session_id, sequence) for session_id in range(100, 105) for sequence in range(1, 21)]
    random.shuffle(keys)
    # каждый ответ приходит дважды, из разных потоков
    chunks = [keys[i::4] + keys[(i + 1) % 4::4] for i in range(4)]
    matched = []

    def resolve(chunk):
        for session_id, sequence in chunk:
            if correlator.resolve(session_id, sequence, 64, time.monotonic()) is not None:
                with lock:
                    matched.append(session_id)

    threads = [threading.Thread(target=resolve, args=(chunk,)) for chunk in chunks]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(completed) == 100
    assert len(set((session_id, sequence) for session_id, sequence, _ in completed)) == 100
    assert all(outcome.replied for _, _, outcome in completed)
    assert sorted(matched) == sorted(session_id for session_id, _ in keys)
    for session_id in range(100, 105):
        assert sum(1 for s, _, _ in completed if s == session_id) == 20
    assert correlator.pending_count() == 0


def test_resolve_and_expire_race(correlator):
    completed = []
    lock = threading.Lock()

    def record(request, outcome):
        with lock:
            completed.append(request.key)

    for sequence in range(500):
        correlator.register(1, sequence, on_complete=record)
    start = threading.Barrier(2)
    wins = {"resolve": 0, "expire": 0}

    def resolver():
        start.wait()
        for sequence in range(500):
            if correlator.resolve(1, sequence, 64, time.monotonic()) is not None:
                wins["resolve"] += 1

    def expirer():
        start.wait()
        for sequence in reversed(range(500)):
            if correlator.expire(1, sequence):
                wins["expire"] += 1

    threads = [threading.Thread(target=resolver), threading.Thread(target=expirer)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert wins["resolve"] + wins["expire"] == 500
    assert sorted(completed) == [(1, sequence) for sequence in range(500)]
