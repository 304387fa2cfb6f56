import threading

import pytest

from generation_lock import GenerationLock


def test_second_acquire_for_same_owner_fails():
    lock = GenerationLock()
    assert lock.try_acquire("u1")
    assert not lock.try_acquire("u1")
    assert lock.try_acquire("u2")
    lock.release("u1")
    assert lock.try_acquire("u1")


def test_hold_yields_false_when_contended_and_keeps_holder():
    lock = GenerationLock()
    with lock.hold("u1") as outer:
        assert outer
        with lock.hold("u1") as inner:
            assert not inner
        # The contended exit must not release the outer holder
        assert lock.is_held("u1")
    assert not lock.is_held("u1")


def test_hold_releases_on_exception():
    lock = GenerationLock()
    with pytest.raises(ValueError):
        with lock.hold("u1") as acquired:
            assert acquired
            raise ValueError("boom")
    assert not lock.is_held("u1")


def test_only_one_thread_wins():
    lock = GenerationLock()
    start = threading.Barrier(8)
    results = []

    def worker():
        start.wait()
        results.append(lock.try_acquire("u1"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
