from __future__ import annotations

import json
import multiprocessing
import os
import threading
import time

import pytest

from safestore.errors import LockTimeout
from safestore.services.path_lock import PathLock, canonical_key


def _locks(tmp_path, **kwargs) -> PathLock:
    kwargs.setdefault('retries', 3)
    kwargs.setdefault('backoff_seconds', 0.001)
    return PathLock(tmp_path / 'locks', **kwargs)


def _locked_appender(lock_dir: str, log_path: str, rounds: int) -> None:
    locks = PathLock(lock_dir, retries=20_000, backoff_seconds=0.001)
    for _ in range(rounds):
        handle = locks.acquire(log_path)
        try:
            with open(log_path, 'a', encoding='utf-8') as fh:
                fh.write(f'{os.getpid()} start\n')
            time.sleep(0.001)
            with open(log_path, 'a', encoding='utf-8') as fh:
                fh.write(f'{os.getpid()} end\n')
        finally:
            handle.release()


def test_acquire_is_reentrant_for_owning_thread(tmp_path):
    locks = _locks(tmp_path)
    target = tmp_path / 'a.txt'

    first = locks.acquire(target)
    second = locks.acquire(target)
    assert locks.depth(target) == 2

    second.release()
    assert locks.is_held(target)
    assert locks.marker_for(target).exists()

    first.release()
    assert not locks.is_held(target)
    assert not locks.marker_for(target).exists()


def test_release_is_idempotent(tmp_path):
    locks = _locks(tmp_path)
    target = tmp_path / 'a.txt'

    outer = locks.acquire(target)
    inner = locks.acquire(target)
    inner.release()
    inner.release()

    assert inner.released
    assert locks.depth(target) == 1
    outer.release()
    outer.release()
    assert locks.depth(target) == 0


def test_marker_records_holder(tmp_path):
    locks = _locks(tmp_path)
    target = tmp_path / 'a.txt'

    with locks.acquire(target):
        info = locks.holder(target)
        payload = json.loads(locks.marker_for(target).read_text(encoding='utf-8'))

    assert info['pid'] == os.getpid()
    assert info['path'] == str(target)
    assert info['marker'] == f'{canonical_key(target)}.lock'
    assert payload['thread'] == threading.get_ident()
    assert locks.holder(target) is None


def test_timeout_when_marker_owned_elsewhere(tmp_path):
    slept = []
    locks = _locks(tmp_path, retries=4, sleep=slept.append)
    target = tmp_path / 'a.txt'
    marker = locks.marker_for(target)
    marker.write_text('{"pid": 1}', encoding='utf-8')

    with pytest.raises(LockTimeout) as exc:
        locks.acquire(target)

    assert exc.value.retryable
    assert exc.value.details['attempts'] == 4
    assert slept == [0.001, 0.001, 0.001]
    assert marker.read_text(encoding='utf-8') == '{"pid": 1}'
    assert not locks.is_held(target)


def test_other_thread_waits_for_release(tmp_path):
    locks = _locks(tmp_path, retries=2)
    target = tmp_path / 'a.txt'
    outcome = {}

    def _contend():
        try:
            locks.acquire(target).release()
            outcome['result'] = 'acquired'
        except LockTimeout:
            outcome['result'] = 'timeout'

    with locks.acquire(target):
        worker = threading.Thread(target=_contend)
        worker.start()
        worker.join(timeout=10)
    assert outcome['result'] == 'timeout'

    worker = threading.Thread(target=_contend)
    worker.start()
    worker.join(timeout=10)
    assert outcome['result'] == 'acquired'


def test_threads_exclude_each_other(tmp_path):
    locks = _locks(tmp_path, retries=100_000, backoff_seconds=0.0005)
    counter = tmp_path / 'counter.txt'
    counter.write_text('0', encoding='utf-8')

    def _increment():
        for _ in range(25):
            with locks.acquire(counter):
                value = int(counter.read_text(encoding='utf-8'))
                time.sleep(0)
                counter.write_text(str(value + 1), encoding='utf-8')

    workers = [threading.Thread(target=_increment) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=60)

    assert counter.read_text(encoding='utf-8') == '200'
    assert list(locks.lock_dir.iterdir()) == []


@pytest.mark.skipif('fork' not in multiprocessing.get_all_start_methods(), reason='needs fork start method')
def test_processes_exclude_each_other(tmp_path):
    lock_dir = tmp_path / 'locks'
    lock_dir.mkdir()
    log_path = tmp_path / 'log.txt'
    log_path.touch()
    ctx = multiprocessing.get_context('fork')

    procs = [ctx.Process(target=_locked_appender, args=(str(lock_dir), str(log_path), 15)) for _ in range(4)]
    for proc in procs:
        proc.start()
    for proc in procs:
        proc.join(timeout=120)

    assert all(proc.exitcode == 0 for proc in procs)
    lines = log_path.read_text(encoding='utf-8').splitlines()
    assert len(lines) == 4 * 15 * 2
    for start, end in zip(lines[::2], lines[1::2]):
        pid = start.split()[0]
        assert start == f'{pid} start'
        assert end == f'{pid} end'


def test_hold_acquires_in_canonical_order(tmp_path, monkeypatch):
    locks = _locks(tmp_path)
    paths = [tmp_path / name for name in ('b.txt', 'a.txt', 'c.txt')]
    order = []
    original = locks.acquire

    def _recording_acquire(path):
        order.append(path)
        return original(path)

    monkeypatch.setattr(locks, 'acquire', _recording_acquire)

    with locks.hold(*paths):
        assert all(locks.is_held(path) for path in paths)

    assert order == sorted(paths, key=canonical_key)
    assert not any(locks.is_held(path) for path in paths)


def test_hold_releases_partial_acquisitions_on_timeout(tmp_path):
    locks = _locks(tmp_path, retries=2)
    first, second = sorted([tmp_path / 'x.txt', tmp_path / 'y.txt'], key=canonical_key)
    locks.marker_for(second).write_text('{}', encoding='utf-8')

    with pytest.raises(LockTimeout):
        with locks.hold(second, first):
            pass

    assert not locks.is_held(first)
    assert not locks.marker_for(first).exists()


def test_reclaim_stale_removes_only_old_foreign_markers(tmp_path):
    locks = _locks(tmp_path, stale_after_seconds=30)
    old = locks.marker_for(tmp_path / 'old.txt')
    fresh = locks.marker_for(tmp_path / 'fresh.txt')
    old.write_text('{}', encoding='utf-8')
    fresh.write_text('{}', encoding='utf-8')
    past = time.time() - 3600
    os.utime(old, (past, past))

    held_path = tmp_path / 'held.txt'
    handle = locks.acquire(held_path)
    os.utime(locks.marker_for(held_path), (past, past))

    removed = locks.reclaim_stale()

    assert removed == [old]
    assert fresh.exists()
    assert locks.marker_for(held_path).exists()
    handle.release()

    locks.acquire(tmp_path / 'old.txt').release()


def test_reclaim_stale_accepts_explicit_age(tmp_path):
    locks = _locks(tmp_path)
    marker = locks.marker_for(tmp_path / 'a.txt')
    marker.write_text('{}', encoding='utf-8')

    assert locks.reclaim_stale(max_age_seconds=3600) == []
    assert locks.reclaim_stale(max_age_seconds=-1) == [marker]


def test_rejects_non_positive_retry_budget(tmp_path):
    with pytest.raises(ValueError):
        PathLock(tmp_path / 'locks', retries=0)


@pytest.mark.skipif('fork' not in multiprocessing.get_all_start_methods(), reason='needs fork start method')
def test_forked_child_does_not_inherit_parent_hold(tmp_path):
    locks = _locks(tmp_path, retries=2)
    target = tmp_path / 'a.txt'
    ctx = multiprocessing.get_context('fork')

    def _child_acquire():
        if locks.is_held(target):
            os._exit(2)
        try:
            locks.acquire(target)
        except LockTimeout:
            os._exit(0)
        os._exit(1)

    with locks.acquire(target):
        child = ctx.Process(target=_child_acquire)
        child.start()
        child.join(timeout=60)

    assert child.exitcode == 0
    assert not locks.marker_for(target).exists()
