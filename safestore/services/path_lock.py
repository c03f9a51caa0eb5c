"""Cross-process, re-entrant locks keyed by canonical path.

A lock is held while its marker file exists in the lock directory. Markers are
created with ``O_CREAT | O_EXCL`` so exactly one contender wins each race,
whichever process or thread it runs in; nothing is coordinated in memory across
processes. Re-entrancy is tracked per owning thread inside the process that
created the marker.

Ownership is not enforced on release: anything able to delete a marker can
release the lock. Crashed holders therefore never leave a lock that cannot be
cleared, and :meth:`PathLock.reclaim_stale` is the explicit way to do so.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

from ..errors import IOFailure, LockTimeout

logger = logging.getLogger(__name__)

MARKER_SUFFIX = '.lock'


def canonical_key(path: str | Path) -> str:
    return hashlib.sha256(str(path).encode('utf-8', 'surrogateescape')).hexdigest()


@dataclass
class _Holding:
    owner: tuple[int, int]
    count: int
    marker: Path


class LockHandle:
    """Release handle for one acquisition. ``release()`` is idempotent."""

    def __init__(self, lock: PathLock, key: str, path: str):
        self._lock = lock
        self.key = key
        self.path = path
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._lock._release(self.key)

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class PathLock:
    def __init__(
        self,
        lock_dir: str | Path,
        retries: int = 10,
        backoff_seconds: float = 0.05,
        stale_after_seconds: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if retries < 1:
            raise ValueError('retries must be at least 1')
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.stale_after_seconds = stale_after_seconds
        self._sleep = sleep
        self._mutex = threading.Lock()
        self._held: dict[str, _Holding] = {}

    def marker_for(self, path: str | Path) -> Path:
        return self.lock_dir / f'{canonical_key(path)}{MARKER_SUFFIX}'

    def acquire(self, path: str | Path) -> LockHandle:
        """Block until ``path`` is locked or the retry budget runs out."""
        key = canonical_key(path)
        owner = (os.getpid(), threading.get_ident())
        with self._mutex:
            holding = self._held.get(key)
            if holding is not None and holding.owner == owner:
                holding.count += 1
                return LockHandle(self, key, str(path))

        marker = self.lock_dir / f'{key}{MARKER_SUFFIX}'
        for attempt in range(self.retries):
            if self._try_create(marker, path):
                with self._mutex:
                    self._held[key] = _Holding(owner=owner, count=1, marker=marker)
                return LockHandle(self, key, str(path))
            if attempt < self.retries - 1:
                self._sleep(self.backoff_seconds)

        logger.warning('Gave up waiting for lock on %s after %d attempts', path, self.retries)
        raise LockTimeout(
            f'Unable to acquire lock for {path}. File may be locked by another process.',
            path=str(path),
            attempts=self.retries,
        )

    def _try_create(self, marker: Path, path: str | Path) -> bool:
        try:
            fd = os.open(str(marker), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as exc:
            raise IOFailure('lock', exc.strerror or str(exc), path=str(path)) from exc

        payload = {
            'pid': os.getpid(),
            'thread': threading.get_ident(),
            'path': str(path),
            'acquired_at': datetime.now(timezone.utc).isoformat(),
        }
        try:
            os.write(fd, json.dumps(payload).encode('utf-8'))
        except OSError as exc:
            os.close(fd)
            marker.unlink(missing_ok=True)
            raise IOFailure('lock', exc.strerror or str(exc), path=str(path)) from exc
        os.close(fd)
        return True

    def _release(self, key: str) -> None:
        with self._mutex:
            holding = self._held.get(key)
            if holding is None:
                return
            if holding.count > 1:
                holding.count -= 1
                return
            del self._held[key]
            try:
                holding.marker.unlink(missing_ok=True)
            except OSError:
                logger.exception('Error releasing lock marker %s', holding.marker)

    def is_held(self, path: str | Path) -> bool:
        """True when this process holds ``path`` (any thread)."""
        with self._mutex:
            holding = self._held.get(canonical_key(path))
            return holding is not None and holding.owner[0] == os.getpid()

    def depth(self, path: str | Path) -> int:
        with self._mutex:
            holding = self._held.get(canonical_key(path))
            return holding.count if holding else 0

    def holder(self, path: str | Path) -> dict | None:
        """Diagnostic contents of the marker for ``path``, or None when unlocked."""
        marker = self.marker_for(path)
        try:
            raw = marker.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        try:
            info = json.loads(raw)
        except ValueError:
            info = {'raw': raw}
        info['marker'] = marker.name
        return info

    @contextmanager
    def hold(self, *paths: str | Path) -> Iterator[list[LockHandle]]:
        """Lock every path in canonical-key order, release in reverse."""
        ordered = sorted(paths, key=canonical_key)
        handles: list[LockHandle] = []
        try:
            for path in ordered:
                handles.append(self.acquire(path))
            yield handles
        finally:
            for handle in reversed(handles):
                handle.release()

    def reclaim_stale(self, max_age_seconds: float | None = None) -> list[Path]:
        age = self.stale_after_seconds if max_age_seconds is None else max_age_seconds
        now = time.time()
        with self._mutex:
            ours = {holding.marker for holding in self._held.values() if holding.owner[0] == os.getpid()}

        removed: list[Path] = []
        for marker in self.lock_dir.glob(f'*{MARKER_SUFFIX}'):
            if marker in ours:
                continue
            try:
                if now - marker.stat().st_mtime <= age:
                    continue
                marker.unlink()
            except FileNotFoundError:
                continue
            removed.append(marker)
            logger.info('Reclaimed stale lock marker %s', marker.name)
        return removed
