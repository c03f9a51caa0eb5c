"""Guarded read/write/delete/copy/list over the storage root.

Each operation resolves its path(s) through :class:`PathGuard`, holds the
:class:`PathLock` for the resolved path(s), applies the size ceilings, mutates
the filesystem only through ``os.replace`` of a fully written temporary
sibling, and emits one audit event. A failing audit log never undoes a
completed mutation; it is reported back as a warning on the result.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Union

from ..config import Settings, SizeLimits
from ..errors import AlreadyExists, IOFailure, NotFound, StorageError, from_os_error
from .audit import AuditEvent, AuditLog
from .path_guard import PathGuard, ResolvedPath
from .path_lock import PathLock
from .size_guard import check_size

logger = logging.getLogger(__name__)

COPY_CHUNK_BYTES = 1024 * 1024


@dataclass
class FileEntry:
    name: str
    path: str
    is_dir: bool
    size: int
    mtime: int


@dataclass
class OperationResult:
    operation: str
    path: str
    size: int = 0
    content: Optional[bytes] = None
    entries: list[FileEntry] = field(default_factory=list)
    info: Optional[FileEntry] = None
    warnings: list[str] = field(default_factory=list)


def fsync_dir(directory: Path) -> None:
    dir_fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    fd, tmp_path = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'wb') as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        fsync_dir(path.parent)
    except Exception:
        Path(tmp_path).unlink(missing_ok=True)
        raise


def _atomic_copy(source: Path, target: Path, limit: int, limit_name: str) -> int:
    fd, tmp_path = tempfile.mkstemp(prefix=f'.{target.name}.', suffix='.tmp', dir=str(target.parent))
    try:
        copied = 0
        with os.fdopen(fd, 'wb') as dst, source.open('rb') as src:
            while chunk := src.read(COPY_CHUNK_BYTES):
                copied += len(chunk)
                check_size(copied, limit, limit_name=limit_name)
                dst.write(chunk)
            dst.flush()
            os.fsync(dst.fileno())
        shutil.copymode(source, tmp_path)
        os.replace(tmp_path, target)
        fsync_dir(target.parent)
        return copied
    except Exception:
        Path(tmp_path).unlink(missing_ok=True)
        raise


@contextmanager
def translate_os_errors(operation: str, path: Optional[str]) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise from_os_error(operation, exc, path) from exc


class GuardedFileOps:
    def __init__(self, guard: PathGuard, locks: PathLock, limits: SizeLimits, audit: AuditLog):
        self.guard = guard
        self.locks = locks
        self.limits = limits
        self.audit = audit
        self._lock_dir = Path(locks.lock_dir).resolve(strict=False)

    @classmethod
    def from_settings(cls, settings: Settings, audit: AuditLog) -> GuardedFileOps:
        root = settings.root_path()
        lock_dir = settings.lock_path()
        root.mkdir(parents=True, exist_ok=True)
        guard = PathGuard(root, settings.extension_allow_list(), reserved=[lock_dir])
        locks = PathLock(
            lock_dir,
            retries=settings.lock_retries,
            backoff_seconds=settings.lock_backoff_ms / 1000,
            stale_after_seconds=settings.stale_lock_age_sec,
        )
        return cls(guard, locks, SizeLimits.from_settings(settings), audit)

    @property
    def root(self) -> Path:
        return self.guard.root

    def emit(self, operation: str, actor: str, path: Optional[str], detail: str, outcome: str = 'ok') -> list[str]:
        try:
            self.audit.record(AuditEvent(operation=operation, actor=actor, path=path, detail=detail, outcome=outcome))
        except Exception as exc:
            logger.warning('Audit emission failed for %s on %s: %s', operation, path, exc)
            return [f'Audit log unavailable: {exc}']
        return []

    @contextmanager
    def audited(self, operation: str, actor: str, requested: str) -> Iterator[None]:
        try:
            yield
        except StorageError as exc:
            self.emit(operation, actor, None, f'Failed {requested!r}: {exc.code}: {exc.message}', outcome='error')
            raise

    def _limit_for(self, *paths: ResolvedPath) -> tuple[str, int]:
        return min((self.limits.limit_for(p.absolute.name) for p in paths), key=lambda item: item[1])

    def _hidden(self, child: Path) -> bool:
        return child.name.startswith('.') or child == self._lock_dir

    def entry_for(self, path: Path) -> FileEntry:
        st = path.stat()
        return FileEntry(
            name=path.name,
            path=path.relative_to(self.root).as_posix(),
            is_dir=stat.S_ISDIR(st.st_mode),
            size=st.st_size,
            mtime=int(st.st_mtime),
        )

    def read(self, path: str, actor: str) -> OperationResult:
        with self.audited('read', actor, path):
            resolved = self.guard.resolve(path)
            with self.locks.hold(resolved.absolute), translate_os_errors('read', resolved.relative):
                st = resolved.absolute.stat()
                if not stat.S_ISREG(st.st_mode):
                    raise IOFailure('read', 'Not a regular file', path=resolved.relative)
                limit_name, limit = self._limit_for(resolved)
                check_size(st.st_size, limit, limit_name=limit_name)
                data = resolved.absolute.read_bytes()

        warnings = self.emit('read', actor, resolved.relative, f'Read file: {resolved.filename}')
        return OperationResult('read', resolved.relative, size=len(data), content=data, warnings=warnings)

    def read_text(self, path: str, actor: str, encoding: str = 'utf-8') -> str:
        result = self.read(path, actor)
        try:
            return result.content.decode(encoding)
        except UnicodeDecodeError as exc:
            raise IOFailure('read', f'File is not valid {encoding} text', path=result.path) from exc

    def write(self, path: str, content: Union[bytes, str], actor: str) -> OperationResult:
        data = content.encode('utf-8') if isinstance(content, str) else bytes(content)
        with self.audited('modify', actor, path):
            resolved = self.guard.resolve(path, sanitize=True)
            self.guard.require_extension(resolved.absolute.name)
            limit_name, limit = self._limit_for(resolved)
            check_size(len(data), limit, limit_name=limit_name)

            target = resolved.absolute
            with self.locks.hold(target), translate_os_errors('write', resolved.relative):
                if target.is_dir():
                    raise IOFailure('write', 'Target is a directory', path=resolved.relative)
                existed = target.exists()
                target.parent.mkdir(parents=True, exist_ok=True)
                _atomic_write_bytes(target, data)

        kind = 'modify' if existed else 'create'
        verb = 'Modified' if existed else 'Created'
        warnings = self.emit(kind, actor, resolved.relative, f'{verb} file: {resolved.filename} ({len(data)} bytes)')
        return OperationResult(kind, resolved.relative, size=len(data), warnings=warnings)

    def delete(self, path: str, actor: str) -> OperationResult:
        with self.audited('delete', actor, path):
            resolved = self.guard.resolve(path)
            target = resolved.absolute
            with self.locks.hold(target), translate_os_errors('delete', resolved.relative):
                if target.is_dir():
                    if any(target.iterdir()):
                        raise IOFailure('delete', 'Directory not empty', path=resolved.relative)
                    target.rmdir()
                else:
                    target.unlink()

        warnings = self.emit('delete', actor, resolved.relative, f'Deleted: {resolved.filename}')
        return OperationResult('delete', resolved.relative, warnings=warnings)

    def copy(self, source_path: str, dest_path: str, actor: str, overwrite: bool = False) -> OperationResult:
        with self.audited('modify', actor, f'{source_path} -> {dest_path}'):
            source = self.guard.resolve(source_path)
            dest = self.guard.resolve(dest_path, sanitize=True)
            self.guard.require_extension(dest.absolute.name)

            with self.locks.hold(source.absolute, dest.absolute), translate_os_errors('copy', source.relative):
                if not source.absolute.is_file():
                    raise NotFound('copy: Source file does not exist', path=source.relative)
                limit_name, limit = self._limit_for(source, dest)
                check_size(source.absolute.stat().st_size, limit, limit_name=limit_name)

                existed = dest.absolute.exists()
                if existed and not overwrite:
                    raise AlreadyExists('copy: Destination already exists', path=dest.relative)
                if dest.absolute.is_dir():
                    raise IOFailure('copy', 'Destination is a directory', path=dest.relative)
                dest.absolute.parent.mkdir(parents=True, exist_ok=True)
                copied = _atomic_copy(source.absolute, dest.absolute, limit, limit_name)

        kind = 'modify' if existed else 'create'
        warnings = self.emit(kind, actor, dest.relative, f'Copied file: {source.relative} -> {dest.filename}')
        return OperationResult(kind, dest.relative, size=copied, warnings=warnings)

    def list(self, path: str = '', actor: str = 'system') -> OperationResult:
        with self.audited('read', actor, path):
            resolved = self.guard.resolve(path, allow_root=True)
            with self.locks.hold(resolved.absolute), translate_os_errors('list', resolved.relative):
                if not resolved.absolute.is_dir():
                    raise NotFound('list: Directory not found', path=resolved.relative)
                entries = []
                for child in sorted(resolved.absolute.iterdir()):
                    if self._hidden(child):
                        continue
                    try:
                        entries.append(self.entry_for(child))
                    except FileNotFoundError:
                        continue

        warnings = self.emit('read', actor, resolved.relative or None, f'Listed directory: {resolved.relative or "/"}')
        return OperationResult('read', resolved.relative, entries=entries, warnings=warnings)

    def mkdir(self, path: str, actor: str) -> OperationResult:
        with self.audited('create', actor, path):
            resolved = self.guard.resolve(path, sanitize=True)
            with self.locks.hold(resolved.absolute), translate_os_errors('mkdir', resolved.relative):
                if resolved.absolute.exists():
                    raise AlreadyExists('mkdir: Directory already exists', path=resolved.relative)
                resolved.absolute.mkdir(parents=True)

        warnings = self.emit('create', actor, resolved.relative, f'Created directory: {resolved.relative}')
        return OperationResult('create', resolved.relative, warnings=warnings)

    def info(self, path: str, actor: str) -> OperationResult:
        with self.audited('read', actor, path):
            resolved = self.guard.resolve(path, allow_root=True)
            with translate_os_errors('info', resolved.relative):
                entry = self.entry_for(resolved.absolute)

        warnings = self.emit('read', actor, resolved.relative or None, f'Got file info: {resolved.filename or "/"}')
        return OperationResult('read', resolved.relative, size=entry.size, info=entry, warnings=warnings)

    def usage(self) -> dict[str, int]:
        total, used, free = shutil.disk_usage(self.root)
        return {'total': total, 'used': used, 'free': free}
