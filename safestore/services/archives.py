"""ZIP archives under the storage root.

Listing reads only the central directory. Extraction is gated by
:class:`ArchiveInspector` and streams every member with a hard cap equal to its
declared size, so an archive whose metadata lies is aborted rather than trusted.
Extracted trees appear under their final name only through a single rename of a
hidden staging directory.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import zipfile
import zlib
from pathlib import Path
from typing import Optional, Sequence

from ..errors import AlreadyExists, ArchiveRejected, NotFound, UnsupportedExtension
from .archive_inspector import ArchiveEntry, ArchiveInspector, InspectionReport, is_unsafe_member_name
from .file_ops import GuardedFileOps, OperationResult, fsync_dir, translate_os_errors
from .path_guard import ResolvedPath, sanitize_filename
from .size_guard import check_size

logger = logging.getLogger(__name__)

EXTRACT_CHUNK_BYTES = 64 * 1024


SUPPORTED_COMPRESSION = frozenset({zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED, zipfile.ZIP_BZIP2, zipfile.ZIP_LZMA})

# zipfile signals unreadable members with these besides BadZipFile.
_CORRUPT_DATA_ERRORS = (zipfile.BadZipFile, zlib.error, RuntimeError, NotImplementedError, EOFError)


def _require_readable(info: zipfile.ZipInfo) -> None:
    if info.flag_bits & 0x1:
        raise ArchiveRejected('encrypted_entry', f'Encrypted entry {info.filename!r}', entry=info.filename)
    if info.compress_type not in SUPPORTED_COMPRESSION:
        raise ArchiveRejected(
            'unsupported_compression',
            f'Unsupported compression method {info.compress_type} for {info.filename!r}',
            entry=info.filename,
        )


def list_entries(archive: Path) -> list[ArchiveEntry]:
    try:
        with zipfile.ZipFile(archive) as zf:
            entries = []
            for info in zf.infolist():
                if info.is_dir():
                    continue
                _require_readable(info)
                entries.append(
                    ArchiveEntry(name=info.filename, compressed_size=info.compress_size, uncompressed_size=info.file_size)
                )
            return entries
    except (zipfile.BadZipFile, EOFError) as exc:
        raise ArchiveRejected('malformed', f'Not a valid ZIP archive: {exc}') from exc


class ArchiveManager:
    def __init__(self, ops: GuardedFileOps, inspector: Optional[ArchiveInspector] = None):
        self.ops = ops
        self.inspector = inspector or ArchiveInspector(ops.limits)

    @property
    def limits(self):
        return self.ops.limits

    def _archive_size(self, resolved: ResolvedPath) -> int:
        if not resolved.absolute.is_file():
            raise NotFound('ZIP file not found', path=resolved.relative)
        size = resolved.absolute.stat().st_size
        check_size(size, self.limits.max_zip_bytes, what='ZIP archive', limit_name='max_zip_bytes')
        return size

    def list(self, path: str, actor: str) -> tuple[list[ArchiveEntry], list[str]]:
        with self.ops.audited('read', actor, path):
            resolved = self.ops.guard.resolve(path)
            with self.ops.locks.hold(resolved.absolute), translate_os_errors('archive list', resolved.relative):
                self._archive_size(resolved)
                entries = list_entries(resolved.absolute)

        warnings = self.ops.emit('read', actor, resolved.relative, f'Listed ZIP contents: {resolved.filename}')
        return entries, warnings

    def inspect(self, path: str, actor: str) -> tuple[InspectionReport, list[str]]:
        with self.ops.audited('read', actor, path):
            resolved = self.ops.guard.resolve(path)
            with self.ops.locks.hold(resolved.absolute), translate_os_errors('archive inspect', resolved.relative):
                size = self._archive_size(resolved)
                report = self.inspector.inspect(list_entries(resolved.absolute), size)

        warnings = self.ops.emit(
            'read',
            actor,
            resolved.relative,
            f'Inspected ZIP: {resolved.filename} ({report.entry_count} entries, {report.total_uncompressed} bytes)',
        )
        return report, warnings

    def extract(self, path: str, dest: str, actor: str) -> OperationResult:
        with self.ops.audited('create', actor, f'{path} -> {dest}'):
            archive = self.ops.guard.resolve(path)
            target = self.ops.guard.resolve(dest, sanitize=True)

            with self.ops.locks.hold(archive.absolute, target.absolute), translate_os_errors('extract', target.relative):
                size = self._archive_size(archive)
                self.inspector.inspect(list_entries(archive.absolute), size)
                if target.absolute.exists():
                    raise AlreadyExists('extract: Destination already exists', path=target.relative)
                target.absolute.parent.mkdir(parents=True, exist_ok=True)
                extracted = self._extract_staged(archive.absolute, target.absolute)

        warnings = self.ops.emit(
            'create', actor, target.relative, f'Extracted ZIP: {archive.filename} ({len(extracted)} files)'
        )
        return OperationResult(
            'create',
            target.relative,
            size=len(extracted),
            entries=[self.ops.entry_for(target.absolute / name) for name in extracted],
            warnings=warnings,
        )

    def _extract_staged(self, archive: Path, target: Path) -> list[str]:
        staging = Path(tempfile.mkdtemp(prefix=f'.{target.name}.', suffix='.extract', dir=str(target.parent)))
        try:
            extracted = []
            seen = set()
            with zipfile.ZipFile(archive) as zf:
                for info in zf.infolist():
                    relative = self._member_path(info.filename)
                    key = relative.as_posix()
                    if key in seen and not info.is_dir():
                        raise ArchiveRejected(
                            'duplicate_entry', f'Duplicate entry {info.filename!r}', entry=info.filename
                        )
                    seen.add(key)
                    destination = staging / relative
                    if info.is_dir():
                        destination.mkdir(parents=True, exist_ok=True)
                        continue
                    destination.parent.mkdir(parents=True, exist_ok=True)
                    self._copy_member(zf, info, destination)
                    extracted.append(relative.as_posix())
            os.replace(staging, target)
            fsync_dir(target.parent)
            return extracted
        except _CORRUPT_DATA_ERRORS as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise ArchiveRejected('malformed', f'Corrupt archive data: {exc}') from exc
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    @staticmethod
    def _member_path(name: str) -> Path:
        if is_unsafe_member_name(name):
            raise ArchiveRejected('unsafe_entry_name', f'Unsafe entry name {name!r}', entry=name)
        parts = [part for part in name.replace('\\', '/').split('/') if part and part != '.']
        if not parts:
            raise ArchiveRejected('unsafe_entry_name', f'Unsafe entry name {name!r}', entry=name)
        return Path(*(sanitize_filename(part) for part in parts))

    @staticmethod
    def _copy_member(zf: zipfile.ZipFile, info: zipfile.ZipInfo, destination: Path) -> None:
        written = 0
        with zf.open(info) as src, destination.open('xb') as dst:
            while chunk := src.read(EXTRACT_CHUNK_BYTES):
                written += len(chunk)
                if written > info.file_size:
                    raise ArchiveRejected(
                        'size_mismatch',
                        f'Entry {info.filename!r} inflates beyond its declared size ({info.file_size} bytes)',
                        entry=info.filename,
                        declared=info.file_size,
                    )
                dst.write(chunk)

    def create(self, sources: Sequence[str], output: str, actor: str) -> OperationResult:
        if not sources:
            raise NotFound('create archive: No source files given')
        with self.ops.audited('create', actor, output):
            target = self.ops.guard.resolve(output, sanitize=True)
            if target.absolute.suffix.lower() != '.zip':
                raise UnsupportedExtension('create archive: Output must be a .zip file', filename=target.filename)
            resolved = [self.ops.guard.resolve(source) for source in sources]

            with self.ops.locks.hold(target.absolute, *(r.absolute for r in resolved)), translate_os_errors(
                'create archive', target.relative
            ):
                total = 0
                for source in resolved:
                    if not source.absolute.is_file():
                        raise NotFound(f'File not found: {source.relative}', path=source.relative)
                    total += source.absolute.stat().st_size
                check_size(total, self.limits.max_zip_bytes, what='ZIP input', limit_name='max_zip_bytes')
                if target.absolute.exists():
                    raise AlreadyExists('create archive: Destination already exists', path=target.relative)
                target.absolute.parent.mkdir(parents=True, exist_ok=True)
                size = self._write_archive(resolved, target.absolute)

        warnings = self.ops.emit(
            'create', actor, target.relative, f'Created ZIP archive: {target.filename} ({len(resolved)} files)'
        )
        return OperationResult('create', target.relative, size=size, warnings=warnings)

    def _write_archive(self, sources: list[ResolvedPath], target: Path) -> int:
        fd, tmp_path = tempfile.mkstemp(prefix=f'.{target.name}.', suffix='.tmp', dir=str(target.parent))
        try:
            with os.fdopen(fd, 'wb') as handle:
                with zipfile.ZipFile(handle, mode='w', compression=zipfile.ZIP_DEFLATED) as zf:
                    for source in sources:
                        zf.write(source.absolute, arcname=source.relative)
                handle.flush()
                os.fsync(handle.fileno())
            size = Path(tmp_path).stat().st_size
            check_size(size, self.limits.max_zip_bytes, what='ZIP archive', limit_name='max_zip_bytes')
            os.replace(tmp_path, target)
            fsync_dir(target.parent)
            return size
        except Exception:
            Path(tmp_path).unlink(missing_ok=True)
            raise
