"""Archive-bomb detection on entry metadata, before anything is decompressed.

Per-entry and aggregate checks are both required: many entries just under the
ratio limit can still add up to an explosive archive, and one hostile entry can
hide among harmless ones.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

from ..config import SizeLimits
from ..errors import ArchiveRejected, RatioExceeded, SizeExceeded
from .size_guard import check_ratio, check_size, compression_ratio

logger = logging.getLogger(__name__)

_DRIVE = re.compile(r'^[A-Za-z]:')


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    compressed_size: int
    uncompressed_size: int

    @property
    def compression_ratio(self) -> float:
        return compression_ratio(self.compressed_size, self.uncompressed_size)


@dataclass(frozen=True)
class InspectionReport:
    entry_count: int
    total_compressed: int
    total_uncompressed: int
    archive_size: int | None

    @property
    def aggregate_ratio(self) -> float:
        return compression_ratio(self.total_compressed, self.total_uncompressed)


def is_unsafe_member_name(name: str) -> bool:
    if not name or name.startswith(('/', '\\')) or _DRIVE.match(name) or '\x00' in name:
        return True
    return any(part == '..' for part in re.split(r'[/\\]', name))


class ArchiveInspector:
    def __init__(self, limits: SizeLimits):
        self.limits = limits

    def inspect(self, entries: Sequence[ArchiveEntry], archive_size: int | None = None) -> InspectionReport:
        """Accept or reject an archive from its listing alone.

        Raises :class:`ArchiveRejected` with the first violated rule as its
        ``reason``; the violated size or ratio primitive is chained as the cause.
        """
        limits = self.limits
        if len(entries) > limits.max_archive_entries:
            raise self._reject(
                'entry_count',
                f'Archive has {len(entries)} entries (max: {limits.max_archive_entries})',
                entries=len(entries),
                limit=limits.max_archive_entries,
            )

        total_uncompressed = 0
        total_compressed = 0
        for entry in entries:
            if is_unsafe_member_name(entry.name):
                raise self._reject('unsafe_entry_name', f'Unsafe entry name {entry.name!r}', entry=entry.name)

            if entry.uncompressed_size != 0 or entry.compressed_size < 0:
                try:
                    check_ratio(
                        entry.compressed_size,
                        entry.uncompressed_size,
                        limits.max_compression_ratio,
                        what=f'entry {entry.name!r}',
                    )
                except RatioExceeded as exc:
                    raise self._reject(
                        'entry_ratio', f'Archive bomb detected: {exc.message}', entry=entry.name, **exc.details
                    ) from exc

            try:
                check_size(
                    entry.uncompressed_size,
                    limits.max_uncompressed_bytes,
                    what=f'uncompressed entry {entry.name!r}',
                    limit_name='max_uncompressed_bytes',
                )
            except SizeExceeded as exc:
                raise self._reject('entry_size', exc.message, entry=entry.name, **exc.details) from exc

            total_uncompressed += entry.uncompressed_size
            total_compressed += entry.compressed_size

        if total_uncompressed > 0:
            self._check_aggregate(total_compressed, total_uncompressed, 'declared compressed size')
            if archive_size is not None:
                self._check_aggregate(archive_size, total_uncompressed, 'archive size')

        try:
            check_size(
                total_uncompressed,
                limits.max_uncompressed_bytes,
                what='total uncompressed',
                limit_name='max_uncompressed_bytes',
            )
        except SizeExceeded as exc:
            raise self._reject('total_size', f'Archive bomb detected: {exc.message}', **exc.details) from exc

        return InspectionReport(
            entry_count=len(entries),
            total_compressed=total_compressed,
            total_uncompressed=total_uncompressed,
            archive_size=archive_size,
        )

    def _check_aggregate(self, compressed: int, uncompressed: int, basis: str) -> None:
        try:
            check_ratio(compressed, uncompressed, self.limits.max_compression_ratio, what=f'archive ({basis})')
        except RatioExceeded as exc:
            raise self._reject(
                'aggregate_ratio', f'Archive bomb detected: {exc.message}', basis=basis, **exc.details
            ) from exc

    @staticmethod
    def _reject(reason: str, message: str, **details) -> ArchiveRejected:
        logger.warning('Archive rejected (%s): %s', reason, message)
        return ArchiveRejected(reason, message, **details)
