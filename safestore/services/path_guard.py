"""Sandbox containment for caller-supplied paths.

Every path handed to the storage layer goes through :meth:`PathGuard.resolve`,
which produces a fresh :class:`ResolvedPath` proven to lie under the root.
Containment is decided on path components, never on string prefixes, so a
sibling such as ``/data-evil`` never passes for ``/data``.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..errors import InvalidFilename, PathEscape, UnsupportedExtension

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = frozenset({'.txt', '.json', '.xml', '.zip', '.log'})
MAX_FILENAME_LENGTH = 255

_UNSAFE_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')
_SEPARATORS = re.compile(r'[/\\]')
_DOT_RUNS = re.compile(r'\.{2,}')


@dataclass(frozen=True)
class ResolvedPath:
    absolute: Path
    relative: str
    filename: str


def _sanitize_once(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub('', name)
    cleaned = _SEPARATORS.sub('', cleaned)
    cleaned = _DOT_RUNS.sub('', cleaned)
    cleaned = cleaned.strip().lstrip('.')
    return cleaned[:MAX_FILENAME_LENGTH]


def sanitize_filename(name: str) -> str:
    """Reduce ``name`` to a safe, visible, single-component file name.

    Passes are repeated until nothing changes; each pass only removes
    characters, so the loop terminates and the result is a fixpoint.
    """
    current = name
    while True:
        cleaned = _sanitize_once(current)
        if cleaned == current:
            break
        current = cleaned
    if not current:
        raise InvalidFilename('Invalid filename after sanitization', filename=name)
    return current


def _within(candidate: Path, base: Path, strict: bool) -> bool:
    depth = len(base.parts)
    if candidate.parts[:depth] != base.parts:
        return False
    return len(candidate.parts) > depth or not strict


class PathGuard:
    def __init__(
        self,
        root: str | Path,
        allowed_extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        reserved: Iterable[str | Path] = (),
    ):
        self.root = Path(root).resolve(strict=False)
        self.allowed_extensions = frozenset(ext.lower() for ext in allowed_extensions)
        self.reserved = tuple(Path(p).resolve(strict=False) for p in reserved)

    def resolve(self, user_path: str, *, allow_root: bool = False, sanitize: bool = False) -> ResolvedPath:
        """Resolve ``user_path`` against the root.

        ``sanitize`` rewrites every component below the root through
        :func:`sanitize_filename`; use it for paths that are about to be created.
        ``allow_root`` admits the root itself (directory listings).
        """
        if '\x00' in user_path:
            raise InvalidFilename('Path contains a NUL byte', path=user_path)

        normalized = os.path.normpath(user_path.replace('\\', '/')) if user_path else '.'
        joined = Path(normalized) if os.path.isabs(normalized) else self.root / normalized
        candidate = joined.resolve(strict=False)

        self._require_within(candidate, user_path, allow_root)

        if sanitize and candidate != self.root:
            parts = [sanitize_filename(part) for part in candidate.relative_to(self.root).parts]
            # Sanitized names may land on an existing symlink, so contain them again.
            candidate = self.root.joinpath(*parts).resolve(strict=False)
            self._require_within(candidate, user_path, allow_root)

        for reserved in self.reserved:
            if _within(candidate, reserved, strict=False):
                logger.warning('Access to reserved path refused: %r', user_path)
                raise PathEscape('Path is reserved for internal use', path=user_path)

        relative = candidate.relative_to(self.root).as_posix()
        return ResolvedPath(
            absolute=candidate,
            relative='' if relative == '.' else relative,
            filename=self.display_name(candidate),
        )

    def _require_within(self, candidate: Path, user_path: str, allow_root: bool) -> None:
        if not _within(candidate, self.root, strict=not allow_root):
            logger.warning('Path escape attempt: %r resolves outside %s', user_path, self.root)
            raise PathEscape('Path traversal detected: access denied', path=user_path)

    def display_name(self, path: Path) -> str:
        if path == self.root:
            return ''
        try:
            return sanitize_filename(path.name)
        except InvalidFilename:
            return path.name

    def validate_extension(self, name: str) -> bool:
        ext = Path(name).suffix.lower()
        return ext == '' or ext in self.allowed_extensions

    def require_extension(self, name: str) -> None:
        if not self.validate_extension(name):
            raise UnsupportedExtension(
                'File extension not allowed',
                filename=name,
                allowed=sorted(self.allowed_extensions),
            )
