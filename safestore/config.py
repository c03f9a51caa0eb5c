from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MiB = 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', frozen=True)

    app_name: str = 'SafeStore'
    log_level: str = 'info'
    database_url: str = 'sqlite:///./safestore.db'
    storage_root: str = './storage'
    lock_dir: str = ''
    lock_retries: int = Field(default=10, ge=1, le=10_000)
    lock_backoff_ms: int = Field(default=50, ge=0, le=60_000)
    stale_lock_age_sec: int = Field(default=60, ge=1)
    max_file_bytes: int = Field(default=100 * MiB, ge=0)
    max_json_bytes: int = Field(default=10 * MiB, ge=0)
    max_xml_bytes: int = Field(default=10 * MiB, ge=0)
    max_zip_bytes: int = Field(default=50 * MiB, ge=0)
    max_uncompressed_bytes: int = Field(default=500 * MiB, ge=0)
    max_compression_ratio: float = Field(default=100, gt=0)
    max_archive_entries: int = Field(default=10_000, ge=1)
    max_nesting_depth: int = Field(default=10, ge=1)
    allowed_extensions: str = '.txt,.json,.xml,.zip,.log'

    def root_path(self) -> Path:
        return Path(self.storage_root).resolve()

    def lock_path(self) -> Path:
        if self.lock_dir:
            return Path(self.lock_dir).resolve()
        return self.root_path() / '.locks'

    def extension_allow_list(self) -> frozenset[str]:
        return parse_extensions(self.allowed_extensions)


def parse_extensions(value: str) -> frozenset[str]:
    items = set()
    for raw in value.split(','):
        ext = raw.strip().lower()
        if not ext:
            continue
        items.add(ext if ext.startswith('.') else f'.{ext}')
    return frozenset(items)


@dataclass(frozen=True)
class SizeLimits:
    max_file_bytes: int = 100 * MiB
    max_json_bytes: int = 10 * MiB
    max_xml_bytes: int = 10 * MiB
    max_zip_bytes: int = 50 * MiB
    max_uncompressed_bytes: int = 500 * MiB
    max_compression_ratio: float = 100
    max_archive_entries: int = 10_000
    max_nesting_depth: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> SizeLimits:
        return cls(
            max_file_bytes=settings.max_file_bytes,
            max_json_bytes=settings.max_json_bytes,
            max_xml_bytes=settings.max_xml_bytes,
            max_zip_bytes=settings.max_zip_bytes,
            max_uncompressed_bytes=settings.max_uncompressed_bytes,
            max_compression_ratio=settings.max_compression_ratio,
            max_archive_entries=settings.max_archive_entries,
            max_nesting_depth=settings.max_nesting_depth,
        )

    def limit_for(self, name: str) -> tuple[str, int]:
        """Return ``(limit_name, bytes)`` for a file name, chosen by extension."""
        suffix = Path(name).suffix.lower()
        if suffix == '.json':
            return 'max_json_bytes', self.max_json_bytes
        if suffix == '.xml':
            return 'max_xml_bytes', self.max_xml_bytes
        if suffix == '.zip':
            return 'max_zip_bytes', self.max_zip_bytes
        return 'max_file_bytes', self.max_file_bytes


@lru_cache
def get_settings() -> Settings:
    return Settings()
