from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiResponse(BaseModel):
    ok: bool
    message: str
    data: Optional[Any] = None
    warnings: list[str] = Field(default_factory=list)


class PathRequest(BaseModel):
    path: str = Field(min_length=1, max_length=4096)


class CopyRequest(BaseModel):
    source: str = Field(min_length=1, max_length=4096)
    destination: str = Field(min_length=1, max_length=4096)
    overwrite: bool = False


class ExtractRequest(BaseModel):
    path: str = Field(min_length=1, max_length=4096)
    destination: str = Field(min_length=1, max_length=4096)


class CreateArchiveRequest(BaseModel):
    sources: list[str] = Field(min_length=1, max_length=1000)
    output: str = Field(min_length=1, max_length=4096)


class ReclaimLocksRequest(BaseModel):
    max_age_sec: Optional[int] = Field(default=None, ge=0)


class FileEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    path: str
    is_dir: bool
    size: int
    mtime: int


class ArchiveEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    compressed_size: int
    uncompressed_size: int
    compression_ratio: float


class AuditEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    operation: str
    actor: str
    path: Optional[str]
    detail: str
    outcome: str
    timestamp: datetime
