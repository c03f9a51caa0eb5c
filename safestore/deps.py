from __future__ import annotations

import re

from fastapi import Header, HTTPException, Request, status

from .services.archives import ArchiveManager
from .services.audit import AuditLog
from .services.file_ops import GuardedFileOps

_ACTOR_RE = re.compile(r'^[A-Za-z0-9_-]{3,50}$')


def get_actor(x_actor_id: str = Header(default='')) -> str:
    actor = x_actor_id.strip()
    if not actor:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Missing actor')
    if not _ACTOR_RE.match(actor):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Actor id must be 3-50 characters of letters, digits, underscore or hyphen',
        )
    return actor


def get_file_ops(request: Request) -> GuardedFileOps:
    return request.app.state.file_ops


def get_archives(request: Request) -> ArchiveManager:
    return request.app.state.archives


def get_audit_log(request: Request) -> AuditLog:
    return request.app.state.audit
