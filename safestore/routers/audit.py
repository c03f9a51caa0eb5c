from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from ..deps import get_actor, get_audit_log, get_file_ops
from ..schemas import ApiResponse, AuditEventOut, ReclaimLocksRequest
from ..services.audit import AuditLog
from ..services.file_ops import GuardedFileOps

router = APIRouter(tags=['audit'])


@router.get('/api/audit/history')
def history(
    limit: int = Query(default=100, ge=1, le=1000),
    actor: str = Depends(get_actor),
    audit: AuditLog = Depends(get_audit_log),
):
    events = audit.history(actor, limit=limit)
    return ApiResponse(ok=True, message='History', data=[AuditEventOut.model_validate(e) for e in events])


@router.get('/api/locks/status')
def lock_status(path: str = Query(...), _: str = Depends(get_actor), ops: GuardedFileOps = Depends(get_file_ops)):
    resolved = ops.guard.resolve(path, allow_root=True)
    holder = ops.locks.holder(resolved.absolute)
    return ApiResponse(ok=True, message='Locked' if holder else 'Unlocked', data=holder)


@router.post('/api/locks/reclaim')
def reclaim_locks(
    payload: ReclaimLocksRequest,
    _: str = Depends(get_actor),
    ops: GuardedFileOps = Depends(get_file_ops),
):
    removed = ops.locks.reclaim_stale(payload.max_age_sec)
    return ApiResponse(ok=True, message=f'Reclaimed {len(removed)} stale locks', data=[m.name for m in removed])
