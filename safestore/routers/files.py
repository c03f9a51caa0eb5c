from __future__ import annotations

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from ..deps import get_actor, get_file_ops
from ..schemas import ApiResponse, CopyRequest, FileEntryOut, PathRequest
from ..services.file_ops import GuardedFileOps
from ..services.size_guard import check_size

router = APIRouter(prefix='/api/files', tags=['files'])

UPLOAD_CHUNK_BYTES = 1024 * 1024


def header_safe(text: str) -> str:
    """Escape ``text`` to printable ASCII; header values are latin-1 and single-line."""
    escaped = text.encode('ascii', 'backslashreplace').decode('ascii')
    return ''.join(ch if ch.isprintable() else ' ' for ch in escaped)


@router.get('/list')
def list_files(
    path: str = Query(default=''),
    sort_by: str = Query(default='name', pattern='^(name|size|date)$'),
    order: str = Query(default='asc', pattern='^(asc|desc)$'),
    actor: str = Depends(get_actor),
    ops: GuardedFileOps = Depends(get_file_ops),
):
    result = ops.list(path, actor)
    key_map = {'name': lambda i: i.name.lower(), 'size': lambda i: i.size, 'date': lambda i: i.mtime}
    items = sorted(result.entries, key=key_map[sort_by], reverse=order == 'desc')
    data = [FileEntryOut.model_validate(item) for item in items]
    return ApiResponse(ok=True, message='Listed', data=data, warnings=result.warnings)


@router.get('/read')
def read_file(path: str = Query(...), actor: str = Depends(get_actor), ops: GuardedFileOps = Depends(get_file_ops)):
    result = ops.read(path, actor)
    name = result.path.rsplit('/', 1)[-1]
    headers = {'Content-Disposition': f'attachment; filename="{header_safe(name)}"'}
    if result.warnings:
        headers['X-Audit-Warning'] = header_safe('; '.join(result.warnings))
    return Response(content=result.content, media_type='application/octet-stream', headers=headers)


@router.post('/upload')
async def upload(
    path: str = Query(default=''),
    file: UploadFile = File(...),
    actor: str = Depends(get_actor),
    ops: GuardedFileOps = Depends(get_file_ops),
):
    filename = file.filename or ''
    limit_name, limit = ops.limits.limit_for(filename)

    received = bytearray()
    while chunk := await file.read(UPLOAD_CHUNK_BYTES):
        received.extend(chunk)
        check_size(len(received), limit, what='upload', limit_name=limit_name)

    target = f'{path.rstrip("/")}/{filename}' if path else filename
    result = await run_in_threadpool(ops.write, target, bytes(received), actor)
    return ApiResponse(ok=True, message='Uploaded', data={'path': result.path, 'size': result.size}, warnings=result.warnings)


@router.post('/delete')
def delete(payload: PathRequest, actor: str = Depends(get_actor), ops: GuardedFileOps = Depends(get_file_ops)):
    result = ops.delete(payload.path, actor)
    return ApiResponse(ok=True, message='Deleted', data={'path': result.path}, warnings=result.warnings)


@router.post('/copy')
def copy(payload: CopyRequest, actor: str = Depends(get_actor), ops: GuardedFileOps = Depends(get_file_ops)):
    result = ops.copy(payload.source, payload.destination, actor, overwrite=payload.overwrite)
    return ApiResponse(ok=True, message='Copied', data={'path': result.path, 'size': result.size}, warnings=result.warnings)


@router.post('/mkdir')
def mkdir(payload: PathRequest, actor: str = Depends(get_actor), ops: GuardedFileOps = Depends(get_file_ops)):
    result = ops.mkdir(payload.path, actor)
    return ApiResponse(ok=True, message='Folder created', data={'path': result.path}, warnings=result.warnings)


@router.get('/info')
def info(path: str = Query(default=''), actor: str = Depends(get_actor), ops: GuardedFileOps = Depends(get_file_ops)):
    result = ops.info(path, actor)
    return ApiResponse(ok=True, message='Info', data=FileEntryOut.model_validate(result.info), warnings=result.warnings)


@router.get('/usage')
def usage(_: str = Depends(get_actor), ops: GuardedFileOps = Depends(get_file_ops)):
    return ApiResponse(ok=True, message='Usage', data=ops.usage())
