from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from ..deps import get_actor, get_archives
from ..schemas import ApiResponse, ArchiveEntryOut, CreateArchiveRequest, ExtractRequest
from ..services.archives import ArchiveManager

router = APIRouter(prefix='/api/archives', tags=['archives'])


@router.get('/list')
def list_archive(path: str = Query(...), actor: str = Depends(get_actor), archives: ArchiveManager = Depends(get_archives)):
    entries, warnings = archives.list(path, actor)
    data = [ArchiveEntryOut.model_validate(entry) for entry in entries]
    return ApiResponse(ok=True, message='Listed', data=data, warnings=warnings)


@router.get('/inspect')
def inspect_archive(
    path: str = Query(...),
    actor: str = Depends(get_actor),
    archives: ArchiveManager = Depends(get_archives),
):
    report, warnings = archives.inspect(path, actor)
    data = {
        'entry_count': report.entry_count,
        'total_compressed': report.total_compressed,
        'total_uncompressed': report.total_uncompressed,
        'archive_size': report.archive_size,
        'aggregate_ratio': round(report.aggregate_ratio, 2),
    }
    return ApiResponse(ok=True, message='Archive accepted', data=data, warnings=warnings)


@router.post('/extract')
def extract_archive(
    payload: ExtractRequest,
    actor: str = Depends(get_actor),
    archives: ArchiveManager = Depends(get_archives),
):
    result = archives.extract(payload.path, payload.destination, actor)
    data = {'path': result.path, 'files': [entry.path for entry in result.entries]}
    return ApiResponse(ok=True, message='Extracted', data=data, warnings=result.warnings)


@router.post('/create')
def create_archive(
    payload: CreateArchiveRequest,
    actor: str = Depends(get_actor),
    archives: ArchiveManager = Depends(get_archives),
):
    result = archives.create(payload.sources, payload.output, actor)
    return ApiResponse(ok=True, message='Archive created', data={'path': result.path, 'size': result.size}, warnings=result.warnings)
