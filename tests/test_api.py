from __future__ import annotations

import asyncio
import io
import json
import os
import time
import zipfile

import pytest
from fastapi import HTTPException, UploadFile
from starlette.requests import Request

from safestore import main
from safestore.config import Settings, SizeLimits
from safestore.deps import get_actor
from safestore.errors import LockTimeout, NotFound, PathEscape, SizeExceeded
from safestore.routers import archives as archive_routes
from safestore.routers import audit as audit_routes
from safestore.routers import files
from safestore.schemas import CopyRequest, ExtractRequest, PathRequest, ReclaimLocksRequest
from safestore.services.archives import ArchiveManager
from safestore.services.audit import MemoryAuditLog
from safestore.services.file_ops import GuardedFileOps
from safestore.services.path_guard import PathGuard
from safestore.services.path_lock import PathLock


def _request(path: str) -> Request:
    scope = {
        'type': 'http',
        'http_version': '1.1',
        'method': 'GET',
        'scheme': 'http',
        'path': path,
        'raw_path': path.encode(),
        'query_string': b'',
        'headers': [],
        'client': ('127.0.0.1', 12345),
        'server': ('testserver', 80),
    }
    return Request(scope)


def _ops(tmp_path, audit=None, **limits) -> GuardedFileOps:
    root = tmp_path / 'storage'
    root.mkdir(exist_ok=True)
    guard = PathGuard(root, reserved=[root / '.locks'])
    locks = PathLock(root / '.locks', retries=3, backoff_seconds=0.001)
    return GuardedFileOps(guard, locks, SizeLimits(**limits), audit or MemoryAuditLog())


def _handle(exc):
    return asyncio.run(main.storage_error_handler(_request('/api/files/read'), exc))


def test_list_files_refuses_traversal_with_403(tmp_path):
    ops = _ops(tmp_path)

    with pytest.raises(PathEscape) as exc:
        files.list_files(path='../../etc', sort_by='name', order='asc', actor='alice', ops=ops)

    response = _handle(exc.value)
    assert response.status_code == 403
    assert json.loads(response.body)['code'] == 'path_escape'


def test_list_files_sorts_entries(tmp_path):
    ops = _ops(tmp_path)
    ops.write('small.txt', 'a', 'alice')
    ops.write('large.txt', 'a' * 50, 'alice')

    response = files.list_files(path='', sort_by='size', order='desc', actor='alice', ops=ops)

    assert response.ok
    assert [item.name for item in response.data] == ['large.txt', 'small.txt']


def test_read_file_returns_bytes_with_audit_warning(tmp_path):
    ops = _ops(tmp_path)
    ops.write('notes.txt', 'hello', 'alice')
    ops.audit = MemoryAuditLog(fail=True)

    response = files.read_file(path='notes.txt', actor='alice', ops=ops)

    assert response.body == b'hello'
    assert response.headers['content-disposition'] == 'attachment; filename="notes.txt"'
    assert 'Audit log unavailable' in response.headers['x-audit-warning']


class _BrokenDiskAudit(MemoryAuditLog):
    def record(self, event):
        raise RuntimeError('dïsk ☃\r\nX-Injected: yes')


def test_read_file_headers_are_single_line_ascii(tmp_path):
    ops = _ops(tmp_path)
    ops.write('日本.txt', 'hello', 'alice')
    ops.audit = _BrokenDiskAudit()

    response = files.read_file(path='日本.txt', actor='alice', ops=ops)

    warning = response.headers['x-audit-warning']
    assert warning.isascii()
    assert '\r' not in warning and '\n' not in warning
    assert warning.startswith('Audit log unavailable: d\\xefsk \\u2603')
    assert 'x-injected' not in response.headers
    assert response.headers['content-disposition'] == 'attachment; filename="\\u65e5\\u672c.txt"'
    assert response.body == b'hello'


@pytest.mark.asyncio
async def test_upload_writes_file(tmp_path):
    ops = _ops(tmp_path)
    upload = UploadFile(file=io.BytesIO(b'hello'), filename='notes.txt')

    response = await files.upload(path='docs', file=upload, actor='alice', ops=ops)

    assert response.data == {'path': 'docs/notes.txt', 'size': 5}
    assert (ops.root / 'docs' / 'notes.txt').read_bytes() == b'hello'


@pytest.mark.asyncio
async def test_upload_stops_at_size_limit(tmp_path):
    ops = _ops(tmp_path, max_file_bytes=4)
    upload = UploadFile(file=io.BytesIO(b'hello'), filename='notes.txt')

    with pytest.raises(SizeExceeded):
        await files.upload(path='', file=upload, actor='alice', ops=ops)

    assert not (ops.root / 'notes.txt').exists()


def test_copy_delete_mkdir_and_info_routes(tmp_path):
    ops = _ops(tmp_path)
    ops.write('a.txt', 'alpha', 'alice')

    assert files.mkdir(PathRequest(path='backup'), actor='alice', ops=ops).ok
    copied = files.copy(CopyRequest(source='a.txt', destination='backup/a.txt'), actor='alice', ops=ops)
    assert copied.data == {'path': 'backup/a.txt', 'size': 5}

    info = files.info(path='backup/a.txt', actor='alice', ops=ops)
    assert info.data.size == 5

    files.delete(PathRequest(path='a.txt'), actor='alice', ops=ops)
    with pytest.raises(NotFound) as exc:
        files.info(path='a.txt', actor='alice', ops=ops)
    assert _handle(exc.value).status_code == 404


def test_archive_routes_list_inspect_and_extract(tmp_path):
    ops = _ops(tmp_path)
    manager = ArchiveManager(ops)
    with zipfile.ZipFile(ops.root / 'bundle.zip', 'w') as zf:
        zf.writestr('readme.txt', 'read me')

    listed = archive_routes.list_archive(path='bundle.zip', actor='alice', archives=manager)
    assert [entry.name for entry in listed.data] == ['readme.txt']

    inspected = archive_routes.inspect_archive(path='bundle.zip', actor='alice', archives=manager)
    assert inspected.data['entry_count'] == 1

    extracted = archive_routes.extract_archive(
        ExtractRequest(path='bundle.zip', destination='unpacked'), actor='alice', archives=manager
    )
    assert extracted.data == {'path': 'unpacked', 'files': ['unpacked/readme.txt']}


def test_history_route_returns_actor_events(tmp_path):
    audit = MemoryAuditLog()
    ops = _ops(tmp_path, audit)
    ops.write('a.txt', 'alpha', 'alice')
    ops.write('b.txt', 'beta', 'bob')

    response = audit_routes.history(limit=10, actor='alice', audit=audit)

    assert [event.path for event in response.data] == ['a.txt']
    assert response.data[0].operation == 'create'


def test_lock_status_and_reclaim_routes(tmp_path):
    ops = _ops(tmp_path)
    ops.write('a.txt', 'alpha', 'alice')

    assert audit_routes.lock_status(path='a.txt', _='alice', ops=ops).data is None
    with ops.locks.acquire(ops.root / 'a.txt'):
        status = audit_routes.lock_status(path='a.txt', _='alice', ops=ops)
        assert status.message == 'Locked'
        assert status.data['pid'] == os.getpid()

    stale = ops.locks.marker_for(ops.root / 'b.txt')
    stale.write_text('{}', encoding='utf-8')
    past = time.time() - 3600
    os.utime(stale, (past, past))

    reclaimed = audit_routes.reclaim_locks(ReclaimLocksRequest(max_age_sec=60), _='alice', ops=ops)

    assert reclaimed.data == [stale.name]
    assert not stale.exists()


def test_get_actor_validates_header():
    assert get_actor(' alice ') == 'alice'

    with pytest.raises(HTTPException) as missing:
        get_actor('')
    assert missing.value.status_code == 401

    with pytest.raises(HTTPException) as invalid:
        get_actor('a!')
    assert invalid.value.status_code == 400


@pytest.mark.parametrize(
    ('exc', 'status_code'),
    [
        (PathEscape('nope'), 403),
        (SizeExceeded('too big'), 413),
        (NotFound('gone'), 404),
    ],
)
def test_storage_error_handler_maps_status(exc, status_code):
    response = _handle(exc)

    assert response.status_code == status_code
    assert response.headers['x-content-type-options'] == 'nosniff'
    assert 'retry-after' not in response.headers


def test_lock_timeout_is_retryable_503():
    response = _handle(LockTimeout('busy', path='a.txt', attempts=3))

    body = json.loads(response.body)
    assert response.status_code == 503
    assert response.headers['retry-after'] == '1'
    assert body['retryable'] is True
    assert body['attempts'] == 3


def test_unhandled_exception_handler_response_is_safe():
    request = _request('/api/files/read')
    response = asyncio.run(main.unhandled_exception_handler(request, RuntimeError('boom at /srv/storage/private')))

    assert response.status_code == 500
    assert response.body == b'{"detail":"Internal server error. Please try again."}'
    assert b'/srv/storage/private' not in response.body


def _run_lifespan(app, check):
    async def _cycle():
        async with main.lifespan(app):
            check(app)

    asyncio.run(_cycle())


def test_lifespan_wires_storage_and_audit(tmp_path):
    settings = Settings(
        storage_root=str(tmp_path / 'root'),
        database_url=f'sqlite:///{tmp_path / "audit.db"}',
    )
    app = main.create_app(settings)

    def _check(app):
        ops = app.state.file_ops
        assert ops.root == (tmp_path / 'root').resolve()
        ops.write('hello.txt', 'hi', 'alice')
        assert [e.path for e in app.state.audit.history('alice')] == ['hello.txt']
        assert app.state.archives.ops is ops

    _run_lifespan(app, _check)

    assert (tmp_path / 'root' / 'hello.txt').read_text(encoding='utf-8') == 'hi'
    assert (tmp_path / 'audit.db').exists()
