from __future__ import annotations

import pytest

from safestore.config import SizeLimits
from safestore.errors import RatioExceeded, SizeExceeded
from safestore.services.size_guard import check_ratio, check_size, compression_ratio


def test_check_size_accepts_limit_boundary():
    check_size(0, 100)
    check_size(100, 100)


def test_check_size_rejects_over_limit_with_details():
    with pytest.raises(SizeExceeded) as exc:
        check_size(101, 100, limit_name='max_file_bytes')

    assert exc.value.details['limit'] == 100
    assert exc.value.details['size'] == 101
    assert exc.value.details['limit_name'] == 'max_file_bytes'


def test_check_size_rejects_negative_count():
    with pytest.raises(SizeExceeded):
        check_size(-1, 100)


def test_check_ratio_rejects_zero_compressed_size():
    with pytest.raises(RatioExceeded):
        check_ratio(0, 10, 100)


def test_check_ratio_rejects_bomb_ratio():
    with pytest.raises(RatioExceeded) as exc:
        check_ratio(1, 10_000, 100)

    assert exc.value.details['ratio'] == 10_000
    assert exc.value.details['max_ratio'] == 100


def test_check_ratio_accepts_ratio_at_limit():
    check_ratio(1, 100, 100)
    check_ratio(10, 50, 100)


def test_compression_ratio_is_zero_without_compressed_bytes():
    assert compression_ratio(0, 5) == 0.0
    assert compression_ratio(4, 10) == 2.5


def test_limits_select_ceiling_by_extension():
    limits = SizeLimits(max_file_bytes=100, max_json_bytes=10, max_xml_bytes=20, max_zip_bytes=30)

    assert limits.limit_for('a.json') == ('max_json_bytes', 10)
    assert limits.limit_for('a.XML') == ('max_xml_bytes', 20)
    assert limits.limit_for('dir/a.zip') == ('max_zip_bytes', 30)
    assert limits.limit_for('a.txt') == ('max_file_bytes', 100)
    assert limits.limit_for('README') == ('max_file_bytes', 100)
