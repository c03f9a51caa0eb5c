from __future__ import annotations

from ..errors import RatioExceeded, SizeExceeded


def check_size(byte_count: int, limit: int, what: str = 'file', limit_name: str = 'max_file_bytes') -> None:
    if byte_count < 0:
        raise SizeExceeded(f'Invalid {what} size ({byte_count} bytes)', size=byte_count, limit=limit, limit_name=limit_name)
    if byte_count > limit:
        raise SizeExceeded(
            f'{what.capitalize()} size ({byte_count} bytes) exceeds maximum allowed size ({limit} bytes)',
            size=byte_count,
            limit=limit,
            limit_name=limit_name,
        )


def compression_ratio(compressed: int, uncompressed: int) -> float:
    if compressed <= 0:
        return 0.0
    return uncompressed / compressed


def check_ratio(compressed: int, uncompressed: int, max_ratio: float, what: str = 'archive') -> None:
    # Zero compressed bytes is an unbounded ratio, never a division.
    if compressed <= 0:
        raise RatioExceeded(
            f'Invalid compressed size for {what} ({compressed} bytes)',
            compressed=compressed,
            uncompressed=uncompressed,
            max_ratio=max_ratio,
        )
    ratio = uncompressed / compressed
    if ratio > max_ratio:
        raise RatioExceeded(
            f'Compression ratio of {what} ({ratio:.2f}) exceeds maximum allowed ({max_ratio:g})',
            compressed=compressed,
            uncompressed=uncompressed,
            ratio=round(ratio, 2),
            max_ratio=max_ratio,
        )
