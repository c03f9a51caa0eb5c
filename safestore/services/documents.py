from __future__ import annotations

import json
from typing import Any, Union
from xml.etree.ElementTree import Element, ParseError, tostring

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring

from ..config import SizeLimits
from ..errors import DocumentRejected
from .file_ops import GuardedFileOps, OperationResult
from .size_guard import check_size

Payload = Union[str, bytes]


def _as_bytes(data: Payload) -> bytes:
    return data.encode('utf-8') if isinstance(data, str) else data


def json_depth(obj: Any) -> int:
    """Nesting depth of a parsed JSON value; scalars are depth 0."""
    deepest = 0
    stack = [(obj, 0)]
    while stack:
        value, depth = stack.pop()
        if isinstance(value, dict):
            children = value.values()
        elif isinstance(value, list):
            children = value
        else:
            deepest = max(deepest, depth)
            continue
        deepest = max(deepest, depth + 1)
        stack.extend((child, depth + 1) for child in children)
    return deepest


def xml_depth(element: Element) -> int:
    deepest = 0
    stack = [(element, 1)]
    while stack:
        node, depth = stack.pop()
        deepest = max(deepest, depth)
        stack.extend((child, depth + 1) for child in node)
    return deepest


def _check_depth(depth: int, limits: SizeLimits, kind: str) -> None:
    if depth > limits.max_nesting_depth:
        raise DocumentRejected(
            'nesting_depth',
            f'{kind} nesting too deep ({depth}, max: {limits.max_nesting_depth})',
            depth=depth,
            limit=limits.max_nesting_depth,
        )


def parse_json(data: Payload, limits: SizeLimits) -> Any:
    raw = _as_bytes(data)
    check_size(len(raw), limits.max_json_bytes, what='JSON document', limit_name='max_json_bytes')
    try:
        parsed = json.loads(raw)
    except (ValueError, RecursionError) as exc:
        raise DocumentRejected('malformed', f'JSON parsing error: {exc}') from exc
    _check_depth(json_depth(parsed), limits, 'JSON')
    return parsed


def dump_json(obj: Any, limits: SizeLimits, pretty: bool = False) -> str:
    _check_depth(json_depth(obj), limits, 'JSON')
    try:
        text = json.dumps(obj, indent=2 if pretty else None, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise DocumentRejected('malformed', f'JSON serialization error: {exc}') from exc
    check_size(len(text.encode('utf-8')), limits.max_json_bytes, what='JSON document', limit_name='max_json_bytes')
    return text


def parse_xml(data: Payload, limits: SizeLimits) -> Element:
    raw = _as_bytes(data)
    check_size(len(raw), limits.max_xml_bytes, what='XML document', limit_name='max_xml_bytes')
    try:
        root = fromstring(raw, forbid_dtd=True, forbid_entities=True, forbid_external=True)
    except DefusedXmlException as exc:
        raise DocumentRejected('forbidden_construct', f'XML contains a forbidden construct: {exc}') from exc
    except ParseError as exc:
        raise DocumentRejected('malformed', f'XML parsing error: {exc}') from exc
    _check_depth(xml_depth(root), limits, 'XML')
    return root


def dump_xml(element: Element, limits: SizeLimits) -> str:
    _check_depth(xml_depth(element), limits, 'XML')
    text = tostring(element, encoding='unicode')
    check_size(len(text.encode('utf-8')), limits.max_xml_bytes, what='XML document', limit_name='max_xml_bytes')
    return text


class DocumentStore:
    """JSON/XML documents stored through the guarded file operations."""

    def __init__(self, ops: GuardedFileOps):
        self.ops = ops

    def read_json(self, path: str, actor: str) -> Any:
        return parse_json(self.ops.read(path, actor).content, self.ops.limits)

    def write_json(self, path: str, obj: Any, actor: str, pretty: bool = False) -> OperationResult:
        return self.ops.write(path, dump_json(obj, self.ops.limits, pretty=pretty), actor)

    def read_xml(self, path: str, actor: str) -> Element:
        return parse_xml(self.ops.read(path, actor).content, self.ops.limits)

    def write_xml(self, path: str, element: Element, actor: str) -> OperationResult:
        return self.ops.write(path, dump_xml(element, self.ops.limits), actor)
