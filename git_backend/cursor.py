"""Opaque pagination cursors.

A cursor is a small serializable value with three keys:

- `actions` (required): the traversal directions available from the
  current page, a subset of first/prev/next/last. It may be empty.
- `meta` (optional): zero-based `index`, `count`, `pageSize` and
  `pageCount`, all non-negative integers.
- `data` (optional): provider-specific navigation data, which must survive
  a JSON round trip unchanged.

No other keys are allowed.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from .errors import CursorValidationError

CURSOR_KEYS = frozenset({"actions", "meta", "data"})
META_KEYS = frozenset({"index", "count", "pageSize", "pageCount"})
ACTIONS = ("first", "prev", "next", "last")

REVERSIBLE_ACTIONS = {
    "first": "last",
    "last": "first",
    "next": "prev",
    "prev": "next",
}

_LINK_URL = re.compile(r"<(.*?)>")
_LINK_REL = re.compile(r'rel="(.*?)"')


@dataclass(frozen=True)
class Cursor:
    actions: tuple[str, ...] = ()
    meta: Optional[dict[str, int]] = None
    data: Optional[dict[str, Any]] = None

    @classmethod
    def create(
        cls,
        actions: Sequence[str] = (),
        meta: Optional[Mapping[str, int]] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> Cursor:
        return cls(
            actions=tuple(actions),
            meta=dict(meta) if meta is not None else None,
            data=dict(data) if data is not None else None,
        )

    @classmethod
    def from_dict(cls, candidate: Mapping[str, Any]) -> Cursor:
        """Build a cursor from its serialized form, validating it first."""
        return validate_cursor(candidate)

    def has_action(self, action: str) -> bool:
        return action in self.actions

    def link(self, action: str) -> Optional[str]:
        """URL stored for a traversal action, if any."""
        links = (self.data or {}).get("links", {})
        return links.get(action)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"actions": list(self.actions)}
        if self.meta is not None:
            result["meta"] = dict(self.meta)
        if self.data is not None:
            result["data"] = self.data
        return result


def _is_serializable(value: Any) -> bool:
    try:
        return json.loads(json.dumps(value)) == value
    except (TypeError, ValueError):
        return False


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate_cursor(candidate: Any) -> Cursor:
    """Check that a candidate has a valid cursor shape.

    Args:
        candidate: A Cursor or a mapping in serialized cursor form

    Returns:
        The candidate as a Cursor

    Raises:
        CursorValidationError: If the candidate is not a valid cursor
    """
    if isinstance(candidate, Cursor):
        candidate = {
            "actions": list(candidate.actions),
            "meta": candidate.meta,
            "data": candidate.data,
        }
        candidate = {k: v for k, v in candidate.items() if v is not None or k == "actions"}

    if not isinstance(candidate, Mapping):
        raise CursorValidationError("Invalid cursor returned! Cursor must be a mapping")

    extra_keys = set(candidate) - CURSOR_KEYS
    if extra_keys:
        raise CursorValidationError(
            f"Invalid cursor returned! Unexpected keys: {sorted(extra_keys)}"
        )

    actions = candidate.get("actions")
    if not isinstance(actions, (list, tuple)):
        raise CursorValidationError("Invalid cursor returned! 'actions' must be a sequence")
    for action in actions:
        if not isinstance(action, str):
            raise CursorValidationError(f"Invalid cursor returned! Bad action: {action!r}")

    data = candidate.get("data")
    if not _is_serializable(data):
        raise CursorValidationError("Invalid cursor returned! 'data' is not serializable")

    meta = candidate.get("meta")
    if meta is not None:
        if not isinstance(meta, Mapping):
            raise CursorValidationError("Invalid cursor returned! 'meta' must be a mapping")
        extra_meta = set(meta) - META_KEYS
        if extra_meta:
            raise CursorValidationError(
                f"Invalid cursor returned! Unexpected meta keys: {sorted(extra_meta)}"
            )
        for key, value in meta.items():
            if not _is_count(value):
                raise CursorValidationError(
                    f"Invalid cursor returned! meta.{key} must be a non-negative integer"
                )

    return Cursor.create(actions=actions, meta=meta, data=data)


def parse_link_header(value: Optional[str]) -> dict[str, str]:
    """Parse an RFC 5988 Link header into a {rel: url} mapping."""
    links: dict[str, str] = {}
    if not value:
        return links
    for part in value.split(","):
        url_match = _LINK_URL.search(part)
        rel_match = _LINK_REL.search(part)
        if url_match and rel_match:
            links[rel_match.group(1)] = url_match.group(1).strip()
    return links


def _header_int(headers: Mapping[str, str], name: str) -> int:
    value = headers.get(name)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise CursorValidationError(f"Invalid paging header {name}: {value!r}") from e


def cursor_from_headers(headers: Mapping[str, str]) -> Cursor:
    """Build a cursor from provider paging headers.

    Page indices arrive one-based and are stored zero-based. The available
    actions are derived from the current index rather than copied from the
    Link header, since providers also list links that lead nowhere on the
    first and last pages.
    """
    index = _header_int(headers, "X-Page") - 1
    page_count = _header_int(headers, "X-Total-Pages") - 1
    page_size = _header_int(headers, "X-Per-Page")
    count = _header_int(headers, "X-Total")
    links = parse_link_header(headers.get("Link"))

    actions = [
        key
        for key in links
        if (key in ("prev", "first") and index > 0)
        or (key in ("next", "last") and index < page_count)
    ]
    return Cursor.create(
        actions=actions,
        meta={
            "index": max(index, 0),
            "count": count,
            "pageSize": page_size,
            "pageCount": max(page_count, 0),
        },
        data={"links": links},
    )


def reverse_cursor(cursor: Cursor) -> Cursor:
    """Swap a cursor's direction.

    Used to present oldest-first listings newest-first: the index becomes
    `pageCount - index` and first/last and next/prev trade places in both
    the links and the actions.
    """
    meta = None
    if cursor.meta is not None:
        meta = dict(cursor.meta)
        meta["index"] = meta.get("pageCount", 0) - meta.get("index", 0)

    data = None
    if cursor.data is not None:
        data = dict(cursor.data)
        if "links" in data:
            data["links"] = {
                REVERSIBLE_ACTIONS.get(k, k): v for k, v in data["links"].items()
            }

    actions = [REVERSIBLE_ACTIONS.get(action, action) for action in cursor.actions]
    return Cursor.create(actions=actions, meta=meta, data=data)
