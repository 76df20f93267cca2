"""Unpublished change sets kept on provider branches.

Each entry under review lives on its own branch named after a content key
derived from the collection name and the entry slug. The branches on the
provider are the single source of truth: nothing about pending changes is
stored locally.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence

from .context import Context

logger = logging.getLogger(__name__)

CMS_BRANCH_PREFIX = "cms"
BRANCH_REF_PREFIX = f"refs/heads/{CMS_BRANCH_PREFIX}/"
STATUS_LABEL_PREFIX = f"{CMS_BRANCH_PREFIX}/"
PREVIEW_CONTEXT_KEYWORDS = ("deploy",)

_METADATA_COMMENT = re.compile(r"<!--\s*cms-metadata:\s*(\{.*?\})\s*-->", re.DOTALL)


class EntryStatus(str, Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    PENDING_PUBLISH = "pending_publish"


INITIAL_STATUS = EntryStatus.DRAFT


@dataclass(frozen=True)
class PullRequestRef:
    number: int
    head: str
    url: Optional[str] = None


@dataclass(frozen=True)
class ChangeMetadata:
    """Review metadata attached to an unpublished entry."""

    collection: str
    slug: str
    path: str
    status: EntryStatus = INITIAL_STATUS
    author: Optional[str] = None
    title: Optional[str] = None
    pr: Optional[PullRequestRef] = None
    labels: tuple[str, ...] = field(default=(), compare=False)


@dataclass(frozen=True)
class UnpublishedEntry:
    slug: str
    collection: str
    path: str
    data: Any
    metadata: ChangeMetadata
    is_modification: bool


@dataclass(frozen=True)
class DeployPreview:
    url: str
    status: str


def generate_content_key(collection_name: str, slug: str) -> str:
    """Derive the stable key identifying an entry under review."""
    return f"{collection_name}/{slug}"


def branch_name(content_key: str) -> str:
    return f"{CMS_BRANCH_PREFIX}/{content_key}"


def content_key_from_ref(ref: str) -> Optional[str]:
    """Recover the content key from a branch ref.

    Accepts both full refs ('refs/heads/cms/posts/hello') and short branch
    names ('cms/posts/hello'). Returns None for branches outside the
    workflow's prefix.
    """
    if ref.startswith(BRANCH_REF_PREFIX):
        key = ref[len(BRANCH_REF_PREFIX):]
    elif ref.startswith(f"{CMS_BRANCH_PREFIX}/"):
        key = ref[len(CMS_BRANCH_PREFIX) + 1:]
    else:
        return None
    return key or None


def slug_from_content_key(content_key: str) -> str:
    return content_key.split("/")[-1]


def collection_from_content_key(content_key: str) -> str:
    return content_key.rsplit("/", 1)[0]


def status_label(status: EntryStatus) -> str:
    return f"{STATUS_LABEL_PREFIX}{status.value}"


def status_from_labels(labels: Iterable[str]) -> EntryStatus:
    for label in labels:
        if label.startswith(STATUS_LABEL_PREFIX):
            try:
                return EntryStatus(label[len(STATUS_LABEL_PREFIX):])
            except ValueError:
                logger.debug(f"Ignoring unknown status label {label}")
    return INITIAL_STATUS


def encode_metadata_comment(metadata: ChangeMetadata) -> str:
    """Render the parts of the metadata stored in a pull request body."""
    payload = {
        "collection": metadata.collection,
        "slug": metadata.slug,
        "path": metadata.path,
        "title": metadata.title,
    }
    return f"<!-- cms-metadata: {json.dumps(payload, sort_keys=True)} -->"


def decode_metadata_comment(body: Optional[str]) -> Optional[dict[str, Any]]:
    if not body:
        return None
    match = _METADATA_COMMENT.search(body)
    if match is None:
        return None
    try:
        return json.loads(match.group(1))
    except ValueError as e:
        logger.error(f"Malformed metadata comment in pull request body: {e}")
        return None


async def discover_unpublished(
    ctx: Context,
    refs: Sequence[str],
    resolve: Callable[[Context, str], Awaitable[Optional[UnpublishedEntry]]],
) -> list[UnpublishedEntry]:
    """Resolve every workflow branch into an unpublished entry.

    Branches outside the workflow prefix are skipped. Resolution runs under
    the context's fetcher, so it shares the same concurrency ceiling as file
    downloads; a branch that fails to resolve is logged and left out.

    Args:
        ctx: Context for the requests
        refs: Branch refs reported by the provider
        resolve: Coroutine function turning a content key into an entry

    Returns:
        Entries for every branch that resolved
    """
    content_keys = [key for key in map(content_key_from_ref, refs) if key]
    logger.debug(f"Found {len(content_keys)} unpublished branch(es)")

    async def resolve_key(content_key: str) -> Optional[UnpublishedEntry]:
        return await resolve(ctx, content_key)

    return await ctx.fetcher.map(
        content_keys,
        resolve_key,
        describe=lambda key: f"unpublished entry {key}",
    )


def is_preview_context(context: str, preview_context: Optional[str] = None) -> bool:
    """Check whether a status context provides a deploy preview.

    An exact match against `preview_context` when given, otherwise any of
    the default keywords appearing in the context.
    """
    if preview_context:
        return context == preview_context
    return any(keyword in context for keyword in PREVIEW_CONTEXT_KEYWORDS)


def get_preview_status(
    statuses: Iterable[Mapping[str, Any]], preview_context: Optional[str] = None
) -> Optional[Mapping[str, Any]]:
    for status in statuses:
        if is_preview_context(status.get("context", ""), preview_context):
            return status
    return None
