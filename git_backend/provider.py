"""Capability table for provider adapters.

A provider is an object whose methods take a Context first, then
operation-specific arguments. Some operations are required, others are
optional; the backend checks the table once at construction time and
reports missing optional operations as unsupported instead of failing.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from .context import Context
from .models import EntriesPage, Entry, LoadedFile, MediaFile, PersistOptions

REQUIRED_OPERATIONS = (
    "list_entries",
    "get_entry",
    "get_media",
    "persist_entry",
    "persist_media",
    "delete_file",
)

EDITORIAL_OPERATIONS = (
    "unpublished_entries",
    "unpublished_entry",
    "update_unpublished_entry_status",
    "publish_unpublished_entry",
    "delete_unpublished_entry",
)

OPTIONAL_OPERATIONS = (
    "build_context",
    "check_credentials",
    "list_all_entries",
    "traverse_cursor",
    "authenticate_with_fork",
    "get_deploy_preview",
) + EDITORIAL_OPERATIONS


@runtime_checkable
class Provider(Protocol):
    """Required operations every provider implements."""

    name: str

    async def list_entries(self, ctx: Context, collection: Any) -> EntriesPage:
        ...

    async def get_entry(self, ctx: Context, path: str) -> LoadedFile:
        ...

    async def get_media(self, ctx: Context) -> list[MediaFile]:
        ...

    async def persist_entry(
        self,
        ctx: Context,
        entry: Entry,
        options: PersistOptions,
        media_files: Sequence[Entry] = (),
    ) -> Optional[str]:
        ...

    async def persist_media(
        self, ctx: Context, media_file: Entry, options: PersistOptions
    ) -> MediaFile:
        ...

    async def delete_file(
        self, ctx: Context, path: str, commit_message: str, options: PersistOptions
    ) -> None:
        ...


def capabilities_of(provider: Any) -> frozenset[str]:
    """Return the operations a provider implements.

    Raises:
        TypeError: If a required operation is missing
    """
    missing = [op for op in REQUIRED_OPERATIONS if not callable(getattr(provider, op, None))]
    if missing:
        name = getattr(provider, "name", type(provider).__name__)
        raise TypeError(f"Provider {name} is missing required operations: {missing}")

    optional = {op for op in OPTIONAL_OPERATIONS if callable(getattr(provider, op, None))}
    return frozenset(REQUIRED_OPERATIONS) | frozenset(optional)


def supports_editorial_workflow(capabilities: frozenset[str]) -> bool:
    return all(op in capabilities for op in EDITORIAL_OPERATIONS)
