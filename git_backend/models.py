"""Value types shared by the backend and its providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

if TYPE_CHECKING:
    from .cursor import Cursor


@dataclass(frozen=True)
class Credentials:
    """An access token plus the identity it belongs to.

    Replaced wholesale when the user re-authenticates.
    """

    token: str
    login: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class FileRef:
    """Reference to a file in the repository.

    `id` is a content-addressable identifier such as a blob sha and is used
    as the cache key when present.
    """

    path: str
    id: Optional[str] = None
    label: Optional[str] = None
    name: Optional[str] = None
    size: Optional[int] = None


@dataclass(frozen=True)
class LoadedFile:
    file: FileRef
    data: Any


@dataclass(frozen=True)
class EntriesPage:
    entries: list[LoadedFile]
    cursor: Optional[Cursor] = None


@dataclass(frozen=True)
class Entry:
    """A serialized entry ready to be committed."""

    path: str
    raw: Union[str, bytes]
    slug: Optional[str] = None
    collection: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class MediaFile:
    """A media asset whose content is fetched only when asked for."""

    id: Optional[str]
    name: str
    path: str
    size: Optional[int] = None
    display_url: Optional[str] = None
    loader: Optional[Callable[[], Awaitable[bytes]]] = field(
        default=None, repr=False, compare=False
    )

    async def get_blob(self) -> bytes:
        if self.loader is None:
            raise ValueError(f"No content loader for {self.path}")
        return await self.loader()


@dataclass(frozen=True)
class PersistOptions:
    """Options for a single commit.

    `update_file` selects update semantics over create semantics, which
    some providers express with different verbs or actions.
    """

    commit_message: str = ""
    update_file: bool = False
    branch: Optional[str] = None
    author: Optional[dict[str, str]] = None
    unpublished: bool = False
    status: Optional[str] = None
