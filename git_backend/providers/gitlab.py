"""GitLab provider.

Implements the required operations plus cursor pagination over the GitLab
v4 API. The repository tree endpoint lists files oldest-first, so folder
listings start from the last page and present it reversed.
"""

from __future__ import annotations

import functools
import logging
import posixpath
from typing import Any, Optional, Sequence, Union
from urllib.parse import quote

from ..cache import cache_key
from ..config import CollectionConfig, collection_file_refs, matches_extension
from ..context import Context
from ..cursor import Cursor, cursor_from_headers, reverse_cursor
from ..errors import AuthError, CursorValidationError
from ..models import (
    Credentials,
    EntriesPage,
    Entry,
    FileRef,
    LoadedFile,
    MediaFile,
    PersistOptions,
)
from ..request import (
    Request,
    RequestLike,
    execute,
    parse_response,
    request_blob,
    request_json,
    request_text,
    to_base64,
    with_json_body,
    with_method,
    with_params,
)

logger = logging.getLogger(__name__)

WRITE_ACCESS = 30
MAX_PER_PAGE = 100


def _file_ref(item: dict) -> FileRef:
    return FileRef(path=item["path"], id=item.get("id"), name=item.get("name"))


def _blobs(items: list[dict]) -> list[dict]:
    return [item for item in items if item.get("type") == "blob"]


class GitLabProvider:
    """Provider for gitlab.com and self-hosted GitLab."""

    name = "gitlab"
    DEFAULT_API_ROOT = "https://gitlab.com/api/v4"

    def build_context(self, ctx: Context) -> Context:
        if not ctx.repo:
            raise ValueError('The GitLab backend needs a "repo" in the backend configuration.')
        return ctx.evolve(api_root=ctx.api_root or self.DEFAULT_API_ROOT)

    def repo_url(self, ctx: Context) -> str:
        return f"/projects/{quote(ctx.repo, safe='')}"

    def _file_url(self, ctx: Context, path: str) -> str:
        return f"{self.repo_url(ctx)}/repository/files/{quote(path.lstrip('/'), safe='')}"

    async def check_credentials(self, ctx: Context, credentials: Credentials) -> Credentials:
        """Verify the credentials grant at least developer access.

        Either project or group access of level 30 or more is accepted.
        """

        async def given_credentials() -> Credentials:
            return credentials

        auth_ctx = ctx.evolve(get_credentials=given_credentials)
        project = await request_json(auth_ctx, self.repo_url(ctx))
        user = await request_json(auth_ctx, "/user")

        permissions = project.get("permissions") or {}
        for scope in ("project_access", "group_access"):
            access = permissions.get(scope) or {}
            if access.get("access_level", 0) >= WRITE_ACCESS:
                return Credentials(
                    token=credentials.token,
                    login=user.get("username"),
                    name=user.get("name"),
                    email=user.get("email"),
                )

        raise AuthError("Your GitLab user account does not have write access to this repo.")

    # Paging

    async def fetch_cursor(self, ctx: Context, req: RequestLike) -> Cursor:
        """Read only the paging headers of a listing."""
        response = await execute(ctx, with_method(req, "HEAD"))
        parse_response(response, format="blob")
        return cursor_from_headers(response.headers)

    async def fetch_cursor_and_entries(
        self, ctx: Context, req: RequestLike
    ) -> tuple[list[dict], Cursor]:
        response = await execute(ctx, with_method(req, "GET"))
        entries = parse_response(response, format="json")
        return entries, cursor_from_headers(response.headers)

    def _tree_request(self, ctx: Context, path: str, **params: Any) -> Request:
        return with_params(
            f"{self.repo_url(ctx)}/repository/tree",
            {"path": path, "ref": ctx.branch, **params},
        )

    async def list_folder(self, ctx: Context, path: str) -> tuple[list[dict], Cursor]:
        """List the newest page of a folder, newest entry first."""
        first_page = await self.fetch_cursor(ctx, self._tree_request(ctx, path))
        last_link = first_page.link("last") or self._tree_request(ctx, path)
        entries, cursor = await self.fetch_cursor_and_entries(ctx, last_link)
        return list(reversed(_blobs(entries))), reverse_cursor(cursor)

    async def list_full_folder(self, ctx: Context, path: str) -> list[dict]:
        """List every file in a folder by following next links."""
        entries, cursor = await self.fetch_cursor_and_entries(
            ctx, self._tree_request(ctx, path, per_page=MAX_PER_PAGE)
        )
        entries = list(entries)
        while cursor.has_action("next"):
            page, cursor = await self.fetch_cursor_and_entries(ctx, cursor.link("next"))
            entries.extend(page)
        return _blobs(entries)

    # Files

    async def read_file(
        self,
        ctx: Context,
        path: str,
        id: Optional[str] = None,
        ref: Optional[str] = None,
        parse_text: bool = True,
    ) -> Union[str, bytes]:
        key = cache_key(id, parse_text)
        if key:
            cached = ctx.get_cache_item(key)
            if cached is not None:
                logger.debug(f"Cache hit for {path} ({key})")
                return cached

        req = Request(
            url=f"{self._file_url(ctx, path)}/raw",
            params={"ref": ref or ctx.branch},
            cache="no-store",
        )
        result = await (request_text if parse_text else request_blob)(ctx, req)
        if key:
            ctx.set_cache_item(key, result)
        return result

    async def _fetch_files(self, ctx: Context, files: list[FileRef]) -> list[LoadedFile]:
        async def read(file: FileRef) -> Union[str, bytes]:
            return await self.read_file(ctx, file.path, id=file.id)

        return await ctx.fetcher.fetch_files(files, read)

    async def list_entries(self, ctx: Context, collection: CollectionConfig) -> EntriesPage:
        if not collection.get("folder"):
            return EntriesPage(entries=await self._fetch_files(ctx, collection_file_refs(collection)))

        items, cursor = await self.list_folder(ctx, collection["folder"])
        refs = [_file_ref(item) for item in items if matches_extension(collection, item.get("name"))]
        return EntriesPage(entries=await self._fetch_files(ctx, refs), cursor=cursor)

    async def list_all_entries(self, ctx: Context, collection: CollectionConfig) -> EntriesPage:
        if not collection.get("folder"):
            return EntriesPage(entries=await self._fetch_files(ctx, collection_file_refs(collection)))

        items = await self.list_full_folder(ctx, collection["folder"])
        refs = [_file_ref(item) for item in items if matches_extension(collection, item.get("name"))]
        return EntriesPage(entries=await self._fetch_files(ctx, refs))

    async def traverse_cursor(self, ctx: Context, cursor: Cursor, action: str) -> EntriesPage:
        """Fetch the page a cursor action points to, newest entry first.

        Raises:
            CursorValidationError: If the cursor has no link for the action
        """
        link = cursor.link(action)
        if not link:
            raise CursorValidationError(f"Cursor has no link for action {action!r}")

        items, new_cursor = await self.fetch_cursor_and_entries(ctx, link)
        refs = [_file_ref(item) for item in reversed(_blobs(items))]
        entries = await self._fetch_files(ctx, refs)
        return EntriesPage(entries=entries, cursor=reverse_cursor(new_cursor))

    async def get_entry(self, ctx: Context, path: str) -> LoadedFile:
        return LoadedFile(file=FileRef(path=path), data=await self.read_file(ctx, path))

    async def get_media(self, ctx: Context) -> list[MediaFile]:
        media_folder = ctx.config.get("media_folder")
        if not media_folder:
            return []
        items = await self.list_full_folder(ctx, media_folder)
        return [
            MediaFile(
                id=item.get("id"),
                name=item["name"],
                path=item["path"],
                loader=functools.partial(
                    self.read_file, ctx, item["path"], id=item.get("id"), parse_text=False
                ),
            )
            for item in items
        ]

    async def _commit(
        self, ctx: Context, changes: list[tuple[str, Entry]], options: PersistOptions
    ) -> None:
        """Commit (action, file) pairs atomically with one request."""
        payload: dict[str, Any] = {
            "branch": options.branch or ctx.branch,
            "commit_message": options.commit_message,
            "actions": [
                {
                    "action": action,
                    "file_path": file.path.lstrip("/"),
                    "content": to_base64(file.raw),
                    "encoding": "base64",
                }
                for action, file in changes
            ],
        }
        author = options.author or ctx.commit_author
        if author:
            payload["author_name"] = author.get("name")
            payload["author_email"] = author.get("email")

        req = with_json_body(
            with_method(f"{self.repo_url(ctx)}/repository/commits", "POST"), payload
        )
        await request_json(ctx, req)
        paths = ", ".join(file.path.lstrip("/") for _, file in changes)
        logger.info(f"Committed {paths} to {ctx.repo}@{payload['branch']}")

    async def persist_entry(
        self,
        ctx: Context,
        entry: Entry,
        options: PersistOptions,
        media_files: Sequence[Entry] = (),
    ) -> Optional[str]:
        """Commit an entry and the media files it references in one commit.

        The entry is created or updated according to `options.update_file`;
        media files uploaded with it are always new.
        """
        action = "update" if options.update_file else "create"
        changes = [(action, entry)] + [("create", media) for media in media_files]
        await self._commit(ctx, changes, options)
        return entry.slug

    async def persist_media(
        self, ctx: Context, media_file: Entry, options: PersistOptions
    ) -> MediaFile:
        action = "update" if options.update_file else "create"
        await self._commit(ctx, [(action, media_file)], options)
        raw = media_file.raw if isinstance(media_file.raw, bytes) else media_file.raw.encode("utf-8")

        async def loader() -> bytes:
            return raw

        return MediaFile(
            id=None,
            name=posixpath.basename(media_file.path),
            path=media_file.path.lstrip("/"),
            size=len(raw),
            loader=loader,
        )

    async def delete_file(
        self, ctx: Context, path: str, commit_message: str, options: PersistOptions
    ) -> None:
        params = {"commit_message": commit_message, "branch": options.branch or ctx.branch}
        author = options.author or ctx.commit_author
        if author:
            params["author_name"] = author.get("name")
            params["author_email"] = author.get("email")
        req = with_params(with_method(self._file_url(ctx, path), "DELETE"), params)
        parse_response(await execute(ctx, req), format="text")
        logger.info(f"Deleted {path} from {ctx.repo}@{params['branch']}")
