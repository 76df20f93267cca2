"""Uniform backend over any provider adapter.

The Backend owns the authentication lifecycle of one session, the bounded
fetcher shared by all of its operations, and the error boundary: provider
failures are logged and returned as OperationResult values instead of
being raised.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar, Union

from .cache import ContentCache
from .context import Context, get_context_for
from .cursor import Cursor, validate_cursor
from .editorial import ChangeMetadata, DeployPreview, EntryStatus, UnpublishedEntry
from .errors import CursorValidationError, NotFoundError, WorkflowConfigError
from .fetcher import MAX_CONCURRENT_DOWNLOADS, BoundedFetcher
from .models import (
    Credentials,
    EntriesPage,
    Entry,
    LoadedFile,
    MediaFile,
    PersistOptions,
)
from .provider import capabilities_of, supports_editorial_workflow
from .providers import resolve_provider
from .request import Request, RequestsExecutor, Response
from .result import OperationResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

Executor = Callable[[Request], Awaitable[Response]]


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


def _check_page(page: EntriesPage) -> EntriesPage:
    if page.cursor is not None:
        validate_cursor(page.cursor)
    return page


def _page_entries(page: EntriesPage) -> list[LoadedFile]:
    return page.entries


class Backend:
    """A provider adapter wrapped with authentication and error handling.

    Example:
        >>> backend = create_backend(config)
        >>> await backend.authenticate(Credentials(token="..."))
        >>> result = await backend.entries_by_folder(collection)
        >>> if result.ok:
        ...     print(len(result.value.entries))
    """

    def __init__(
        self,
        provider: Any,
        config: Mapping[str, Any],
        *,
        cache: Optional[ContentCache] = None,
        executor: Optional[Executor] = None,
        max_downloads: int = MAX_CONCURRENT_DOWNLOADS,
    ):
        """Initialize the backend.

        Args:
            provider: Provider adapter implementing the required operations
            config: Validated configuration
            cache: Content cache, in-memory by default
            executor: Request executor, a RequestsExecutor by default
            max_downloads: Concurrency ceiling shared by all operations

        Raises:
            TypeError: If the provider lacks a required operation
            WorkflowConfigError: If the workflow settings cannot be combined
                or the provider cannot honor them
            ValueError: If the provider rejects the configuration
        """
        self.provider = provider
        self.name = getattr(provider, "name", type(provider).__name__)
        self.capabilities = capabilities_of(provider)
        self.executor = executor or RequestsExecutor()
        self.fetcher = BoundedFetcher(max_downloads)
        self._auth: Optional[asyncio.Future] = None
        self._logged_out = False
        self._overrides: dict[str, Any] = {}

        context = get_context_for(
            self.name,
            config,
            cache,
            get_credentials=self.get_credentials,
            perform_request=self.executor,
            fetcher=self.fetcher,
        )
        self._check_workflow(context)
        if "build_context" in self.capabilities:
            context = self.provider.build_context(context)
        self._context = context

    def _check_workflow(self, ctx: Context) -> None:
        if ctx.fork_workflow and not ctx.editorial_workflow:
            raise WorkflowConfigError(
                "backend.fork_workflow can only be enabled with publish_mode: editorial_workflow"
            )
        if ctx.fork_workflow and "authenticate_with_fork" not in self.capabilities:
            raise WorkflowConfigError(f"The {self.name} backend does not support the fork workflow")
        if ctx.editorial_workflow and not supports_editorial_workflow(self.capabilities):
            raise WorkflowConfigError(
                f"The {self.name} backend does not support the editorial workflow"
            )

    # Authentication

    def _auth_result(self) -> asyncio.Future:
        # Created once and shared by every waiter until authenticate settles it
        if self._auth is None:
            self._auth = asyncio.get_running_loop().create_future()
            self._auth.add_done_callback(_consume_exception)
        return self._auth

    async def authenticate(
        self,
        credentials: Credentials,
        confirm_fork: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> Credentials:
        """Verify credentials and start the session.

        Runs the fork workflow first when it is configured. Operations
        waiting on authentication are released once this completes, or
        fail together if it raises. Authenticating again after a settled
        result starts a new session.

        Args:
            credentials: Token supplied by the application
            confirm_fork: Optional callback asking the user before forking

        Returns:
            The verified credentials, completed with the user's identity

        Raises:
            AuthError: If the credentials are rejected
        """
        if self._auth is not None and self._auth.done():
            self._auth = None
        self._logged_out = False
        future = self._auth_result()

        async def given_credentials() -> Credentials:
            return credentials

        ctx = self._context.evolve(get_credentials=given_credentials)
        overrides: dict[str, Any] = {}
        try:
            if ctx.fork_workflow:
                overrides = await self.provider.authenticate_with_fork(
                    ctx, credentials, confirm_fork
                )
                ctx = ctx.evolve(**overrides)
            if "check_credentials" in self.capabilities:
                credentials = await self.provider.check_credentials(ctx, credentials)
        except Exception as e:
            logger.error(f"Authentication with the {self.name} backend failed: {e}")
            if not future.done():
                future.set_exception(e)
            raise

        self._overrides = overrides
        if not future.done():
            future.set_result(credentials)
        login = credentials.login or "unknown user"
        logger.info(f"Authenticated with the {self.name} backend as {login}")
        return credentials

    async def restore_user(self, credentials: Credentials) -> Credentials:
        return await self.authenticate(credentials)

    async def get_credentials(self) -> Optional[Credentials]:
        """Wait until the session is authenticated and return its credentials.

        Returns None after logout, until the next authenticate.
        """
        if self._logged_out:
            return None
        return await asyncio.shield(self._auth_result())

    def logout(self) -> None:
        future, self._auth = self._auth, None
        if future is not None and not future.done():
            future.set_result(None)
        self._logged_out = True
        self._overrides = {}
        logger.info(f"Logged out of the {self.name} backend")

    async def get_token(self) -> Optional[str]:
        credentials = await self.get_credentials()
        return credentials.token if credentials else None

    def get_context(self, **overrides: Any) -> Context:
        """Build the context for one operation."""
        return self._context.evolve(**{**self._overrides, **overrides})

    # Operations

    async def _call(
        self,
        operation: str,
        empty: T,
        *args: Any,
        post: Optional[Callable[[Any], T]] = None,
        not_found_empty: bool = False,
    ) -> OperationResult[T]:
        if operation not in self.capabilities:
            logger.warning(f"The {self.name} backend does not support {operation}")
            return OperationResult.unsupported(empty)

        try:
            await self.get_credentials()
            value = await getattr(self.provider, operation)(self.get_context(), *args)
            if post is not None:
                value = post(value)
        except NotFoundError as e:
            if not_found_empty:
                logger.info(f"{operation} found nothing on the {self.name} backend: {e}")
                return OperationResult.success(empty)
            logger.error(f"{operation} failed on the {self.name} backend: {e}")
            return OperationResult.failure(e, empty)
        except Exception as e:
            logger.error(f"{operation} failed on the {self.name} backend: {e}")
            return OperationResult.failure(e, empty)
        return OperationResult.success(value)

    async def entries_by_folder(self, collection: Mapping[str, Any]) -> OperationResult[EntriesPage]:
        """One page of a folder collection, with a cursor for the rest."""
        return await self._call(
            "list_entries", EntriesPage(entries=[]), collection, post=_check_page
        )

    async def entries_by_files(self, collection: Mapping[str, Any]) -> OperationResult[list[LoadedFile]]:
        return await self._call("list_entries", [], collection, post=_page_entries)

    async def all_entries_by_folder(
        self, collection: Mapping[str, Any]
    ) -> OperationResult[list[LoadedFile]]:
        operation = "list_all_entries" if "list_all_entries" in self.capabilities else "list_entries"
        return await self._call(operation, [], collection, post=_page_entries)

    async def get_entry(self, path: str) -> OperationResult[Optional[LoadedFile]]:
        return await self._call("get_entry", None, path)

    async def get_media(self) -> OperationResult[list[MediaFile]]:
        return await self._call("get_media", [])

    async def persist_entry(
        self,
        entry: Entry,
        options: Optional[PersistOptions] = None,
        media_files: Sequence[Entry] = (),
    ) -> OperationResult[Optional[str]]:
        """Commit an entry together with the media files it references."""
        return await self._call(
            "persist_entry", None, entry, options or PersistOptions(), list(media_files)
        )

    async def persist_media(
        self, media_file: Entry, options: Optional[PersistOptions] = None
    ) -> OperationResult[Optional[MediaFile]]:
        return await self._call("persist_media", None, media_file, options or PersistOptions())

    async def delete_file(
        self, path: str, commit_message: str, options: Optional[PersistOptions] = None
    ) -> OperationResult[None]:
        return await self._call(
            "delete_file", None, path, commit_message, options or PersistOptions()
        )

    async def traverse_cursor(
        self, cursor: Union[Cursor, Mapping[str, Any]], action: str
    ) -> OperationResult[EntriesPage]:
        """Fetch the page a cursor action leads to.

        The cursor is validated first and must offer the requested action.
        """
        empty = EntriesPage(entries=[])
        try:
            cursor = validate_cursor(cursor)
            if not cursor.has_action(action):
                raise CursorValidationError(f"Cursor does not support the {action!r} action")
        except CursorValidationError as e:
            logger.error(f"Rejected cursor for traversal: {e}")
            return OperationResult.failure(e, empty)
        return await self._call("traverse_cursor", empty, cursor, action, post=_check_page)

    async def unpublished_entries(self) -> OperationResult[list[UnpublishedEntry]]:
        """All entries under review.

        A missing branch listing means there is nothing under review yet and
        is reported as an empty success; any other failure is a failure.
        """
        return await self._call("unpublished_entries", [], not_found_empty=True)

    async def unpublished_entry(
        self, collection_name: str, slug: str
    ) -> OperationResult[Optional[UnpublishedEntry]]:
        return await self._call("unpublished_entry", None, collection_name, slug)

    async def update_unpublished_entry_status(
        self, collection_name: str, slug: str, status: Union[str, EntryStatus]
    ) -> OperationResult[Optional[ChangeMetadata]]:
        return await self._call(
            "update_unpublished_entry_status", None, collection_name, slug, status
        )

    async def publish_unpublished_entry(self, collection_name: str, slug: str) -> OperationResult[None]:
        return await self._call("publish_unpublished_entry", None, collection_name, slug)

    async def delete_unpublished_entry(self, collection_name: str, slug: str) -> OperationResult[None]:
        return await self._call("delete_unpublished_entry", None, collection_name, slug)

    async def get_deploy_preview(
        self, collection_name: str, slug: str
    ) -> OperationResult[Optional[DeployPreview]]:
        return await self._call("get_deploy_preview", None, collection_name, slug)

    def close(self) -> None:
        """Release the request executor."""
        close = getattr(self.executor, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> Backend:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def create_backend(config: Mapping[str, Any], **kwargs: Any) -> Backend:
    """Create a backend for the provider named in the configuration.

    Args:
        config: Validated configuration
        **kwargs: Passed on to Backend

    Returns:
        A new Backend
    """
    provider = resolve_provider(config["backend"]["name"])
    return Backend(provider, config, **kwargs)
