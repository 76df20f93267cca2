"""GitHub provider.

Implements the full capability set over the GitHub REST API, including the
editorial workflow (one branch and one pull request per entry under review)
and fork-based contribution for users who cannot write to the origin.
"""

from __future__ import annotations

import functools
import logging
import posixpath
from dataclasses import replace
from typing import Awaitable, Callable, Optional, Sequence, Union
from urllib.parse import quote, urlsplit, urlunsplit

from ..cache import cache_key
from ..config import CollectionConfig, collection_file_refs, matches_extension
from ..context import Context
from ..editorial import (
    CMS_BRANCH_PREFIX,
    INITIAL_STATUS,
    STATUS_LABEL_PREFIX,
    ChangeMetadata,
    DeployPreview,
    EntryStatus,
    PullRequestRef,
    UnpublishedEntry,
    branch_name,
    collection_from_content_key,
    decode_metadata_comment,
    discover_unpublished,
    encode_metadata_comment,
    generate_content_key,
    get_preview_status,
    slug_from_content_key,
    status_from_labels,
    status_label,
)
from ..errors import AuthError, NotFoundError
from ..fork import ForkWorkflow
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
    execute,
    parse_response,
    request_blob,
    request_json,
    request_text,
    to_base64,
    with_json_body,
    with_method,
)

logger = logging.getLogger(__name__)

RAW_MEDIA_TYPE = "application/vnd.github.v3.raw"
MERGE_COMMIT_MESSAGE = "Automatically generated. Merged on CMS."
PULL_REQUEST_BODY = "Automatically generated by the CMS"


def _display_url(download_url: Optional[str]) -> Optional[str]:
    """Download URL for a media file, asking GitHub to sanitize SVGs."""
    if not download_url:
        return None
    parts = urlsplit(download_url)
    if not parts.path.endswith(".svg"):
        return download_url
    query = f"{parts.query}&sanitize=true" if parts.query else "sanitize=true"
    return urlunsplit(parts._replace(query=query))


class GitHubProvider:
    """Provider for github.com and GitHub Enterprise."""

    name = "github"
    DEFAULT_API_ROOT = "https://api.github.com"

    def __init__(self, fork_workflow: Optional[ForkWorkflow] = None):
        """Initialize the provider.

        Args:
            fork_workflow: Optional fork workflow instance, mainly for tests
        """
        self.fork_workflow = fork_workflow or ForkWorkflow()

    def build_context(self, ctx: Context) -> Context:
        if not ctx.repo:
            raise ValueError('The GitHub backend needs a "repo" in the backend configuration.')
        return ctx.evolve(
            api_root=ctx.api_root or self.DEFAULT_API_ROOT,
            origin_repo=ctx.repo if ctx.fork_workflow else ctx.origin_repo,
        )

    # Authentication

    async def check_credentials(self, ctx: Context, credentials: Credentials) -> Credentials:
        """Verify the credentials can push to the repository.

        Returns:
            The credentials completed with the user's identity

        Raises:
            AuthError: If the repository is missing or not writable
        """
        user = await request_json(ctx, "/user")
        try:
            repo = await request_json(ctx, f"/repos/{ctx.repo}")
        except NotFoundError as e:
            raise AuthError(
                f'Repo "{ctx.repo}" not found. Please ensure the repo information is '
                "spelled correctly. If the repo is private, make sure you're logged "
                "into a GitHub account with access.",
                status=404,
            ) from e

        permissions = repo.get("permissions") or {}
        if not (permissions.get("push") or permissions.get("admin")):
            raise AuthError("Your GitHub user account does not have access to this repo.")

        return replace(
            credentials,
            login=user.get("login"),
            name=user.get("name"),
            email=user.get("email"),
        )

    async def authenticate_with_fork(
        self,
        ctx: Context,
        credentials: Credentials,
        confirm_fork: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> dict:
        """Pick the repository to commit to for a fork-workflow user.

        Returns:
            Context overrides for the rest of the session
        """
        origin = ctx.origin_repo or ctx.repo
        decision = await self.fork_workflow.resolve(ctx, origin, confirm_fork)
        return {
            "repo": decision.repo,
            "origin_repo": decision.origin_repo,
            "use_fork_workflow": decision.use_fork,
        }

    # Files

    def _contents_url(self, repo: str, path: str) -> str:
        return f"/repos/{repo}/contents/{quote(path.strip('/'), safe='/')}"

    async def read_file(
        self,
        ctx: Context,
        path: str,
        id: Optional[str] = None,
        ref: Optional[str] = None,
        repo: Optional[str] = None,
        parse_text: bool = True,
    ) -> Union[str, bytes]:
        """Read a file, consulting the content cache when an id is known."""
        key = cache_key(id, parse_text)
        if key:
            cached = ctx.get_cache_item(key)
            if cached is not None:
                logger.debug(f"Cache hit for {path} ({key})")
                return cached

        req = Request(
            url=self._contents_url(repo or ctx.repo, path),
            params={"ref": ref or ctx.branch},
            headers={"Accept": RAW_MEDIA_TYPE},
            cache="no-store",
        )
        result = await (request_text if parse_text else request_blob)(ctx, req)
        if key:
            ctx.set_cache_item(key, result)
        return result

    async def list_files(self, ctx: Context, folder: str, repo: Optional[str] = None) -> list[dict]:
        """List the files directly inside a folder.

        A missing folder lists as empty.
        """
        req = Request(url=self._contents_url(repo or ctx.repo, folder), params={"ref": ctx.branch})
        try:
            items = await request_json(ctx, req)
        except NotFoundError:
            logger.info(f"Folder {folder} does not exist on {ctx.branch}")
            return []
        return [item for item in items if item.get("type") == "file"]

    async def _file_sha(
        self, ctx: Context, path: str, branch: str, repo: Optional[str] = None
    ) -> Optional[str]:
        req = Request(url=self._contents_url(repo or ctx.repo, path), params={"ref": branch})
        try:
            data = await request_json(ctx, req)
        except NotFoundError:
            return None
        return data.get("sha")

    async def _fetch_files(self, ctx: Context, files: list[FileRef]) -> list[LoadedFile]:
        async def read(file: FileRef) -> Union[str, bytes]:
            return await self.read_file(ctx, file.path, id=file.id, repo=ctx.read_repo)

        return await ctx.fetcher.fetch_files(files, read)

    async def list_entries(self, ctx: Context, collection: CollectionConfig) -> EntriesPage:
        if collection.get("folder"):
            files = await self.list_files(ctx, collection["folder"], repo=ctx.read_repo)
            refs = [
                FileRef(
                    path=item["path"],
                    id=item.get("sha"),
                    name=item.get("name"),
                    size=item.get("size"),
                )
                for item in files
                if matches_extension(collection, item.get("name"))
            ]
        else:
            refs = collection_file_refs(collection)
        return EntriesPage(entries=await self._fetch_files(ctx, refs))

    async def list_all_entries(self, ctx: Context, collection: CollectionConfig) -> EntriesPage:
        # The contents API is not paginated, one listing has everything
        return await self.list_entries(ctx, collection)

    async def get_entry(self, ctx: Context, path: str) -> LoadedFile:
        data = await self.read_file(ctx, path, repo=ctx.read_repo)
        return LoadedFile(file=FileRef(path=path), data=data)

    async def get_media(self, ctx: Context) -> list[MediaFile]:
        media_folder = ctx.config.get("media_folder")
        if not media_folder:
            return []
        files = await self.list_files(ctx, media_folder, repo=ctx.read_repo)
        return [
            MediaFile(
                id=item.get("sha"),
                name=item["name"],
                path=item["path"],
                size=item.get("size"),
                display_url=_display_url(item.get("download_url")),
                loader=functools.partial(
                    self.read_file,
                    ctx,
                    item["path"],
                    id=item.get("sha"),
                    repo=ctx.read_repo,
                    parse_text=False,
                ),
            )
            for item in files
        ]

    async def _put_file(
        self, ctx: Context, path: str, raw: Union[str, bytes], options: PersistOptions, branch: str
    ) -> dict:
        payload = {
            "message": options.commit_message,
            "content": to_base64(raw),
            "branch": branch,
        }
        if options.update_file:
            sha = await self._file_sha(ctx, path, branch)
            if sha:
                payload["sha"] = sha
        author = options.author or ctx.commit_author
        if author:
            payload["author"] = dict(author)

        req = with_json_body(with_method(self._contents_url(ctx.repo, path), "PUT"), payload)
        return await request_json(ctx, req)

    async def _commit_files(
        self, ctx: Context, files: Sequence[Entry], options: PersistOptions, branch: str
    ) -> str:
        """Commit several files to a branch as a single commit.

        Goes through the git data API: one blob per file, a tree on top of
        the branch head, a commit, then a fast-forward of the branch.

        Returns:
            The sha of the new commit
        """
        git = f"/repos/{ctx.repo}/git"
        head = await request_json(ctx, f"{git}/ref/heads/{branch}")
        parent_sha = head["object"]["sha"]
        parent = await request_json(ctx, f"{git}/commits/{parent_sha}")

        tree = []
        for file in files:
            blob = await request_json(
                ctx,
                with_json_body(
                    with_method(f"{git}/blobs", "POST"),
                    {"content": to_base64(file.raw), "encoding": "base64"},
                ),
            )
            tree.append(
                {"path": file.path.strip("/"), "mode": "100644", "type": "blob", "sha": blob["sha"]}
            )

        new_tree = await request_json(
            ctx,
            with_json_body(
                with_method(f"{git}/trees", "POST"),
                {"base_tree": parent["tree"]["sha"], "tree": tree},
            ),
        )
        payload = {
            "message": options.commit_message,
            "tree": new_tree["sha"],
            "parents": [parent_sha],
        }
        author = options.author or ctx.commit_author
        if author:
            payload["author"] = dict(author)
        commit = await request_json(
            ctx, with_json_body(with_method(f"{git}/commits", "POST"), payload)
        )
        await request_json(
            ctx,
            with_json_body(
                with_method(f"{git}/refs/heads/{branch}", "PATCH"),
                {"sha": commit["sha"], "force": False},
            ),
        )
        paths = ", ".join(item["path"] for item in tree)
        logger.info(f"Committed {paths} to {ctx.repo}@{branch}")
        return commit["sha"]

    async def persist_entry(
        self,
        ctx: Context,
        entry: Entry,
        options: PersistOptions,
        media_files: Sequence[Entry] = (),
    ) -> Optional[str]:
        """Commit an entry and the media files it references in one commit."""
        if ctx.editorial_workflow and options.unpublished:
            return await self._persist_unpublished(ctx, entry, options, media_files)

        await self._commit_files(ctx, [entry, *media_files], options, options.branch or ctx.branch)
        return entry.slug

    async def persist_media(
        self, ctx: Context, media_file: Entry, options: PersistOptions
    ) -> MediaFile:
        branch = options.branch or ctx.branch
        result = await self._put_file(ctx, media_file.path, media_file.raw, options, branch)
        content = result.get("content") or {}
        raw = media_file.raw if isinstance(media_file.raw, bytes) else media_file.raw.encode("utf-8")

        async def loader() -> bytes:
            return raw

        return MediaFile(
            id=content.get("sha"),
            name=posixpath.basename(media_file.path),
            path=media_file.path.lstrip("/"),
            size=len(raw),
            display_url=_display_url(content.get("download_url")),
            loader=loader,
        )

    async def delete_file(
        self, ctx: Context, path: str, commit_message: str, options: PersistOptions
    ) -> None:
        branch = options.branch or ctx.branch
        sha = await self._file_sha(ctx, path, branch)
        if sha is None:
            raise NotFoundError(f"File {path} not found on {branch}", status=404)

        payload = {"message": commit_message, "sha": sha, "branch": branch}
        author = options.author or ctx.commit_author
        if author:
            payload["author"] = dict(author)
        req = with_json_body(with_method(self._contents_url(ctx.repo, path), "DELETE"), payload)
        await request_json(ctx, req)
        logger.info(f"Deleted {path} from {ctx.repo}@{branch}")

    # Editorial workflow

    async def list_unpublished_branches(self, ctx: Context) -> list[str]:
        refs = await request_json(
            ctx, f"/repos/{ctx.repo}/git/matching-refs/heads/{CMS_BRANCH_PREFIX}/"
        )
        return [ref["ref"] for ref in refs]

    async def _find_pull_request(self, ctx: Context, content_key: str) -> Optional[dict]:
        owner = ctx.repo.split("/")[0]
        req = Request(
            url=f"/repos/{ctx.review_repo}/pulls",
            params={"head": f"{owner}:{branch_name(content_key)}", "state": "open"},
        )
        pulls = await request_json(ctx, req)
        return pulls[0] if pulls else None

    async def retrieve_metadata(self, ctx: Context, content_key: str) -> Optional[ChangeMetadata]:
        """Read the review metadata of an entry from its pull request."""
        pr = await self._find_pull_request(ctx, content_key)
        if pr is None:
            logger.debug(f"No open pull request for {content_key}")
            return None

        stored = decode_metadata_comment(pr.get("body")) or {}
        path = stored.get("path")
        if not path:
            logger.warning(f"Pull request #{pr['number']} has no entry path in its metadata")
            return None

        labels = tuple(label["name"] for label in pr.get("labels", []))
        return ChangeMetadata(
            collection=stored.get("collection") or collection_from_content_key(content_key),
            slug=stored.get("slug") or slug_from_content_key(content_key),
            path=path,
            status=status_from_labels(labels),
            author=(pr.get("user") or {}).get("login"),
            title=stored.get("title") or pr.get("title"),
            pr=PullRequestRef(
                number=pr["number"],
                head=pr["head"]["sha"],
                url=pr.get("html_url"),
            ),
            labels=labels,
        )

    async def read_unpublished_branch_file(
        self, ctx: Context, content_key: str
    ) -> Optional[UnpublishedEntry]:
        metadata = await self.retrieve_metadata(ctx, content_key)
        if metadata is None:
            return None

        data = await self.read_file(
            ctx, metadata.path, ref=branch_name(content_key), repo=ctx.repo
        )
        published_sha = await self._file_sha(ctx, metadata.path, ctx.branch, repo=ctx.read_repo)
        return UnpublishedEntry(
            slug=metadata.slug,
            collection=metadata.collection,
            path=metadata.path,
            data=data,
            metadata=metadata,
            is_modification=published_sha is not None,
        )

    async def unpublished_entries(self, ctx: Context) -> list[UnpublishedEntry]:
        try:
            refs = await self.list_unpublished_branches(ctx)
        except NotFoundError:
            logger.info("No unpublished entries")
            return []
        return await discover_unpublished(ctx, refs, self.read_unpublished_branch_file)

    async def unpublished_entry(
        self, ctx: Context, collection_name: str, slug: str
    ) -> Optional[UnpublishedEntry]:
        content_key = generate_content_key(collection_name, slug)
        return await self.read_unpublished_branch_file(ctx, content_key)

    async def _require_metadata(self, ctx: Context, content_key: str) -> ChangeMetadata:
        metadata = await self.retrieve_metadata(ctx, content_key)
        if metadata is None or metadata.pr is None:
            raise NotFoundError(f"No unpublished entry for {content_key}", status=404)
        return metadata

    async def _ensure_branch(self, ctx: Context, branch: str) -> None:
        try:
            await request_json(ctx, f"/repos/{ctx.repo}/git/ref/heads/{branch}")
            return
        except NotFoundError:
            pass

        base = await request_json(ctx, f"/repos/{ctx.review_repo}/git/ref/heads/{ctx.branch}")
        req = with_json_body(
            with_method(f"/repos/{ctx.repo}/git/refs", "POST"),
            {"ref": f"refs/heads/{branch}", "sha": base["object"]["sha"]},
        )
        await request_json(ctx, req)
        logger.info(f"Created branch {branch} on {ctx.repo}")

    async def _open_pull_request(
        self, ctx: Context, branch: str, metadata: ChangeMetadata, commit_message: str
    ) -> dict:
        owner = ctx.repo.split("/")[0]
        payload = {
            "title": metadata.title or commit_message,
            "body": f"{PULL_REQUEST_BODY}\n\n{encode_metadata_comment(metadata)}",
            "head": f"{owner}:{branch}",
            "base": ctx.branch,
        }
        pr = await request_json(
            ctx, with_json_body(with_method(f"/repos/{ctx.review_repo}/pulls", "POST"), payload)
        )
        await request_json(
            ctx,
            with_json_body(
                with_method(f"/repos/{ctx.review_repo}/issues/{pr['number']}/labels", "POST"),
                {"labels": [status_label(metadata.status)]},
            ),
        )
        logger.info(f"Opened pull request #{pr['number']} for {branch}")
        return pr

    async def _persist_unpublished(
        self, ctx: Context, entry: Entry, options: PersistOptions, media_files: Sequence[Entry]
    ) -> str:
        if not entry.collection or not entry.slug:
            raise ValueError("Unpublished entries need a collection and a slug")

        content_key = generate_content_key(entry.collection, entry.slug)
        branch = branch_name(content_key)
        await self._ensure_branch(ctx, branch)
        await self._commit_files(ctx, [entry, *media_files], options, branch)

        if await self._find_pull_request(ctx, content_key) is None:
            metadata = ChangeMetadata(
                collection=entry.collection,
                slug=entry.slug,
                path=entry.path,
                status=EntryStatus(options.status or INITIAL_STATUS),
                title=entry.title,
            )
            await self._open_pull_request(ctx, branch, metadata, options.commit_message)
        return entry.slug

    async def update_unpublished_entry_status(
        self, ctx: Context, collection_name: str, slug: str, status: Union[str, EntryStatus]
    ) -> ChangeMetadata:
        content_key = generate_content_key(collection_name, slug)
        metadata = await self._require_metadata(ctx, content_key)
        new_status = EntryStatus(status)
        labels = [label for label in metadata.labels if not label.startswith(STATUS_LABEL_PREFIX)]
        labels.append(status_label(new_status))

        req = with_json_body(
            with_method(f"/repos/{ctx.review_repo}/issues/{metadata.pr.number}/labels", "PUT"),
            {"labels": labels},
        )
        await request_json(ctx, req)
        logger.info(f"Status of {content_key} is now {new_status.value}")
        return replace(metadata, status=new_status, labels=tuple(labels))

    async def _delete_branch(self, ctx: Context, content_key: str) -> None:
        req = with_method(f"/repos/{ctx.repo}/git/refs/heads/{branch_name(content_key)}", "DELETE")
        try:
            parse_response(await execute(ctx, req), format="text")
        except NotFoundError:
            logger.debug(f"Branch for {content_key} was already deleted")

    async def publish_unpublished_entry(
        self, ctx: Context, collection_name: str, slug: str
    ) -> None:
        content_key = generate_content_key(collection_name, slug)
        metadata = await self._require_metadata(ctx, content_key)
        merge_method = "squash" if ctx.backend_config.get("squash_merges") else "merge"
        req = with_json_body(
            with_method(f"/repos/{ctx.review_repo}/pulls/{metadata.pr.number}/merge", "PUT"),
            {
                "commit_message": MERGE_COMMIT_MESSAGE,
                "sha": metadata.pr.head,
                "merge_method": merge_method,
            },
        )
        await request_json(ctx, req)
        await self._delete_branch(ctx, content_key)
        logger.info(f"Published {content_key}")

    async def delete_unpublished_entry(
        self, ctx: Context, collection_name: str, slug: str
    ) -> None:
        content_key = generate_content_key(collection_name, slug)
        metadata = await self.retrieve_metadata(ctx, content_key)
        if metadata is not None and metadata.pr is not None:
            req = with_json_body(
                with_method(f"/repos/{ctx.review_repo}/pulls/{metadata.pr.number}", "PATCH"),
                {"state": "closed"},
            )
            await request_json(ctx, req)
        await self._delete_branch(ctx, content_key)
        logger.info(f"Discarded {content_key}")

    async def get_deploy_preview(
        self, ctx: Context, collection_name: str, slug: str
    ) -> Optional[DeployPreview]:
        """Infer a deploy preview URL from the statuses of the entry's head commit."""
        content_key = generate_content_key(collection_name, slug)
        metadata = await self.retrieve_metadata(ctx, content_key)
        if metadata is None or metadata.pr is None:
            return None

        combined = await request_json(
            ctx, f"/repos/{ctx.review_repo}/commits/{metadata.pr.head}/status"
        )
        status = get_preview_status(
            combined.get("statuses", []), ctx.backend_config.get("preview_context")
        )
        if status is None:
            return None
        return DeployPreview(url=status["target_url"], status=status["state"])
