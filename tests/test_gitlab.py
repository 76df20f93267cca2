"""Tests for the GitLab provider."""

from __future__ import annotations

import asyncio
import base64
import json
from typing import Callable

import pytest

from conftest import GITLAB_ROOT, FakeServer, make_context, make_response
from git_backend.context import Context
from git_backend.cursor import Cursor
from git_backend.errors import AuthError, CursorValidationError, NotFoundError
from git_backend.models import Credentials, Entry, PersistOptions
from git_backend.providers.gitlab import GitLabProvider
from git_backend.request import Request, Response

PROJECT = "/projects/owner%2Fsite"
TREE = f"{PROJECT}/repository/tree"


def blob(name: str, folder: str = "content/posts") -> dict:
    return {"id": f"sha-{name}", "name": name, "type": "blob", "path": f"{folder}/{name}"}


POST_PAGES = {
    1: [blob("p1.md"), blob("p2.md")],
    2: [blob("p3.md"), blob("p4.md")],
    3: [blob("p5.md"), blob("p6.md"), {"id": "t", "name": "drafts", "type": "tree", "path": "content/posts/drafts"}],
}


def tree_handler(pages: dict[int, list[dict]], per_page: int = 2) -> Callable[[Request], Response]:
    """Serve a paginated repository tree with GitLab paging headers."""
    total_pages = len(pages)
    total = sum(len(items) for items in pages.values())

    def link(page: int) -> str:
        return f"{GITLAB_ROOT}{TREE}?page={page}&path=content%2Fposts&per_page={per_page}&ref=main"

    def handle(req: Request) -> Response:
        page = int(req.params.get("page", 1))
        rels = {
            "first": 1,
            "prev": max(page - 1, 1),
            "next": min(page + 1, total_pages),
            "last": total_pages,
        }
        headers = {
            "X-Page": str(page),
            "X-Total-Pages": str(total_pages),
            "X-Per-Page": str(per_page),
            "X-Total": str(total),
            "Link": ", ".join(f'<{link(n)}>; rel="{rel}"' for rel, n in rels.items()),
        }
        return make_response(json_body=pages[page], headers=headers)

    return handle


def raw_url(path: str) -> str:
    return f"{PROJECT}/repository/files/{path.replace('/', '%2F')}/raw"


def serve_files(server: FakeServer, paths: list[str]) -> None:
    for path in paths:
        server.add("GET", raw_url(path), body=f"# {path.rsplit('/', 1)[-1]}")


def build(server: FakeServer, config: dict) -> Context:
    return GitLabProvider().build_context(make_context(server, config))


def run(coro):
    return asyncio.run(coro)


class TestContext:
    """Test cases for the GitLab context."""

    def test_defaults(self, gitlab_config: dict) -> None:
        """Test the default API root and project URL."""
        provider = GitLabProvider()
        ctx = provider.build_context(make_context(FakeServer(GITLAB_ROOT), gitlab_config).evolve(api_root=""))
        assert ctx.api_root == "https://gitlab.com/api/v4"
        assert provider.repo_url(ctx) == PROJECT


class TestCheckCredentials:
    """Test cases for access level checks."""

    @pytest.mark.parametrize(
        "permissions",
        [
            {"project_access": {"access_level": 30}, "group_access": None},
            {"project_access": None, "group_access": {"access_level": 50}},
        ],
    )
    def test_write_access(self, gitlab_server: FakeServer, gitlab_config: dict, permissions: dict) -> None:
        """Test that developer access or above is accepted."""
        gitlab_server.add("GET", PROJECT, json_body={"permissions": permissions})
        gitlab_server.add("GET", "/user", json_body={"username": "tanuki", "name": "T", "email": "t@x"})

        creds = run(GitLabProvider().check_credentials(build(gitlab_server, gitlab_config), Credentials("tok")))

        assert creds == Credentials(token="tok", login="tanuki", name="T", email="t@x")
        assert all(call.headers["Authorization"] == "Bearer tok" for call in gitlab_server.calls)

    def test_reporter_access(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test that reporter access is rejected."""
        gitlab_server.add(
            "GET", PROJECT, json_body={"permissions": {"project_access": {"access_level": 20}}}
        )
        gitlab_server.add("GET", "/user", json_body={"username": "tanuki"})

        with pytest.raises(AuthError, match="write access"):
            run(GitLabProvider().check_credentials(build(gitlab_server, gitlab_config), Credentials("tok")))

    def test_missing_project_stops_before_user_lookup(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test that the checks run in order and stop at the first failure."""
        gitlab_server.add("GET", "/user", json_body={"username": "tanuki"})

        with pytest.raises(NotFoundError):
            run(GitLabProvider().check_credentials(build(gitlab_server, gitlab_config), Credentials("tok")))
        assert [gitlab_server.path_of(call) for call in gitlab_server.calls] == [PROJECT]


class TestPagination:
    """Test cases for newest-first paginated listings."""

    def test_list_entries_starts_from_last_page(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test that the first listing shows the newest page reversed."""
        gitlab_server.add("HEAD", TREE, tree_handler(POST_PAGES))
        gitlab_server.add("GET", TREE, tree_handler(POST_PAGES))
        serve_files(gitlab_server, ["content/posts/p5.md", "content/posts/p6.md"])

        page = run(GitLabProvider().list_entries(build(gitlab_server, gitlab_config), gitlab_config["collections"][0]))

        assert [e.file.path for e in page.entries] == ["content/posts/p6.md", "content/posts/p5.md"]
        assert page.entries[0].data == "# p6.md"
        assert page.cursor.meta == {"index": 0, "count": 7, "pageSize": 2, "pageCount": 2}
        assert set(page.cursor.actions) == {"next", "last"}
        assert "page=2" in page.cursor.link("next")

        head = gitlab_server.calls_to("HEAD", TREE)[0]
        assert head.params["path"] == "content/posts"
        assert head.params["ref"] == "main"
        assert gitlab_server.calls_to("GET", TREE)[0].params["page"] == "3"

    def test_traverse_cursor(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test following a reversed cursor to the next older page."""
        gitlab_server.add("HEAD", TREE, tree_handler(POST_PAGES))
        gitlab_server.add("GET", TREE, tree_handler(POST_PAGES))
        serve_files(gitlab_server, [f"content/posts/p{i}.md" for i in range(1, 7)])
        ctx = build(gitlab_server, gitlab_config)
        provider = GitLabProvider()

        first = run(provider.list_entries(ctx, gitlab_config["collections"][0]))
        second = run(provider.traverse_cursor(ctx, first.cursor, "next"))

        assert [e.file.path for e in second.entries] == ["content/posts/p4.md", "content/posts/p3.md"]
        assert second.cursor.meta["index"] == 1
        assert set(second.cursor.actions) == {"first", "prev", "next", "last"}

        third = run(provider.traverse_cursor(ctx, second.cursor, "next"))
        assert [e.file.path for e in third.entries] == ["content/posts/p2.md", "content/posts/p1.md"]
        assert third.cursor.meta["index"] == 2
        assert set(third.cursor.actions) == {"first", "prev"}

    def test_traverse_without_link(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test that an action without a link is rejected."""
        cursor = Cursor.create(actions=["next"], data={"links": {}})
        with pytest.raises(CursorValidationError):
            run(GitLabProvider().traverse_cursor(build(gitlab_server, gitlab_config), cursor, "next"))

    def test_list_all_entries(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test that a full listing follows every page, the first one included."""
        gitlab_server.add("GET", TREE, tree_handler(POST_PAGES))
        serve_files(gitlab_server, [f"content/posts/p{i}.md" for i in range(1, 7)])

        page = run(
            GitLabProvider().list_all_entries(build(gitlab_server, gitlab_config), gitlab_config["collections"][0])
        )

        assert sorted(e.file.path for e in page.entries) == [f"content/posts/p{i}.md" for i in range(1, 7)]
        assert page.cursor is None
        assert gitlab_server.calls_to("GET", TREE)[0].params["per_page"] == 100
        assert len(gitlab_server.calls_to("GET", TREE)) == 3

    def test_files_collection(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test that files collections are read directly."""
        serve_files(gitlab_server, ["content/about.md"])

        page = run(GitLabProvider().list_entries(build(gitlab_server, gitlab_config), gitlab_config["collections"][1]))

        assert [(e.file.label, e.data) for e in page.entries] == [("About", "# about.md")]
        assert page.cursor is None


class TestFiles:
    """Test cases for reading and writing files."""

    def test_read_file_uses_cache(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test that reads with an id are cached."""
        serve_files(gitlab_server, ["content/about.md"])
        ctx = build(gitlab_server, gitlab_config)
        provider = GitLabProvider()

        run(provider.read_file(ctx, "content/about.md", id="sha-about"))
        data = run(provider.read_file(ctx, "content/about.md", id="sha-about"))

        assert data == "# about.md"
        assert len(gitlab_server.calls) == 1
        assert gitlab_server.calls[0].params["ref"] == "main"

    def test_get_media(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test listing media lazily."""
        gitlab_server.add("GET", TREE, tree_handler({1: [blob("cat.png", "static/img")]}))
        gitlab_server.add(
            "GET",
            raw_url("static/img/cat.png"),
            make_response(body=b"\x89PNG", content_type="image/png"),
        )

        media = run(GitLabProvider().get_media(build(gitlab_server, gitlab_config)))

        assert [(m.id, m.name, m.path) for m in media] == [("sha-cat.png", "cat.png", "static/img/cat.png")]
        assert run(media[0].get_blob()) == b"\x89PNG"

    def test_text_and_blob_reads_are_cached_apart(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test that a media blob is bytes even when the same sha was read as text."""
        gitlab_server.add("GET", TREE, tree_handler({1: [blob("logo.svg", "static/img")]}))
        gitlab_server.add("GET", raw_url("static/img/logo.svg"), body="<svg/>", content_type="image/svg+xml")
        ctx = build(gitlab_server, gitlab_config)
        provider = GitLabProvider()

        assert run(provider.read_file(ctx, "static/img/logo.svg", id="sha-logo.svg")) == "<svg/>"
        media = run(provider.get_media(ctx))

        assert run(media[0].get_blob()) == b"<svg/>"
        assert run(media[0].get_blob()) == b"<svg/>"
        assert len(gitlab_server.calls_to("GET", raw_url("static/img/logo.svg"))) == 2

    @pytest.mark.parametrize("update_file,action", [(False, "create"), (True, "update")])
    def test_persist_entry(
        self, gitlab_server: FakeServer, gitlab_config: dict, update_file: bool, action: str
    ) -> None:
        """Test that commits use the create or update action."""
        gitlab_server.add("POST", f"{PROJECT}/repository/commits", status=201, json_body={"id": "c1"})

        options = PersistOptions(
            commit_message="Save", update_file=update_file, author={"name": "T", "email": "t@x"}
        )
        entry = Entry(path="/content/posts/p7.md", raw="# Seven", slug="p7")
        slug = run(GitLabProvider().persist_entry(build(gitlab_server, gitlab_config), entry, options))

        assert slug == "p7"
        payload = json.loads(gitlab_server.calls[0].body)
        assert payload["branch"] == "main"
        assert payload["commit_message"] == "Save"
        assert payload["author_name"] == "T"
        assert payload["author_email"] == "t@x"
        commit_action = payload["actions"][0]
        assert commit_action["action"] == action
        assert commit_action["file_path"] == "content/posts/p7.md"
        assert commit_action["encoding"] == "base64"
        assert base64.b64decode(commit_action["content"]) == b"# Seven"

    def test_entry_and_media_share_one_commit(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test that an entry and its media files are committed with one request."""
        gitlab_server.add("POST", f"{PROJECT}/repository/commits", status=201, json_body={"id": "c1"})

        entry = Entry(path="content/posts/cat.md", raw="![cat](/static/img/cat.png)", slug="cat")
        media = [Entry(path="/static/img/cat.png", raw=b"\x89PNG"), Entry(path="static/img/dog.png", raw=b"\x89DOG")]
        options = PersistOptions(commit_message="Update cat", update_file=True)
        run(GitLabProvider().persist_entry(build(gitlab_server, gitlab_config), entry, options, media))

        assert len(gitlab_server.calls) == 1
        payload = json.loads(gitlab_server.calls[0].body)
        assert payload["commit_message"] == "Update cat"
        assert [(a["action"], a["file_path"]) for a in payload["actions"]] == [
            ("update", "content/posts/cat.md"),
            ("create", "static/img/cat.png"),
            ("create", "static/img/dog.png"),
        ]
        assert base64.b64decode(payload["actions"][2]["content"]) == b"\x89DOG"

    def test_persist_media(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test uploading media returns a loadable media file."""
        gitlab_server.add("POST", f"{PROJECT}/repository/commits", status=201, json_body={"id": "c1"})

        media = run(
            GitLabProvider().persist_media(
                build(gitlab_server, gitlab_config),
                Entry(path="static/img/cat.png", raw=b"\x89PNG"),
                PersistOptions(commit_message="Upload"),
            )
        )

        assert media.name == "cat.png"
        assert media.size == 4
        assert run(media.get_blob()) == b"\x89PNG"

    def test_delete_file(self, gitlab_server: FakeServer, gitlab_config: dict) -> None:
        """Test deleting through the repository files API."""
        gitlab_server.add("DELETE", f"{PROJECT}/repository/files/content%2Fabout.md", status=204)

        run(
            GitLabProvider().delete_file(
                build(gitlab_server, gitlab_config),
                "content/about.md",
                "Remove about",
                PersistOptions(branch="cleanup"),
            )
        )

        call = gitlab_server.calls[0]
        assert call.params["commit_message"] == "Remove about"
        assert call.params["branch"] == "cleanup"

    def test_no_editorial_workflow(self) -> None:
        """Test that the editorial operations are not offered."""
        provider = GitLabProvider()
        assert not hasattr(provider, "unpublished_entries")
        assert not hasattr(provider, "authenticate_with_fork")
