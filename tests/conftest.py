"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional, Union
from urllib.parse import urlsplit

import pytest
from requests.structures import CaseInsensitiveDict

from git_backend.cache import ContentCache
from git_backend.context import Context, get_context_for
from git_backend.models import Credentials
from git_backend.request import Request, Response

GITHUB_ROOT = "https://api.github.com"
GITLAB_ROOT = "https://gitlab.com/api/v4"

Handler = Union[Response, Callable[[Request], Response]]


def make_response(
    status: int = 200,
    json_body: Any = None,
    body: Union[str, bytes, None] = None,
    headers: Optional[dict[str, str]] = None,
    content_type: Optional[str] = None,
) -> Response:
    """Build a Response the way a provider would send it."""
    response_headers = CaseInsensitiveDict(headers or {})
    if json_body is not None:
        content = json.dumps(json_body).encode("utf-8")
        response_headers.setdefault("Content-Type", content_type or "application/json")
    else:
        content = body.encode("utf-8") if isinstance(body, str) else (body or b"")
        response_headers.setdefault("Content-Type", content_type or "text/plain")
    return Response(status=status, headers=response_headers, content=content)


class FakeServer:
    """Request executor answering from a routing table.

    Routes are keyed by method and the URL path below the API root. A route
    holds a queue of responses; the last one is repeated once the queue is
    drained. Unknown routes answer 404 like the real APIs.
    """

    def __init__(self, root: str = GITHUB_ROOT, latency: float = 0):
        self.root = root.rstrip("/")
        self.latency = latency
        self.routes: dict[tuple[str, str], list[Handler]] = {}
        self.calls: list[Request] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    def add(self, method: str, path: str, handler: Optional[Handler] = None, **kwargs: Any) -> None:
        """Queue a response for a route.

        Either pass a Response or callable, or keyword arguments for
        make_response.
        """
        if handler is None:
            handler = make_response(**kwargs)
        self.routes.setdefault((method.upper(), path), []).append(handler)

    def path_of(self, req: Request) -> str:
        if req.url.startswith(self.root):
            return req.url[len(self.root):]
        return urlsplit(req.url).path

    def calls_to(self, method: str, path: str) -> list[Request]:
        return [
            call
            for call in self.calls
            if call.method == method.upper() and self.path_of(call) == path
        ]

    async def __call__(self, req: Request) -> Response:
        self.calls.append(req)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latency)
            queue = self.routes.get((req.method, self.path_of(req)))
            if not queue:
                return make_response(404, json_body={"message": "Not Found"})
            handler = queue.pop(0) if len(queue) > 1 else queue[0]
            return handler(req) if callable(handler) else handler
        finally:
            self.in_flight -= 1


async def _token() -> Credentials:
    return Credentials(token="test-token", login="octocat")


def make_context(server: FakeServer, config: Optional[dict] = None, **extra: Any) -> Context:
    """Context for provider tests, already authenticated."""
    config = config or {}
    return get_context_for(
        config.get("backend", {}).get("name", "test"),
        config,
        ContentCache(),
        api_root=server.root,
        get_credentials=_token,
        perform_request=server,
        **extra,
    )


async def no_sleep(delay: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def github_server() -> FakeServer:
    return FakeServer(GITHUB_ROOT)


@pytest.fixture
def gitlab_server() -> FakeServer:
    return FakeServer(GITLAB_ROOT)


@pytest.fixture
def github_config() -> dict:
    """Return a validated GitHub configuration."""
    return {
        "backend": {"name": "github", "repo": "owner/site", "branch": "main"},
        "publish_mode": "simple",
        "media_folder": "static/img",
        "collections": [
            {"name": "posts", "folder": "content/posts", "extension": "md"},
            {
                "name": "pages",
                "files": [
                    {"file": "content/about.md", "label": "About"},
                    {"file": "content/contact.md", "label": "Contact"},
                ],
            },
        ],
    }


@pytest.fixture
def editorial_config(github_config: dict) -> dict:
    """Return a GitHub configuration using the editorial workflow."""
    return {**github_config, "publish_mode": "editorial_workflow"}


@pytest.fixture
def gitlab_config() -> dict:
    """Return a validated GitLab configuration."""
    return {
        "backend": {"name": "gitlab", "repo": "owner/site", "branch": "main"},
        "publish_mode": "simple",
        "media_folder": "static/img",
        "collections": [
            {"name": "posts", "folder": "content/posts", "extension": "md"},
            {"name": "pages", "files": [{"file": "content/about.md", "label": "About"}]},
        ],
    }


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a sample configuration file."""
    return """backend:
  name: github
  repo: owner/site
  branch: main
  squash_merges: true

publish_mode: editorial_workflow
media_folder: static/img

collections:
  - name: posts
    folder: content/posts
    extension: .md
  - name: pages
    files:
      - file: content/about.md
        label: About
"""
