"""Per-session context passed to every provider operation.

A Context carries everything a provider needs that does not depend on the
arguments of a specific call: where the API lives, which repository and
branch to use, how to get credentials, how to send requests and where to
cache file contents. It is immutable; a call that needs a different value
derives a new Context with `evolve` instead of changing the shared one.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Mapping, Optional

from .cache import CacheValue, ContentCache
from .fetcher import BoundedFetcher
from .models import Credentials
from .request import Request, Response

DEFAULT_BRANCH = "master"
EDITORIAL_WORKFLOW = "editorial_workflow"


async def _no_credentials() -> Optional[Credentials]:
    return None


async def _no_executor(req: Request) -> Response:
    raise RuntimeError(f"No request executor configured for {req.method} {req.url}")


@dataclass(frozen=True)
class Context:
    name: str
    api_root: str = ""
    repo: str = ""
    origin_repo: Optional[str] = None
    branch: str = DEFAULT_BRANCH
    config: Mapping[str, Any] = field(default_factory=dict)
    editorial_workflow: bool = False
    fork_workflow: bool = False
    use_fork_workflow: bool = False
    commit_author: Optional[Mapping[str, str]] = None
    get_credentials: Callable[[], Awaitable[Optional[Credentials]]] = _no_credentials
    get_cache_item: Callable[[str], Optional[CacheValue]] = lambda key: None
    set_cache_item: Callable[[str, CacheValue], None] = lambda key, value: None
    perform_request: Callable[[Request], Awaitable[Response]] = _no_executor
    fetcher: BoundedFetcher = field(default_factory=BoundedFetcher)

    def evolve(self, **changes: Any) -> Context:
        """Return a copy of this context with some fields replaced."""
        return replace(self, **changes)

    @property
    def read_repo(self) -> str:
        """Repository entries are read from.

        When committing through a fork, published content is still read
        from the origin since the fork may be behind.
        """
        if self.use_fork_workflow and self.origin_repo:
            return self.origin_repo
        return self.repo

    @property
    def review_repo(self) -> str:
        """Repository holding pull requests."""
        return self.origin_repo or self.repo

    @property
    def backend_config(self) -> Mapping[str, Any]:
        return self.config.get("backend", {}) or {}


def get_context_for(
    name: str,
    config: Optional[Mapping[str, Any]] = None,
    cache: Optional[ContentCache] = None,
    **extra: Any,
) -> Context:
    """Build a default context for a backend.

    Repository, branch, API root and workflow flags come from the `backend`
    section of the configuration; `extra` overrides anything.

    Args:
        name: Backend name, used to namespace cache keys
        config: Parsed configuration mapping
        cache: Content cache backing the cache accessors
        **extra: Field overrides

    Returns:
        A new Context
    """
    config = config or {}
    backend = config.get("backend", {}) or {}
    cache = cache if cache is not None else ContentCache()

    def get_cache_item(key: str) -> Optional[CacheValue]:
        return cache.get(f"backends.{name}.{key}")

    def set_cache_item(key: str, value: CacheValue) -> None:
        cache.set(f"backends.{name}.{key}", value)

    fields: dict[str, Any] = {
        "api_root": backend.get("api_root", ""),
        "repo": backend.get("repo", ""),
        "branch": (backend.get("branch") or DEFAULT_BRANCH).strip(),
        "config": config,
        "editorial_workflow": config.get("publish_mode") == EDITORIAL_WORKFLOW,
        "fork_workflow": bool(backend.get("fork_workflow", False)),
        "commit_author": backend.get("commit_author"),
        "get_cache_item": get_cache_item,
        "set_cache_item": set_cache_item,
    }
    fields.update(extra)
    return Context(name=name, **fields)
