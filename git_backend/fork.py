"""Fork-based contributor authorization.

Maintainers of the origin repository commit to it directly. Everyone else
commits to a personal fork: the fork is requested once, then polled until
the provider reports it as reachable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

from .context import Context
from .errors import AuthError, NotFoundError
from .request import request_json, with_method

logger = logging.getLogger(__name__)

MAINTAINER_PERMISSIONS = ("admin", "write")
POLL_INTERVAL = 0.25  # seconds


class ForkState(str, Enum):
    CHECK_MAINTAINER = "check_maintainer"
    USE_ORIGIN = "use_origin"
    REQUEST_FORK = "request_fork"
    POLL_FORK_EXISTENCE = "poll_fork_existence"
    USE_FORK = "use_fork"


@dataclass(frozen=True)
class ForkDecision:
    """Where the acting user's commits go."""

    state: ForkState
    repo: str
    origin_repo: str

    @property
    def use_fork(self) -> bool:
        return self.state is ForkState.USE_FORK


class ForkWorkflow:
    """Decides between committing to the origin and committing to a fork.

    Maintainer lookups are cached per identity for the lifetime of the
    workflow instance.
    """

    def __init__(
        self,
        poll_interval: float = POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the workflow.

        Args:
            poll_interval: Delay between fork existence probes in seconds
            sleep: Coroutine function used to wait between probes
        """
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._maintainers: dict[tuple[str, str], bool] = {}

    async def current_user(self, ctx: Context) -> dict:
        return await request_json(ctx, "/user")

    async def user_is_origin_maintainer(
        self, ctx: Context, origin_repo: str, username: Optional[str] = None
    ) -> bool:
        """Check whether a user may write to the origin repository.

        Args:
            ctx: Context for the request
            origin_repo: Repository in 'owner/name' format
            username: Login to check, defaults to the authenticated user

        Returns:
            True if the user's permission is admin or write
        """
        if not username:
            username = (await self.current_user(ctx))["login"]

        key = (origin_repo, username)
        if key not in self._maintainers:
            try:
                data = await request_json(
                    ctx,
                    f"/repos/{origin_repo}/collaborators/{quote(username)}/permission",
                )
                permission = data.get("permission")
            except NotFoundError:
                permission = None
            logger.debug(f"Permission of {username} on {origin_repo}: {permission}")
            self._maintainers[key] = permission in MAINTAINER_PERMISSIONS
        return self._maintainers[key]

    async def request_fork(self, ctx: Context, origin_repo: str) -> str:
        """Ask the provider to fork the origin and return the fork's name."""
        fork = await request_json(ctx, with_method(f"/repos/{origin_repo}/forks", "POST"))
        full_name = fork["full_name"]
        logger.info(f"Requested fork {full_name} of {origin_repo}")
        return full_name

    async def poll_until_fork_exists(self, ctx: Context, repo: str) -> None:
        """Wait until the fork repository answers.

        A not-found answer means the fork is still being created and is
        retried indefinitely. Any other failure propagates.
        """
        # TODO: bound the number of attempts once the desired behaviour on a
        # permanently missing fork is decided
        attempts = 0
        while True:
            attempts += 1
            try:
                await request_json(ctx, f"/repos/{repo}")
            except NotFoundError:
                logger.debug(f"Fork {repo} not ready yet (attempt {attempts})")
                await self._sleep(self.poll_interval)
                continue
            logger.info(f"Fork {repo} is ready after {attempts} attempt(s)")
            return

    async def resolve(
        self,
        ctx: Context,
        origin_repo: str,
        confirm_fork: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> ForkDecision:
        """Run the workflow for the authenticated user.

        Args:
            ctx: Context whose credential accessor returns the user's token
            origin_repo: Repository in 'owner/name' format
            confirm_fork: Optional callback asking the user before forking

        Returns:
            The repository to commit to

        Raises:
            AuthError: If the user declines the fork
        """
        logger.debug(f"Fork workflow: {ForkState.CHECK_MAINTAINER.value}")
        if await self.user_is_origin_maintainer(ctx, origin_repo):
            logger.info(f"User maintains {origin_repo}, committing to the origin")
            return ForkDecision(ForkState.USE_ORIGIN, origin_repo, origin_repo)

        if confirm_fork is not None and not await confirm_fork():
            raise AuthError(f"Permission to fork {origin_repo} was declined")

        logger.debug(f"Fork workflow: {ForkState.REQUEST_FORK.value}")
        fork_repo = await self.request_fork(ctx, origin_repo)

        logger.debug(f"Fork workflow: {ForkState.POLL_FORK_EXISTENCE.value}")
        await self.poll_until_fork_exists(ctx, fork_repo)

        return ForkDecision(ForkState.USE_FORK, fork_repo, origin_repo)
