"""Provider adapters, registered by backend name."""

from __future__ import annotations

from typing import Any

from .github import GitHubProvider
from .gitlab import GitLabProvider

PROVIDERS = {
    GitHubProvider.name: GitHubProvider,
    GitLabProvider.name: GitLabProvider,
}


def resolve_provider(name: str, **kwargs: Any) -> Any:
    """Instantiate the provider registered under `name`.

    Raises:
        ValueError: If no provider has that name
    """
    try:
        provider_class = PROVIDERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown backend '{name}', expected one of {', '.join(sorted(PROVIDERS))}"
        ) from None
    return provider_class(**kwargs)


__all__ = ["GitHubProvider", "GitLabProvider", "PROVIDERS", "resolve_provider"]
