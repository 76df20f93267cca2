"""Request pipeline for provider REST calls.

Requests are immutable values built up by small transformation functions.
Sending a request always goes through the executor injected in the
Context, so tests can substitute the network entirely.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlsplit, urlunsplit

import requests
from requests.structures import CaseInsensitiveDict

from .errors import APIError, AuthError, NetworkError, NotFoundError, ParseError

if TYPE_CHECKING:
    from .context import Context

logger = logging.getLogger(__name__)

USER_AGENT = "git-content-backend/1.0.0"
JSON_CONTENT_TYPES = ("application/json", "text/json")


@dataclass(frozen=True)
class Request:
    """An unsent HTTP request."""

    url: str = ""
    method: str = "GET"
    params: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[Union[str, bytes]] = None
    cache: Optional[str] = None


@dataclass(frozen=True)
class Response:
    """A received HTTP response."""

    status: int
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    content: bytes = b""
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


RequestLike = Union[str, Request]


def from_url(url: str) -> Request:
    """Build a request from a URL, moving its query string into params."""
    parts = urlsplit(url)
    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    bare = urlunsplit((parts.scheme, parts.netloc, parts.path, "", parts.fragment))
    return Request(url=bare, params=params)


def ensure_request(req: RequestLike) -> Request:
    if isinstance(req, Request):
        return req
    return from_url(req)


def with_root(req: RequestLike, root: str) -> Request:
    """Prefix relative URLs with the API root."""
    req = ensure_request(req)
    if urlsplit(req.url).scheme or not root:
        return req
    return replace(req, url=f"{root.rstrip('/')}/{req.url.lstrip('/')}")


def with_method(req: RequestLike, method: str) -> Request:
    return replace(ensure_request(req), method=method.upper())


def with_params(req: RequestLike, params: Mapping[str, Any]) -> Request:
    req = ensure_request(req)
    return replace(req, params={**req.params, **params})


def with_headers(req: RequestLike, headers: Mapping[str, str]) -> Request:
    req = ensure_request(req)
    return replace(req, headers={**req.headers, **headers})


def with_default_headers(req: RequestLike, headers: Mapping[str, str]) -> Request:
    """Add headers without overriding ones already present."""
    req = ensure_request(req)
    return replace(req, headers={**headers, **req.headers})


def with_timestamp(req: RequestLike) -> Request:
    """Add a cache-busting timestamp parameter."""
    return with_params(req, {"ts": int(time.time() * 1000)})


def with_json_body(req: RequestLike, payload: Any) -> Request:
    req = with_headers(req, {"Content-Type": "application/json"})
    return replace(req, body=json.dumps(payload))


def to_base64(raw: Union[str, bytes]) -> str:
    """Encode file content for APIs that take base64 payloads."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


async def authorize(ctx: Context, req: RequestLike) -> Request:
    """Attach a bearer token from the context's credential accessor.

    The accessor may suspend until the user has authenticated.
    """
    credentials = await ctx.get_credentials()
    if credentials is None or not credentials.token:
        raise AuthError("Not authenticated")
    return with_headers(req, {"Authorization": f"Bearer {credentials.token}"})


async def execute(ctx: Context, req: RequestLike) -> Response:
    """Prepare a request and hand it to the context's executor."""
    prepared = with_timestamp(await authorize(ctx, with_root(req, ctx.api_root)))
    logger.debug(f"{prepared.method} {prepared.url}")
    return await ctx.perform_request(prepared)


def _raise_for_status(response: Response) -> None:
    if response.ok:
        return
    message = f"Expected an ok response, but received an error status: {response.status}."
    try:
        payload = json.loads(response.content.decode("utf-8"))
        if isinstance(payload, dict) and payload.get("message"):
            message = str(payload["message"])
    except (UnicodeDecodeError, ValueError):
        pass
    if response.status == 404:
        raise NotFoundError(message, status=404)
    if response.status in (401, 403):
        raise AuthError(message, status=response.status)
    raise APIError(message, status=response.status)


def _format_json(response: Response) -> Any:
    content_type = response.headers.get("Content-Type", "")
    if not content_type.startswith(JSON_CONTENT_TYPES):
        raise ValueError(f"{content_type} is not a valid JSON Content-Type")
    return json.loads(response.content.decode("utf-8"))


def _format_text(response: Response) -> str:
    return response.content.decode("utf-8")


def _format_blob(response: Response) -> bytes:
    return response.content


RESPONSE_FORMATTERS = {
    "json": _format_json,
    "text": _format_text,
    "blob": _format_blob,
}


def parse_response(
    response: Response, format: str = "text", expecting_ok: bool = True
) -> Any:
    """Decode a response body into the requested format.

    Args:
        response: Response to decode
        format: One of 'json', 'text' or 'blob'
        expecting_ok: Raise for non-2xx statuses before decoding

    Returns:
        The decoded body

    Raises:
        NotFoundError: For 404 responses
        AuthError: For 401 and 403 responses
        APIError: For other error statuses
        ParseError: If the content type or body does not match the format
    """
    if expecting_ok:
        _raise_for_status(response)
    formatter = RESPONSE_FORMATTERS.get(format)
    if formatter is None:
        raise ParseError(format, f"{format} is not a supported response format.")
    try:
        return formatter(response)
    except (ValueError, UnicodeDecodeError) as e:
        raise ParseError(format, str(e)) from e


async def request_json(ctx: Context, req: RequestLike) -> Any:
    req = with_default_headers(req, {"Content-Type": "application/json"})
    return parse_response(await execute(ctx, req), format="json")


async def request_text(ctx: Context, req: RequestLike) -> str:
    req = with_default_headers(req, {"Content-Type": "text/plain"})
    return parse_response(await execute(ctx, req), format="text")


async def request_blob(ctx: Context, req: RequestLike) -> bytes:
    return parse_response(await execute(ctx, req), format="blob")


class RequestsExecutor:
    """Default request executor backed by a requests session.

    Each call runs the blocking request on a worker thread so the event
    loop stays free while waiting on the network.
    """

    def __init__(
        self, timeout: int = 30, session: Optional[requests.Session] = None
    ) -> None:
        """Initialize the executor.

        Args:
            timeout: Request timeout in seconds
            session: Optional preconfigured session
        """
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    async def __call__(self, req: Request) -> Response:
        return await asyncio.to_thread(self._send, req)

    def _send(self, req: Request) -> Response:
        try:
            response = self.session.request(
                req.method,
                req.url,
                params=dict(req.params),
                headers=dict(req.headers),
                data=req.body,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Request to {req.url} failed: {e}")
            raise NetworkError(f"Failed to reach {req.url}: {e}") from e
        return Response(
            status=response.status_code,
            headers=CaseInsensitiveDict(response.headers),
            content=response.content,
            url=response.url,
        )

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()
