"""Tests for the request pipeline."""

from __future__ import annotations

import asyncio
import json

import pytest
import requests
import responses
from requests.structures import CaseInsensitiveDict

from conftest import FakeServer, make_context, make_response
from git_backend.errors import APIError, AuthError, NetworkError, NotFoundError, ParseError
from git_backend.request import (
    USER_AGENT,
    Request,
    RequestsExecutor,
    Response,
    authorize,
    execute,
    from_url,
    parse_response,
    request_json,
    request_text,
    to_base64,
    with_default_headers,
    with_headers,
    with_json_body,
    with_method,
    with_params,
    with_root,
    with_timestamp,
)


class TestTransformations:
    """Test cases for the pure request transformations."""

    def test_from_url_moves_query_into_params(self) -> None:
        """Test that a query string becomes request params."""
        req = from_url("https://gitlab.com/api/v4/projects/1/repository/tree?page=3&path=posts")
        assert req.url == "https://gitlab.com/api/v4/projects/1/repository/tree"
        assert req.params == {"page": "3", "path": "posts"}
        assert req.method == "GET"

    def test_with_root_prefixes_relative_urls(self) -> None:
        """Test that relative URLs get the API root."""
        req = with_root("/repos/owner/site", "https://api.github.com/")
        assert req.url == "https://api.github.com/repos/owner/site"

    def test_with_root_keeps_absolute_urls(self) -> None:
        """Test that absolute URLs from Link headers are left alone."""
        req = with_root("https://gitlab.com/api/v4/projects/1", "https://api.github.com")
        assert req.url == "https://gitlab.com/api/v4/projects/1"

    def test_transformations_do_not_mutate(self) -> None:
        """Test that every transformation returns a new request."""
        original = Request(url="/user", headers={"Accept": "text/plain"})

        changed = with_headers(with_params(with_method(original, "post"), {"a": 1}), {"X": "1"})

        assert changed.method == "POST"
        assert changed.params == {"a": 1}
        assert changed.headers == {"Accept": "text/plain", "X": "1"}
        assert original == Request(url="/user", headers={"Accept": "text/plain"})

    def test_transformations_are_order_independent(self) -> None:
        """Test that applying transformations in any order gives the same request."""
        a = with_params(with_method(with_root("/user", "https://api.github.com"), "PUT"), {"x": 1})
        b = with_root(with_method(with_params("/user", {"x": 1}), "PUT"), "https://api.github.com")
        assert a == b

    def test_with_default_headers_keeps_existing(self) -> None:
        """Test that default headers never override explicit ones."""
        req = with_default_headers(
            Request(url="/x", headers={"Content-Type": "text/plain"}),
            {"Content-Type": "application/json", "Accept": "*/*"},
        )
        assert req.headers["Content-Type"] == "text/plain"
        assert req.headers["Accept"] == "*/*"

    def test_with_timestamp(self) -> None:
        """Test that a millisecond timestamp is added."""
        req = with_timestamp(Request(url="/x", params={"ref": "main"}))
        assert req.params["ref"] == "main"
        assert isinstance(req.params["ts"], int)
        assert req.params["ts"] > 10**12

    def test_with_json_body(self) -> None:
        """Test JSON body encoding."""
        req = with_json_body("/x", {"message": "hi"})
        assert json.loads(req.body) == {"message": "hi"}
        assert req.headers["Content-Type"] == "application/json"

    def test_to_base64(self) -> None:
        """Test base64 encoding of text and bytes."""
        assert to_base64("# Title") == "IyBUaXRsZQ=="
        assert to_base64(b"\x00\x01") == "AAE="


class TestParseResponse:
    """Test cases for response parsing."""

    def test_parse_json(self) -> None:
        """Test decoding a JSON response."""
        response = make_response(json_body={"login": "octocat"})
        assert parse_response(response, format="json") == {"login": "octocat"}

    def test_parse_json_accepts_text_json(self) -> None:
        """Test that text/json counts as JSON."""
        response = make_response(body='{"a": 1}', content_type="text/json; charset=utf-8")
        assert parse_response(response, format="json") == {"a": 1}

    def test_parse_json_rejects_html(self) -> None:
        """Test that a content type mismatch is a ParseError."""
        response = make_response(body="<html>{}</html>", content_type="text/html")
        with pytest.raises(ParseError, match=r"expected format \(json\)") as exc_info:
            parse_response(response, format="json")
        assert exc_info.value.format == "json"

    def test_parse_json_rejects_malformed_body(self) -> None:
        """Test that a malformed body never returns partial data."""
        response = make_response(body='{"a": ', content_type="application/json")
        with pytest.raises(ParseError):
            parse_response(response, format="json")

    def test_parse_unknown_format(self) -> None:
        """Test that unsupported formats are rejected."""
        with pytest.raises(ParseError, match="not a supported response format"):
            parse_response(make_response(body="x"), format="xml")

    def test_parse_text_and_blob(self) -> None:
        """Test text and blob decoding."""
        response = make_response(body="héllo")
        assert parse_response(response, format="text") == "héllo"
        assert parse_response(response, format="blob") == "héllo".encode("utf-8")

    @pytest.mark.parametrize(
        "status,error",
        [(404, NotFoundError), (401, AuthError), (403, AuthError), (500, APIError)],
    )
    def test_error_statuses(self, status: int, error: type) -> None:
        """Test that error statuses map to the error taxonomy."""
        response = make_response(status, json_body={"message": "Nope"})
        with pytest.raises(error, match="Nope"):
            parse_response(response, format="json")

    def test_error_status_not_checked(self) -> None:
        """Test decoding an error response when not expecting ok."""
        response = make_response(422, json_body={"message": "Invalid"})
        assert parse_response(response, format="json", expecting_ok=False) == {
            "message": "Invalid"
        }


class TestExecute:
    """Test cases for authorized execution through the context."""

    def test_execute_prepares_request(self) -> None:
        """Test that execute adds root, token and timestamp."""
        server = FakeServer()
        server.add("GET", "/user", json_body={"login": "octocat"})
        ctx = make_context(server)

        result = asyncio.run(request_json(ctx, "/user"))

        assert result == {"login": "octocat"}
        sent = server.calls[0]
        assert sent.url == "https://api.github.com/user"
        assert sent.headers["Authorization"] == "Bearer test-token"
        assert sent.headers["Content-Type"] == "application/json"
        assert "ts" in sent.params

    def test_request_text(self) -> None:
        """Test text requests."""
        server = FakeServer()
        server.add("GET", "/readme", body="# Hello")
        ctx = make_context(server)

        assert asyncio.run(request_text(ctx, "/readme")) == "# Hello"
        assert server.calls[0].headers["Content-Type"] == "text/plain"

    def test_authorize_without_credentials(self) -> None:
        """Test that a missing token is an AuthError."""
        server = FakeServer()

        async def no_credentials():
            return None

        ctx = make_context(server).evolve(get_credentials=no_credentials)
        with pytest.raises(AuthError, match="Not authenticated"):
            asyncio.run(authorize(ctx, "/user"))
        assert server.calls == []

    def test_execute_returns_error_responses(self) -> None:
        """Test that execute itself does not raise for error statuses."""
        server = FakeServer()
        ctx = make_context(server)

        response = asyncio.run(execute(ctx, "/missing"))
        assert response.status == 404


class TestRequestsExecutor:
    """Test cases for the requests based executor."""

    @responses.activate
    def test_send_request(self) -> None:
        """Test sending a request through the session."""
        responses.add(
            responses.POST,
            "https://api.github.com/repos/owner/site/forks",
            json={"full_name": "octocat/site"},
            status=202,
        )

        executor = RequestsExecutor(timeout=5)
        req = with_json_body(
            with_method("https://api.github.com/repos/owner/site/forks", "POST"), {}
        )
        response = asyncio.run(executor(req))

        assert isinstance(response, Response)
        assert response.status == 202
        assert response.headers["content-type"] == "application/json"
        assert json.loads(response.content) == {"full_name": "octocat/site"}
        assert responses.calls[0].request.headers["User-Agent"] == USER_AGENT
        executor.close()

    @responses.activate
    def test_connection_error(self) -> None:
        """Test that transport failures become NetworkError."""
        responses.add(
            responses.GET,
            "https://api.github.com/user",
            body=requests.exceptions.ConnectionError("Connection refused"),
        )

        executor = RequestsExecutor()
        with pytest.raises(NetworkError, match="Failed to reach"):
            asyncio.run(executor(Request(url="https://api.github.com/user")))

    def test_headers_are_case_insensitive(self) -> None:
        """Test response header lookup ignores case."""
        response = Response(status=200, headers=CaseInsensitiveDict({"X-Page": "1"}))
        assert response.headers["x-page"] == "1"
        assert response.ok
