"""Tests for the GitHub REST client using httpx's mock transport."""
from __future__ import annotations

import asyncio
import base64
import json

import httpx
import pytest

from marks_vault.automation.errors import CredentialError, GitHubAPIError, TransientError
from marks_vault.automation.github import GitHubClient
from marks_vault.automation.ports import GitHubCredentials

CREDS = GitHubCredentials(token="t0ken")


def run(coro):
    return asyncio.run(coro)


def client_for(responder, requests=None) -> GitHubClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return responder(request)

    return GitHubClient(base_url="https://api.test", transport=httpx.MockTransport(handler))


def test_validate_credentials_returns_login_and_sends_token() -> None:
    requests = []
    client = client_for(lambda request: httpx.Response(200, json={"login": "octo"}), requests)

    assert run(client.validate_credentials(CREDS)) == "octo"
    assert requests[0].url.path == "/user"
    assert requests[0].headers["Authorization"] == "Bearer t0ken"


def test_unauthorized_maps_to_credential_error() -> None:
    client = client_for(lambda request: httpx.Response(401, json={"message": "Bad credentials"}))

    with pytest.raises(CredentialError, match="401"):
        run(client.validate_credentials(CREDS))


def test_server_errors_and_rate_limits_are_transient() -> None:
    busy = client_for(lambda request: httpx.Response(503))
    limited = client_for(lambda request: httpx.Response(403, headers={"x-ratelimit-remaining": "0"}))

    with pytest.raises(TransientError, match="temporarily"):
        run(busy.repo_exists(CREDS, "octo", "repo"))
    with pytest.raises(TransientError, match="rate limit"):
        run(limited.repo_exists(CREDS, "octo", "repo"))


def test_transport_failures_are_transient() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientError, match="network"):
        run(client_for(refuse).validate_credentials(CREDS))


def test_missing_resources() -> None:
    client = client_for(lambda request: httpx.Response(404, json={"message": "Not Found"}))

    assert run(client.repo_exists(CREDS, "octo", "repo")) is False
    assert run(client.get_file(CREDS, "octo", "repo", "a.json")) is None
    assert run(client.list_directory(CREDS, "octo", "repo")) == []
    with pytest.raises(GitHubAPIError) as excinfo:
        run(client.create_repo(CREDS, "repo"))
    assert excinfo.value.status_code == 404


def test_put_and_get_file_use_base64_content() -> None:
    requests = []

    def responder(request: httpx.Request) -> httpx.Response:
        if request.method == "PUT":
            return httpx.Response(201, json={"content": {"sha": "abc"}})
        encoded = base64.b64encode("书签 ok".encode("utf-8")).decode("ascii")
        return httpx.Response(200, json={"content": encoded, "sha": "abc"})

    client = client_for(responder, requests)
    run(client.put_file(CREDS, "octo", "repo", "dir/a.json", "书签 ok", "msg", sha="old"))
    remote_file = run(client.get_file(CREDS, "octo", "repo", "dir/a.json"))

    body = json.loads(requests[0].content)
    assert requests[0].url.path == "/repos/octo/repo/contents/dir/a.json"
    assert body == {"message": "msg", "content": base64.b64encode("书签 ok".encode("utf-8")).decode("ascii"), "sha": "old"}
    assert remote_file.content == "书签 ok"
    assert remote_file.sha == "abc"


def test_list_directory_maps_entries() -> None:
    listing = [
        {"name": "a.json", "path": "a.json", "type": "file", "sha": "1"},
        {"name": "docs", "path": "docs", "type": "dir", "sha": "2"},
    ]
    client = client_for(lambda request: httpx.Response(200, json=listing))

    entries = run(client.list_directory(CREDS, "octo", "repo"))

    assert [(entry.name, entry.type) for entry in entries] == [("a.json", "file"), ("docs", "dir")]
