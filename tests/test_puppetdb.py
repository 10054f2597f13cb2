from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from boltpy.models import ConfigError, QueryError
from boltpy.puppetdb import QUERY_ENDPOINT, PuppetDBClient


def _client(handler, **settings) -> PuppetDBClient:
    settings.setdefault("server_urls", ["https://puppetdb.test:8081/"])
    return PuppetDBClient(settings, transport=httpx.MockTransport(handler))


def test_query_certnames_posts_query_and_dedups() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[{"certname": "web1"}, {"certname": "web2"}, {"certname": "web1"}],
        )

    client = _client(handler)
    try:
        assert client.query_certnames("nodes[certname] {}") == ["web1", "web2"]
    finally:
        client.close()
    (request,) = seen
    assert request.method == "POST"
    assert str(request.url) == f"https://puppetdb.test:8081{QUERY_ENDPOINT}"
    assert json.loads(request.content) == {"query": "nodes[certname] {}"}


def test_token_is_sent_as_authentication_header(tmp_path: Path) -> None:
    token = tmp_path / "token"
    token.write_text("s3cret\n", encoding="utf-8")
    headers: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        headers.append(request.headers.get("X-Authentication"))
        return httpx.Response(200, json=[])

    client = _client(handler, token=str(token))
    try:
        assert client.query_certnames("nodes {}") == []
    finally:
        client.close()
    assert headers == ["s3cret"]


def test_results_without_certname_are_rejected() -> None:
    client = _client(lambda request: httpx.Response(200, json=[{"name": "web1"}]))
    with pytest.raises(QueryError, match="did not contain a 'certname' field"):
        client.query_certnames("inventory {}")


def test_non_200_response_is_a_query_error() -> None:
    client = _client(lambda request: httpx.Response(400, text="bad query"))
    with pytest.raises(QueryError, match="Failed to query PuppetDB: 400 bad query"):
        client.query_certnames("nodes {")


def test_unreachable_servers_fall_through_to_next_url() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.test":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=[{"certname": "db1"}])

    client = _client(handler, server_urls=["https://down.test", "https://up.test"])
    assert client.query_certnames("nodes {}") == ["db1"]

    all_down = _client(handler, server_urls=["https://down.test"])
    with pytest.raises(QueryError, match="Failed to connect to all PuppetDB server_urls"):
        all_down.query_certnames("nodes {}")


def test_missing_server_urls_is_a_config_error() -> None:
    client = PuppetDBClient({})
    with pytest.raises(ConfigError, match="server_urls"):
        client.query_certnames("nodes {}")
    assert client.query_certnames("") == []
