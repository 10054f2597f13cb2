"""Client for the queryable node store used by ``--query``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

import httpx

from boltpy.models import ConfigError, QueryError

_log = logging.getLogger("bolt.puppetdb")

QUERY_ENDPOINT = "/pdb/query/v4"
DEFAULT_TIMEOUT_SEC = 60.0


class PuppetDBClient:
    def __init__(self, settings: Mapping[str, Any], *, transport: httpx.BaseTransport | None = None):
        urls = settings.get("server_urls") or []
        if isinstance(urls, str):
            urls = [urls]
        self.server_urls = [str(url).rstrip("/") for url in urls]
        self.settings = dict(settings)
        self._transport = transport
        self._client: httpx.Client | None = None

    def _token(self) -> str | None:
        token_path = self.settings.get("token")
        if not token_path:
            return None
        try:
            return Path(str(token_path)).expanduser().read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigError(f"Could not read PuppetDB token from {token_path}: {exc}") from exc

    def _http(self) -> httpx.Client:
        if self._client is not None:
            return self._client
        headers = {"Content-Type": "application/json"}
        token = self._token()
        if token:
            headers["X-Authentication"] = token
        cert: tuple[str, str] | None = None
        if self.settings.get("cert") and self.settings.get("key"):
            cert = (str(self.settings["cert"]), str(self.settings["key"]))
        verify: Any = str(self.settings["cacert"]) if self.settings.get("cacert") else True
        self._client = httpx.Client(
            headers=headers,
            timeout=httpx.Timeout(float(self.settings.get("connect_timeout", DEFAULT_TIMEOUT_SEC))),
            verify=verify,
            cert=cert,
            transport=self._transport,
        )
        return self._client

    def make_query(self, query: str) -> list[dict[str, Any]]:
        if not self.server_urls:
            raise ConfigError(
                "PuppetDB must be configured with 'server_urls' to use '--query'"
            )
        last_error: Exception | None = None
        for url in self.server_urls:
            try:
                response = self._http().post(f"{url}{QUERY_ENDPOINT}", json={"query": query})
            except httpx.HTTPError as exc:
                _log.warning("puppetdb_request_failed url=%s error=%s", url, exc)
                last_error = exc
                continue
            if response.status_code != 200:
                raise QueryError(
                    f"Failed to query PuppetDB: {response.status_code} {response.text}",
                    details={"query": query},
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise QueryError(f"Unable to parse response as JSON: {exc}") from exc
            if not isinstance(payload, list):
                raise QueryError("PuppetDB query did not return a list of results")
            return [item for item in payload if isinstance(item, dict)]
        raise QueryError(f"Failed to connect to all PuppetDB server_urls: {last_error}")

    def query_certnames(self, query: str) -> list[str]:
        if not query:
            return []
        results = self.make_query(query)
        for result in results:
            if "certname" not in result:
                fields = ", ".join(result.keys())
                raise QueryError(f"Query results did not contain a 'certname' field: got {fields}")
        certnames: list[str] = []
        for result in results:
            name = str(result["certname"])
            if name not in certnames:
                certnames.append(name)
        return certnames

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
