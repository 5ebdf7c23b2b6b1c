"""Remote fetch adapters.

An adapter is anything implementing the `RemoteAdapter` protocol. The
import engine never talks HTTP directly: it only calls the adapter, so
the remote repository is pluggable and tests run fully offline against
the in-memory `StaticAdapter`.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import requests
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from . import atomicfile
from .errors import (
    MalformedRecordError,
    RemoteError,
    RemoteNotFoundError,
    TransientRemoteError,
)

log = logging.getLogger("bibsync/remote")

DEFAULT_BASE_URL = "https://archive.org"


@dataclass(frozen=True, kw_only=True)
class RemoteRecord:
    """Raw metadata record and its opaque change tag."""

    data: dict[str, Any]
    change_tag: str | None = None


@runtime_checkable
class RemoteAdapter(Protocol):
    """Contract every remote repository adapter must implement."""

    def search_items(self, query: str) -> list[str]: ...

    def get_item_metadata(self, item_id: str) -> RemoteRecord: ...

    def get_collection_metadata(self, collection_id: str) -> dict[str, Any]: ...

    def fetch_asset(self, url: str) -> bytes: ...

    def cover_url(self, item_id: str) -> str: ...


def head_item(adapter: RemoteAdapter, item_id: str) -> str | None:
    """Return the cheap freshness tag of an item, or None when unknown."""
    method = getattr(adapter, "head_item", None)
    if method is None:
        return None
    return method(item_id)


def content_tag(data: Any) -> str:
    """Return a change tag derived from the canonical JSON of a record."""
    return "sha256:" + hashlib.sha256(atomicfile.dumps_json(data)).hexdigest()


class _Retryable(Exception):
    """Internal marker for failures worth retrying."""


class ArchiveAdapter:
    """
    Adapter for an Internet Archive compatible metadata service.

    Arguments:
        base_url: root URL of the service.
        timeout: per-request timeout in seconds.
        retries: total attempts for transient failures.
        backoff: exponential backoff multiplier in seconds.
        search_rows: page size used by `search_items`.
        session: optional preconfigured requests session.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30,
        retries: int = 3,
        backoff: float = 1.0,
        search_rows: int = 100,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = max(1, retries)
        self.backoff = backoff
        self.search_rows = search_rows
        self.session = session if session is not None else requests.Session()

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Issue a request, retrying transient failures with backoff."""

        def attempt() -> requests.Response:
            try:
                resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.Timeout, requests.ConnectionError) as exc:
                log.debug("%s %s... transient failure: %s", method, url, exc)
                raise _Retryable(str(exc)) from exc
            if resp.status_code == 429 or resp.status_code >= 500:
                log.debug("%s %s... transient failure: HTTP %d", method, url, resp.status_code)
                raise _Retryable(f"HTTP {resp.status_code}")
            if resp.status_code == 404:
                raise RemoteNotFoundError(f"not found: {url}")
            if resp.status_code >= 400:
                raise RemoteError(f"HTTP {resp.status_code}: {url}")
            return resp

        retrying = Retrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_exponential(multiplier=self.backoff, min=0, max=30),
            retry=retry_if_exception_type(_Retryable),
        )
        try:
            return retrying(attempt)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            raise TransientRemoteError(
                f"{method} {url} failed after {self.retries} attempt(s): {cause}"
            ) from cause

    def _get_json(self, url: str, **kwargs) -> tuple[Any, requests.Response]:
        resp = self._request("GET", url, **kwargs)
        try:
            return resp.json(), resp
        except ValueError as exc:
            raise MalformedRecordError(f"invalid JSON from {url}: {exc}") from exc

    def _metadata_url(self, identifier: str) -> str:
        return f"{self.base_url}/metadata/{identifier}"

    def get_item_metadata(self, item_id: str) -> RemoteRecord:
        payload, resp = self._get_json(self._metadata_url(item_id))
        if not isinstance(payload, dict) or not isinstance(payload.get("metadata"), dict):
            raise MalformedRecordError(f"empty or invalid metadata for {item_id}")
        data = {"id": item_id, **payload["metadata"]}
        data["coverImage"] = self.cover_url(item_id)
        tag = resp.headers.get("ETag")
        if not tag and payload.get("item_last_updated") is not None:
            tag = f"updated:{payload['item_last_updated']}"
        return RemoteRecord(data=data, change_tag=tag or content_tag(data))

    def get_collection_metadata(self, collection_id: str) -> dict[str, Any]:
        payload, _ = self._get_json(self._metadata_url(collection_id))
        if not isinstance(payload, dict) or not isinstance(payload.get("metadata"), dict):
            raise RemoteNotFoundError(f"no metadata for collection {collection_id}")
        metadata = payload["metadata"]
        return {
            "id": collection_id,
            "name": metadata.get("title"),
            "description": metadata.get("description"),
            "tags": metadata.get("subject"),
        }

    def head_item(self, item_id: str) -> str | None:
        """Return the ETag of the metadata URL, when the server provides one."""
        try:
            resp = self._request("HEAD", self._metadata_url(item_id))
        except RemoteError as exc:
            log.debug("head %s... failure: %s", item_id, exc)
            return None
        return resp.headers.get("ETag")

    def search_items(self, query: str) -> list[str]:
        """Return every identifier matching the query, following pagination."""
        url = f"{self.base_url}/advancedsearch.php"
        identifiers: list[str] = []
        page = 1
        while True:
            params = {
                "q": query,
                "fl[]": "identifier",
                "rows": self.search_rows,
                "page": page,
                "output": "json",
            }
            payload, _ = self._get_json(url, params=params)
            try:
                response = payload["response"]
                docs = response["docs"]
                total = int(response["numFound"])
            except (KeyError, TypeError, ValueError) as exc:
                raise MalformedRecordError(f"invalid search response: {exc}") from exc
            identifiers.extend(doc["identifier"] for doc in docs if "identifier" in doc)
            if not docs or len(identifiers) >= total:
                return identifiers
            page += 1

    def cover_url(self, item_id: str) -> str:
        return f"{self.base_url}/services/img/{item_id}"

    def fetch_asset(self, url: str) -> bytes:
        return self._request("GET", url).content


@dataclass(kw_only=True)
class StaticAdapter:
    """
    In-memory adapter serving records and assets from dictionaries.

    Item records without an explicit change tag get a content-derived one.
    """

    items: dict[str, dict[str, Any]] = field(default_factory=dict)
    collections: dict[str, dict[str, Any]] = field(default_factory=dict)
    assets: dict[str, bytes] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    searches: dict[str, list[str]] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)

    def _tag(self, item_id: str) -> str:
        return self.tags.get(item_id) or content_tag(self.items[item_id])

    def search_items(self, query: str) -> list[str]:
        self.calls.append(f"search:{query}")
        return list(self.searches.get(query, []))

    def get_item_metadata(self, item_id: str) -> RemoteRecord:
        self.calls.append(f"item:{item_id}")
        if item_id not in self.items:
            raise RemoteNotFoundError(f"not found: {item_id}")
        data = dict(self.items[item_id])
        if not data:
            raise MalformedRecordError(f"empty or invalid metadata for {item_id}")
        data.setdefault("id", item_id)
        return RemoteRecord(data=data, change_tag=self._tag(item_id))

    def get_collection_metadata(self, collection_id: str) -> dict[str, Any]:
        self.calls.append(f"collection:{collection_id}")
        if collection_id not in self.collections:
            raise RemoteNotFoundError(f"not found: {collection_id}")
        return dict(self.collections[collection_id])

    def head_item(self, item_id: str) -> str | None:
        self.calls.append(f"head:{item_id}")
        if item_id not in self.items:
            return None
        return self._tag(item_id)

    def cover_url(self, item_id: str) -> str:
        return f"static://covers/{item_id}"

    def fetch_asset(self, url: str) -> bytes:
        self.calls.append(f"asset:{url}")
        try:
            return self.assets[url]
        except KeyError as exc:
            raise RemoteNotFoundError(f"not found: {url}") from exc
