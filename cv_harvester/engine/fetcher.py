"""Pluggable fetchers turning one task page into raw CV dictionaries."""

from __future__ import annotations

import csv
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Protocol

import httpx
from selectolax.parser import HTMLParser

from ..config.models import (
    FileImportSource,
    ListingApiSource,
    PaginatedHtmlSource,
    ProxyConfig,
    SourceConfig,
)
from ..errors import HarvesterError


class FetchError(HarvesterError):
    """A fetch attempt failed.

    ``retryable`` failures go through backoff; ``proxy_failure`` marks the
    egress endpoint rather than the task as the culprit.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        proxy_failure: bool = False,
        error_type: str = "fetch_error",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.proxy_failure = proxy_failure
        self.error_type = error_type
        self.status_code = status_code


@dataclass(slots=True)
class FetchRequest:
    """Input for the fetcher."""

    task_id: str
    job_id: str
    page: int
    page_size: int
    filters: dict[str, Any] = field(default_factory=dict)
    timeout: float = 30.0


@dataclass(slots=True)
class FetchResult:
    """Standardised fetch output."""

    records: list[dict[str, Any]]
    status_code: int | None = None
    duration_ms: float = 0.0
    url: str | None = None


class Fetcher(Protocol):
    def fetch(
        self, source: SourceConfig, request: FetchRequest, proxy: ProxyConfig | None
    ) -> FetchResult:
        """Fetch one page of profiles or raise :class:`FetchError`."""


def _classify_status(status_code: int) -> FetchError:
    if status_code in (407,):
        return FetchError(
            f"Proxy rejected request ({status_code})",
            proxy_failure=True,
            error_type="proxy_error",
            status_code=status_code,
        )
    if status_code == 429:
        return FetchError("Rate limited by provider", error_type="rate_limited", status_code=status_code)
    if status_code >= 500:
        return FetchError(
            f"Provider error {status_code}", error_type="server_error", status_code=status_code
        )
    return FetchError(
        f"Unexpected status {status_code}",
        retryable=False,
        error_type="client_error",
        status_code=status_code,
    )


class _HttpFetcher:
    """Shared httpx plumbing; one client per proxy endpoint."""

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self._transport = transport

    def _client(self, proxy: ProxyConfig | None, timeout: float) -> httpx.Client:
        kwargs: dict[str, Any] = {"follow_redirects": True, "timeout": timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif proxy is not None:
            kwargs["proxy"] = proxy.url
        return httpx.Client(**kwargs)

    def _get(
        self,
        url: str,
        params: dict[str, Any],
        headers: Dict[str, str],
        proxy: ProxyConfig | None,
        timeout: float,
        auth: tuple[str, str] | None = None,
    ) -> tuple[httpx.Response, float]:
        start = time.perf_counter()
        try:
            with self._client(proxy, timeout) as client:
                response = client.get(url, params=params, headers=headers, auth=auth)
        except httpx.ProxyError as exc:
            raise FetchError(str(exc), proxy_failure=True, error_type="proxy_error") from exc
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timed out fetching {url}", error_type="timeout") from exc
        except httpx.TransportError as exc:
            raise FetchError(
                str(exc), proxy_failure=proxy is not None, error_type="network_error"
            ) from exc
        duration_ms = (time.perf_counter() - start) * 1000
        if response.status_code >= 400:
            raise _classify_status(response.status_code)
        return response, duration_ms


class ListingApiFetcher(_HttpFetcher):
    """Read a page from a JSON listing endpoint."""

    def fetch(
        self, source: SourceConfig, request: FetchRequest, proxy: ProxyConfig | None
    ) -> FetchResult:
        if not isinstance(source, ListingApiSource):
            raise FetchError("ListingApiFetcher requires a listing_api source", retryable=False)
        headers: Dict[str, str] = {"Accept": "application/json"}
        auth: tuple[str, str] | None = None
        if source.auth.type == "api_key" and source.auth.api_key:
            headers[source.auth.header_name] = source.auth.api_key
        elif source.auth.type == "bearer" and source.auth.token:
            headers["Authorization"] = f"Bearer {source.auth.token}"
        elif source.auth.type == "basic" and source.auth.username and source.auth.password:
            auth = (source.auth.username, source.auth.password)
        params = {source.page_param: request.page, "limit": request.page_size, **request.filters}
        response, duration_ms = self._get(
            source.api_url, params, headers, proxy, request.timeout, auth=auth
        )
        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise FetchError("Listing response is not JSON", retryable=False, error_type="parse_error") from exc
        for key in filter(None, source.results_path.split(".")):
            payload = payload.get(key, []) if isinstance(payload, dict) else []
        if not isinstance(payload, list):
            raise FetchError("Listing results are not a list", retryable=False, error_type="parse_error")
        records = [item for item in payload if isinstance(item, dict)]
        return FetchResult(records, response.status_code, duration_ms, str(response.url))


class HtmlListingFetcher(_HttpFetcher):
    """Walk server-rendered listing pages.

    Each node matching ``list_selector`` is one profile card. The node matched
    by ``profile_selector`` inside the card provides the name and profile URL;
    descendants carrying a ``data-field`` attribute provide the other fields.
    """

    def fetch(
        self, source: SourceConfig, request: FetchRequest, proxy: ProxyConfig | None
    ) -> FetchResult:
        if not isinstance(source, PaginatedHtmlSource):
            raise FetchError("HtmlListingFetcher requires a paginated_html source", retryable=False)
        if request.page > source.max_pages:
            return FetchResult([], None, 0.0, source.base_url)
        response, duration_ms = self._get(
            source.base_url, {"page": request.page}, {}, proxy, request.timeout
        )
        records = self.parse_cards(source, response.text)
        return FetchResult(records, response.status_code, duration_ms, str(response.url))

    @staticmethod
    def parse_cards(source: PaginatedHtmlSource, html: str) -> list[dict[str, Any]]:
        parser = HTMLParser(html)
        records: list[dict[str, Any]] = []
        for card in parser.css(source.list_selector):
            record: dict[str, Any] = {}
            profile = card.css_first(source.profile_selector)
            if profile is not None:
                record["full_name"] = profile.text(strip=True)
                href = profile.attributes.get("href")
                if href:
                    record["profile_url"] = href
            for node in card.css("[data-field]"):
                name = node.attributes.get("data-field")
                if not name:
                    continue
                value = node.text(strip=True)
                if name == "skills":
                    record.setdefault("skills", []).extend(
                        part.strip() for part in value.split(",") if part.strip()
                    )
                else:
                    record[name] = value
            if record:
                records.append(record)
        return records


class FileImportFetcher:
    """Serve pages out of a CSV/JSON/JSONL export on disk."""

    def fetch(
        self, source: SourceConfig, request: FetchRequest, proxy: ProxyConfig | None
    ) -> FetchResult:
        if not isinstance(source, FileImportSource):
            raise FetchError("FileImportFetcher requires a file_import source", retryable=False)
        path = Path(source.file_path).expanduser()
        if not path.exists():
            raise FetchError(f"Import file not found: {path}", retryable=False, error_type="missing_file")
        start = time.perf_counter()
        rows = self._read(path, source.file_format)
        offset = (request.page - 1) * request.page_size
        page = rows[offset : offset + request.page_size]
        return FetchResult(page, None, (time.perf_counter() - start) * 1000, str(path))

    @staticmethod
    def _read(path: Path, file_format: str) -> list[dict[str, Any]]:
        try:
            with path.open("r", encoding="utf-8") as stream:
                if file_format == "csv":
                    payload: Any = [dict(row) for row in csv.DictReader(stream)]
                elif file_format == "jsonl":
                    payload = [json.loads(line) for line in stream if line.strip()]
                else:
                    payload = json.load(stream)
        except (OSError, ValueError) as exc:
            raise FetchError(str(exc), retryable=False, error_type="parse_error") from exc
        if isinstance(payload, dict):
            payload = payload.get("records", [])
        if not isinstance(payload, list):
            return []
        # Rows that are not JSON objects cannot be mapped onto a record.
        return [item for item in payload if isinstance(item, dict)]


class FetcherRegistry:
    """Map each source type to the fetcher serving it."""

    def __init__(self, fetchers: dict[str, Fetcher] | None = None) -> None:
        self._fetchers: dict[str, Fetcher] = dict(fetchers or {})

    @classmethod
    def default(cls) -> "FetcherRegistry":
        return cls(
            {
                "listing_api": ListingApiFetcher(),
                "paginated_html": HtmlListingFetcher(),
                "file_import": FileImportFetcher(),
            }
        )

    def register(self, source_type: str, fetcher: Fetcher) -> None:
        self._fetchers[source_type] = fetcher

    def get(self, source_type: str) -> Fetcher:
        try:
            return self._fetchers[source_type]
        except KeyError:
            raise FetchError(
                f"No fetcher registered for source type {source_type}",
                retryable=False,
                error_type="unsupported_source",
            ) from None


@dataclass(slots=True)
class ProbeResult:
    success: bool
    latency_ms: float | None = None
    status_code: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "latency_ms": self.latency_ms,
            "status_code": self.status_code,
            "error": self.error,
        }


def probe(
    url: str,
    timeout: float,
    proxy: ProxyConfig | None = None,
    transport: httpx.BaseTransport | None = None,
) -> ProbeResult:
    """Issue one bounded GET and report reachability."""

    kwargs: dict[str, Any] = {"follow_redirects": True, "timeout": timeout}
    if transport is not None:
        kwargs["transport"] = transport
    elif proxy is not None:
        kwargs["proxy"] = proxy.url
    start = time.perf_counter()
    try:
        with httpx.Client(**kwargs) as client:
            response = client.get(url)
    except httpx.HTTPError as exc:
        return ProbeResult(False, None, None, str(exc) or exc.__class__.__name__)
    latency_ms = round((time.perf_counter() - start) * 1000, 2)
    if response.status_code >= 400:
        return ProbeResult(False, latency_ms, response.status_code, f"HTTP {response.status_code}")
    return ProbeResult(True, latency_ms, response.status_code, None)


__all__ = [
    "FetchError",
    "FetchRequest",
    "FetchResult",
    "Fetcher",
    "FetcherRegistry",
    "FileImportFetcher",
    "HtmlListingFetcher",
    "ListingApiFetcher",
    "ProbeResult",
    "probe",
]
