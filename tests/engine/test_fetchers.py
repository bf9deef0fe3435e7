from __future__ import annotations

import json

import httpx
import pytest

from cv_harvester.config import FileImportSource, ListingApiSource, PaginatedHtmlSource, ProxyConfig
from cv_harvester.engine.fetcher import (
    FetchError,
    FetchRequest,
    FetcherRegistry,
    FileImportFetcher,
    HtmlListingFetcher,
    ListingApiFetcher,
    probe,
)

CARDS_HTML = """
<ul class="results">
  <li class="card">
    <a class="name" href="/cv/ada">Ada Lovelace</a>
    <span data-field="current_title">Analyst</span>
    <span data-field="location">London</span>
    <span data-field="skills">math, engines ,</span>
  </li>
  <li class="card">
    <a class="name">Grace Hopper</a>
  </li>
  <li class="card"></li>
</ul>
"""


def _request(page: int = 1, page_size: int = 2, **filters) -> FetchRequest:
    return FetchRequest(task_id="t1", job_id="j1", page=page, page_size=page_size, filters=filters)


@pytest.fixture
def api_source() -> ListingApiSource:
    return ListingApiSource(
        id="api",
        name="Api",
        api_url="https://api.example.com/cvs",
        results_path="data.items",
        auth={"type": "bearer", "token": "t0k"},
    )


def test_listing_fetcher_sends_paging_and_auth(api_source) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"items": [{"name": "Ada"}, "junk", {"name": "Grace"}]}})

    fetcher = ListingApiFetcher(transport=httpx.MockTransport(handler))

    result = fetcher.fetch(api_source, _request(page=3, page_size=25, country="de"), None)

    assert result.records == [{"name": "Ada"}, {"name": "Grace"}]
    assert result.status_code == 200
    [request] = seen
    assert dict(request.url.params) == {"page": "3", "limit": "25", "country": "de"}
    assert request.headers["Authorization"] == "Bearer t0k"


@pytest.mark.parametrize(
    ("status", "error_type", "retryable", "proxy_failure"),
    [
        (407, "proxy_error", True, True),
        (429, "rate_limited", True, False),
        (502, "server_error", True, False),
        (404, "client_error", False, False),
    ],
)
def test_listing_fetcher_classifies_status(api_source, status, error_type, retryable, proxy_failure) -> None:
    fetcher = ListingApiFetcher(transport=httpx.MockTransport(lambda request: httpx.Response(status)))

    with pytest.raises(FetchError) as caught:
        fetcher.fetch(api_source, _request(), None)

    assert caught.value.error_type == error_type
    assert caught.value.retryable is retryable
    assert caught.value.proxy_failure is proxy_failure
    assert caught.value.status_code == status


def test_listing_fetcher_maps_transport_errors(api_source) -> None:
    proxy = ProxyConfig(host="10.0.0.1", port=8080)

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def stall(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(FetchError) as caught:
        ListingApiFetcher(transport=httpx.MockTransport(refuse)).fetch(api_source, _request(), proxy)
    assert caught.value.error_type == "network_error"
    assert caught.value.proxy_failure

    with pytest.raises(FetchError) as caught:
        ListingApiFetcher(transport=httpx.MockTransport(stall)).fetch(api_source, _request(), None)
    assert caught.value.error_type == "timeout"
    assert not caught.value.proxy_failure


def test_listing_fetcher_rejects_non_json(api_source) -> None:
    fetcher = ListingApiFetcher(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")))
    with pytest.raises(FetchError) as caught:
        fetcher.fetch(api_source, _request(), None)
    assert caught.value.error_type == "parse_error"
    assert not caught.value.retryable


def test_listing_fetcher_requires_matching_source() -> None:
    source = FileImportSource(id="dump", name="Dump", file_path="cvs.csv")
    with pytest.raises(FetchError):
        ListingApiFetcher().fetch(source, _request(), None)


def test_html_cards_are_parsed() -> None:
    source = PaginatedHtmlSource(
        id="board",
        name="Board",
        base_url="https://board.example.com/cvs",
        list_selector="li.card",
        profile_selector="a.name",
    )

    records = HtmlListingFetcher.parse_cards(source, CARDS_HTML)

    assert records == [
        {
            "full_name": "Ada Lovelace",
            "profile_url": "/cv/ada",
            "current_title": "Analyst",
            "location": "London",
            "skills": ["math", "engines"],
        },
        {"full_name": "Grace Hopper"},
    ]


def test_html_fetcher_stops_after_max_pages() -> None:
    source = PaginatedHtmlSource(
        id="board",
        name="Board",
        base_url="https://board.example.com/cvs",
        list_selector="li.card",
        profile_selector="a.name",
        max_pages=2,
    )
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params["page"])
        return httpx.Response(200, text=CARDS_HTML)

    fetcher = HtmlListingFetcher(transport=httpx.MockTransport(handler))

    assert len(fetcher.fetch(source, _request(page=2), None).records) == 2
    assert fetcher.fetch(source, _request(page=3), None).records == []
    assert calls == ["2"]


@pytest.mark.parametrize("file_format", ["csv", "json", "jsonl"])
def test_file_import_pages_through_rows(tmp_path, file_format) -> None:
    rows = [{"name": f"Person {index}", "email": f"p{index}@example.com"} for index in range(5)]
    path = tmp_path / f"cvs.{file_format}"
    if file_format == "csv":
        path.write_text(
            "name,email\n" + "".join(f"{row['name']},{row['email']}\n" for row in rows), encoding="utf-8"
        )
    elif file_format == "json":
        path.write_text(json.dumps({"records": rows}), encoding="utf-8")
    else:
        path.write_text("\n".join(json.dumps(row) for row in rows) + "\n", encoding="utf-8")
    source = FileImportSource(id="dump", name="Dump", file_path=str(path), file_format=file_format)

    fetcher = FileImportFetcher()

    assert fetcher.fetch(source, _request(page=1), None).records == rows[:2]
    assert fetcher.fetch(source, _request(page=3), None).records == rows[4:]
    assert fetcher.fetch(source, _request(page=4), None).records == []


@pytest.mark.parametrize("file_format", ["json", "jsonl"])
def test_file_import_skips_non_object_rows(tmp_path, file_format) -> None:
    rows = [{"name": "Ada"}, 5, None, [1, 2], "text", {"name": "Grace"}]
    path = tmp_path / f"mixed.{file_format}"
    if file_format == "json":
        path.write_text(json.dumps(rows), encoding="utf-8")
    else:
        path.write_text("\n".join(json.dumps(row) for row in rows) + "\n", encoding="utf-8")
    source = FileImportSource(id="dump", name="Dump", file_path=str(path), file_format=file_format)

    result = FileImportFetcher().fetch(source, _request(page=1, page_size=10), None)

    assert result.records == [{"name": "Ada"}, {"name": "Grace"}]


def test_file_import_scalar_document_yields_nothing(tmp_path) -> None:
    path = tmp_path / "scalar.json"
    path.write_text("42", encoding="utf-8")
    source = FileImportSource(id="dump", name="Dump", file_path=str(path), file_format="json")

    assert FileImportFetcher().fetch(source, _request(), None).records == []


def test_file_import_failures_are_final(tmp_path) -> None:
    missing = FileImportSource(id="dump", name="Dump", file_path=str(tmp_path / "nope.csv"))
    with pytest.raises(FetchError) as caught:
        FileImportFetcher().fetch(missing, _request(), None)
    assert caught.value.error_type == "missing_file"
    assert not caught.value.retryable

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    source = FileImportSource(id="dump", name="Dump", file_path=str(broken), file_format="json")
    with pytest.raises(FetchError) as caught:
        FileImportFetcher().fetch(source, _request(), None)
    assert caught.value.error_type == "parse_error"


def test_registry_resolves_fetchers_by_type() -> None:
    registry = FetcherRegistry.default()

    assert isinstance(registry.get("listing_api"), ListingApiFetcher)
    assert isinstance(registry.get("file_import"), FileImportFetcher)
    with pytest.raises(FetchError) as caught:
        FetcherRegistry().get("listing_api")
    assert caught.value.error_type == "unsupported_source"


def test_probe_reports_reachability() -> None:
    ok = probe("https://api.example.com", 5.0, transport=httpx.MockTransport(lambda request: httpx.Response(204)))
    assert ok.success
    assert ok.latency_ms is not None

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    down = probe("https://api.example.com", 5.0, transport=httpx.MockTransport(refuse))
    assert not down.success
    assert down.to_dict()["error"] == "connection refused"
