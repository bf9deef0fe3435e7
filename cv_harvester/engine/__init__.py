"""Engine components executing fetches on worker threads."""

from .fetcher import (
    FetchError,
    FetchRequest,
    FetchResult,
    Fetcher,
    FetcherRegistry,
    FileImportFetcher,
    HtmlListingFetcher,
    ListingApiFetcher,
    ProbeResult,
    probe,
)
from .thread_pool import ThreadPoolManager

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
    "ThreadPoolManager",
    "probe",
]
