"""Source fetcher: retrieve a library snapshot at one resolved commit."""

from vendorkit.fetcher.base import FetchCache, Fetcher, SourceFetcher, Transport, with_retry
from vendorkit.fetcher.git import GitTransport
from vendorkit.fetcher.github import GitHubTransport

__all__ = [
    "FetchCache",
    "Fetcher",
    "GitHubTransport",
    "GitTransport",
    "SourceFetcher",
    "Transport",
    "with_retry",
]
