"""
Data providers package.

Contains the rate governor, the governed HTTP client, the listing paginator
and the provider adapters (Polygon, FMP, Yahoo Finance ratio fallback).
"""

from screener.data.base import CursorStyle, ListingPage, ListingRequest, ProviderAdapter, RatioSource
from screener.data.filters import TickerFilter
from screener.data.fmp_client import FMPClient
from screener.data.governor import GovernorConfig, RateGovernor, SustainedRateLimitPolicy
from screener.data.http_client import ProviderHttpClient, RetryPolicy
from screener.data.paginator import Paginator
from screener.data.polygon_client import PolygonClient
from screener.data.yahoo_client import YahooRatioClient

__all__ = [
    "CursorStyle",
    "FMPClient",
    "GovernorConfig",
    "ListingPage",
    "ListingRequest",
    "Paginator",
    "PolygonClient",
    "ProviderAdapter",
    "ProviderHttpClient",
    "RateGovernor",
    "RatioSource",
    "RetryPolicy",
    "SustainedRateLimitPolicy",
    "TickerFilter",
    "YahooRatioClient",
]
