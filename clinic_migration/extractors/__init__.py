"""Ingest strategies: provider API, browser automation and uploaded files."""

from .base import BaseExtractor, ExtractionResult
from .resolver import resolve_strategy
from .api_extractor import APIExtractor
from .upload_extractor import UploadExtractor
from .web_scraper import (
    BrowserAgent,
    PlaywrightBrowserAgent,
    RawRecord,
    WebScraperExtractor,
)

__all__ = [
    "BaseExtractor",
    "ExtractionResult",
    "resolve_strategy",
    "APIExtractor",
    "UploadExtractor",
    "BrowserAgent",
    "PlaywrightBrowserAgent",
    "RawRecord",
    "WebScraperExtractor",
]
