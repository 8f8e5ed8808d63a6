"""Crawl engine: surface port, queue state machine, retries and wake primitive."""

from .queue import CrawlQueue, normalize_symbols
from .retry import RetryCoordinator
from .surface import (
    JsonPageExtractor,
    PageExtractor,
    PageTarget,
    RequestsSurface,
    SurfacePort,
    SurfaceVisitor,
    VisitOperation,
    build_symbol_url,
    retarget_url,
)
from .wake import PersistentWake, WakePrimitive

__all__ = [
    "CrawlQueue",
    "JsonPageExtractor",
    "PageExtractor",
    "PageTarget",
    "PersistentWake",
    "RequestsSurface",
    "RetryCoordinator",
    "SurfacePort",
    "SurfaceVisitor",
    "VisitOperation",
    "WakePrimitive",
    "build_symbol_url",
    "normalize_symbols",
    "retarget_url",
]
