"""Execution surface port, URL retargeting and the per-symbol visit operation."""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import requests

from snapnav.domain.models import SurfaceHandle, SymbolDescriptor, Visit
from snapnav.errors import AbortedCrawl, SurfaceError, VisitFailure
from snapnav.logging.logger import HumanLogger
from snapnav.validation import (
    has_complete_snapshot,
    missing_snapshot_fields,
    with_snapshot_defaults,
)

_ID_PATH_PATTERN = re.compile(r"(/(?:instinfo|ins)/)([^/?#]+)", re.IGNORECASE)
_ID_QUERY_KEYS = ("i",)

VisitOperation = Callable[[SymbolDescriptor, asyncio.Event | None], Awaitable[Visit]]


class SurfacePort(Protocol):
    """Async host abstraction over one navigable surface (tab, page, session)."""

    async def create(self, url: str) -> SurfaceHandle:
        """Open a new surface at `url`."""

    async def update(self, handle: SurfaceHandle, url: str) -> SurfaceHandle:
        """Point an existing surface at `url`."""

    async def location(self, handle: SurfaceHandle) -> str | None:
        """Return the surface's current URL."""

    async def is_ready(self, handle: SurfaceHandle, marker: str) -> bool:
        """Return true once the surface shows its completion signal."""

    async def content(self, handle: SurfaceHandle) -> str | None:
        """Return the loaded document."""

    async def close(self, handle: SurfaceHandle) -> None:
        """Release the surface."""


@dataclass(frozen=True)
class PageTarget:
    """Everything an extractor may read from a loaded surface."""

    symbol: str
    url: str
    surface_handle: SurfaceHandle | None
    content: str | None


class PageExtractor(Protocol):
    """Read-only, idempotent field extraction from a loaded page."""

    def extract(self, target: PageTarget) -> dict[str, Any] | None:
        """Return a snapshot record or None when nothing could be read."""


def build_symbol_url(template: str, symbol_id: str) -> str:
    encoded = quote(symbol_id, safe="")
    if "{symbol}" in template:
        return template.replace("{symbol}", encoded)
    return f"{template}{encoded}"


def retarget_url(current: str | None, symbol_id: str, template: str) -> str:
    """Swap the identifier embedded in `current`, or build a fresh URL from `template`."""
    if current:
        parts = urlsplit(current)
        query = parse_qsl(parts.query, keep_blank_values=True)
        if any(key in _ID_QUERY_KEYS for key, _ in query):
            swapped = [
                (key, symbol_id if key in _ID_QUERY_KEYS else value) for key, value in query
            ]
            return urlunsplit(parts._replace(query=urlencode(swapped)))
        if _ID_PATH_PATTERN.search(parts.path):
            encoded = quote(symbol_id, safe="")
            path = _ID_PATH_PATTERN.sub(
                lambda match: f"{match.group(1)}{encoded}", parts.path, count=1
            )
            return urlunsplit(parts._replace(path=path))
    return build_symbol_url(template, symbol_id)


@dataclass
class _Page:
    url: str
    loader: asyncio.Task[requests.Response] | None = None
    status: int | None = None
    body: str | None = None
    error: str | None = None


class RequestsSurface:
    """HTTP surface: each handle is a slot whose document loads in a worker thread."""

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout: float = 10.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.session = session or requests.Session()
        if headers:
            self.session.headers.update(dict(headers))
        self.timeout = timeout
        self._pages: dict[int, _Page] = {}
        self._next_handle = 1

    async def create(self, url: str) -> SurfaceHandle:
        handle = self._next_handle
        self._next_handle += 1
        self._pages[handle] = _Page(url=url)
        self._load(handle, url)
        return handle

    async def update(self, handle: SurfaceHandle, url: str) -> SurfaceHandle:
        page = self._page(handle)
        if page.loader is not None and not page.loader.done():
            page.loader.cancel()
        self._load(int(handle), url)
        return handle

    async def location(self, handle: SurfaceHandle) -> str | None:
        return self._page(handle).url

    async def is_ready(self, handle: SurfaceHandle, marker: str) -> bool:
        page = self._page(handle)
        if page.loader is None or not page.loader.done():
            return False
        if page.body is None and page.error is None:
            self._settle(page)
        if page.error is not None:
            raise SurfaceError(page.error)
        body = page.body or ""
        return bool(body) and (not marker or marker in body)

    async def content(self, handle: SurfaceHandle) -> str | None:
        return self._page(handle).body

    async def close(self, handle: SurfaceHandle) -> None:
        page = self._pages.pop(int(handle), None)
        if page is not None and page.loader is not None and not page.loader.done():
            page.loader.cancel()

    def _load(self, handle: int, url: str) -> None:
        page = self._pages[handle]
        page.url = url
        page.status = None
        page.body = None
        page.error = None
        page.loader = asyncio.create_task(
            asyncio.to_thread(self.session.get, url, timeout=self.timeout)
        )

    def _settle(self, page: _Page) -> None:
        if page.loader is None:
            return
        try:
            response = page.loader.result()
        except asyncio.CancelledError:
            page.error = f"navigation to {page.url} was superseded"
            return
        except requests.RequestException as exc:
            page.error = f"request failed for {page.url}: {exc}"
            return
        page.status = response.status_code
        page.url = response.url or page.url
        if response.status_code >= 400:
            detail = response.text.strip()[:200] or "No response body"
            page.error = f"HTTP {response.status_code} for {page.url}: {detail}"
            return
        page.body = response.text

    def _page(self, handle: SurfaceHandle) -> _Page:
        try:
            return self._pages[int(handle)]
        except (KeyError, ValueError) as exc:
            raise SurfaceError(f"unknown surface handle {handle!r}") from exc


class JsonPageExtractor:
    """Read a snapshot from a JSON document, optionally renaming source keys."""

    def __init__(self, field_map: Mapping[str, str] | None = None) -> None:
        self.field_map = dict(field_map or {})

    def extract(self, target: PageTarget) -> dict[str, Any] | None:
        if not target.content:
            return None
        try:
            payload = json.loads(target.content)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        return {self.field_map.get(key, key): value for key, value in payload.items()}


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class SurfaceVisitor:
    """Navigate one surface to a symbol, wait for readiness and extract a snapshot."""

    surface: SurfacePort
    extractor: PageExtractor
    url_template: str
    ready_marker: str = ""
    wait_timeout_ms: int = 15000
    poll_interval_ms: int = 250
    reuse_surface: bool = True
    logger: HumanLogger | None = None
    clock: Callable[[], datetime] = _utc_now
    surface_handle: SurfaceHandle | None = field(default=None, init=False)

    async def __call__(
        self,
        symbol: SymbolDescriptor | str,
        signal: asyncio.Event | None = None,
    ) -> Visit:
        descriptor = (
            symbol if isinstance(symbol, SymbolDescriptor) else SymbolDescriptor(str(symbol))
        )
        try:
            handle, url = await self._navigate(descriptor)
            await self.wait_until_ready(descriptor.id, handle, signal=signal)
            content = await self.surface.content(handle)
        except SurfaceError as exc:
            raise VisitFailure(descriptor.id, str(exc)) from exc

        stamped_at = self.clock().isoformat()
        raw = self.extractor.extract(
            PageTarget(symbol=descriptor.id, url=url, surface_handle=handle, content=content)
        )
        if raw is None:
            raise VisitFailure(descriptor.id, "extractor returned no record")
        snapshot = with_snapshot_defaults(
            {**raw, "id": raw.get("id") or descriptor.id, "date_time": stamped_at}
        )
        if not has_complete_snapshot(snapshot):
            missing = ", ".join(missing_snapshot_fields(snapshot))
            raise VisitFailure(descriptor.id, f"incomplete snapshot, missing {missing}")
        return Visit(symbol=descriptor.id, url=url, surface_handle=handle, snapshot=snapshot)

    async def wait_until_ready(
        self,
        symbol: str,
        handle: SurfaceHandle,
        signal: asyncio.Event | None = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.wait_timeout_ms / 1000.0
        while loop.time() < deadline:
            if signal is not None and signal.is_set():
                raise AbortedCrawl("stopped")
            if await self.surface.is_ready(handle, self.ready_marker):
                if self.logger is not None:
                    self.logger.debug(
                        "surface ready",
                        {"symbol": symbol, "ms": int((loop.time() - started) * 1000)},
                    )
                return
            await asyncio.sleep(self.poll_interval_ms / 1000.0)
        raise VisitFailure(symbol, f"readiness timeout after {self.wait_timeout_ms} ms")

    async def close(self) -> None:
        if self.surface_handle is not None:
            await self.surface.close(self.surface_handle)
            self.surface_handle = None

    async def _navigate(self, descriptor: SymbolDescriptor) -> tuple[SurfaceHandle, str]:
        if self.reuse_surface and self.surface_handle is not None:
            current = await self.surface.location(self.surface_handle)
            url = descriptor.resolved_target or retarget_url(
                current, descriptor.id, self.url_template
            )
            handle = await self.surface.update(self.surface_handle, url)
        else:
            url = descriptor.resolved_target or build_symbol_url(self.url_template, descriptor.id)
            if self.surface_handle is not None:
                await self.surface.close(self.surface_handle)
                self.surface_handle = None
            handle = await self.surface.create(url)
        self.surface_handle = handle
        if self.logger is not None:
            self.logger.debug("navigate", {"symbol": descriptor.id, "url": url})
        return handle, url
