import asyncio
import logging
from enum import Enum
from typing import Optional, List, Protocol, Set

import httpx
from bs4 import BeautifulSoup

import routes
from config import FETCH_TIMEOUT_S, SITE_ORIGIN
from page_cache import PageCache
from storage import KeyValueStore, scroll_key
from website import retry_html

log = logging.getLogger("uvicorn.error")


class NavState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"


class SideNav(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class ContentFetchError(Exception):
    def __init__(self, route: str, reason: str):
        super().__init__(f"{route}: {reason}")
        self.route = route
        self.reason = reason


class Location:
    """Holds the URL fragment, the only externally visible navigation state."""

    def __init__(self, fragment: str = ""):
        self.fragment = fragment

    @property
    def token(self) -> str:
        return self.fragment.lstrip("#")

    def replace(self, token: str) -> None:
        # rewrites the fragment without provoking a navigation
        self.fragment = f"#{token}"


class Viewport:
    """What the page shows. Only the Router writes to it."""

    def __init__(self):
        self.html = ""
        self.active_route: Optional[str] = None
        self.loading = False
        self.showing_retry = False
        self.side_nav = SideNav.CLOSED
        self.scroll_offset = 0


class PostRenderHook(Protocol):
    def __call__(self, route: str, viewport: Viewport) -> None: ...


def promote_lazy_sources(route: str, viewport: Viewport) -> None:
    """Move `data-src` to `src` on lazily loaded images and iframes."""
    soup = BeautifulSoup(viewport.html, "html.parser")
    lazy = soup.select("img[data-src], iframe[data-src]")
    if not lazy:
        return
    for tag in lazy:
        tag["src"] = tag["data-src"]
        del tag["data-src"]
    viewport.html = str(soup)


def swap_menu_container(current_html: str, new_html: str) -> Optional[str]:
    """Replace the `.menu-container` contents of the shown page with those of `new_html`.

    Returns None when either document has no menu container.
    """
    new_box = BeautifulSoup(new_html, "html.parser").select_one(".menu-container")
    current = BeautifulSoup(current_html, "html.parser")
    current_box = current.select_one(".menu-container")
    if new_box is None or current_box is None:
        return None
    current_box.clear()
    for child in list(new_box.contents):
        current_box.append(child.extract())
    return str(current)


class Router:
    """Hash router: resolves the fragment, consults the page cache, fetches, renders.

    Only the newest navigation may touch the viewport. Each load takes a new
    generation number and cancels the previous in-flight fetch; a result that
    comes back under an old generation is dropped.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        page_cache: PageCache,
        store: KeyValueStore,
        *,
        viewport: Optional[Viewport] = None,
        location: Optional[Location] = None,
        origin: str = SITE_ORIGIN,
        timeout: float = FETCH_TIMEOUT_S,
        hooks: Optional[List[PostRenderHook]] = None,
    ):
        self.client = client
        self.page_cache = page_cache
        self.store = store
        self.viewport = viewport or Viewport()
        self.location = location or Location()
        self.origin = origin.rstrip("/")
        self.timeout = timeout
        self.hooks: List[PostRenderHook] = list(hooks) if hooks is not None else [promote_lazy_sources]

        self.state = NavState.IDLE
        self.side_nav = SideNav.CLOSED
        self.current_route: Optional[str] = None
        self.pending_route: Optional[str] = None
        self.failed_route: Optional[str] = None
        self.generation = 0
        self._inflight: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    # ── triggers ────────────────────────────────────────────────────────────
    async def start(self) -> bool:
        """Initial load from whatever the location currently says."""
        return await self._load(self.location.token)

    async def navigate(self, token: str) -> bool:
        """User-driven navigation: update the fragment, then load."""
        self.location.replace(token)
        return await self._load(token)

    async def on_location_change(self) -> bool:
        """Back/forward or a manual fragment edit."""
        return await self._load(self.location.token)

    def toggle_side_nav(self) -> SideNav:
        self.side_nav = SideNav.CLOSED if self.side_nav == SideNav.OPEN else SideNav.OPEN
        self._project()
        return self.side_nav

    def close_side_nav(self) -> None:
        self.side_nav = SideNav.CLOSED
        self._project()

    # ── load pipeline ───────────────────────────────────────────────────────
    async def _load(self, token: str) -> bool:
        route, path = routes.resolve(token)
        if route != token:
            log.info("router: unknown route %r, using %s", token, route)
            self.location.replace(route)

        if (
            route == self.current_route
            and routes.is_menu_page(route)
            and self.state == NavState.IDLE
            and self.failed_route is None
        ):
            self._project()
            return True

        self._save_scroll()
        self.side_nav = SideNav.CLOSED
        self.generation += 1
        gen = self.generation
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self.pending_route = route

        if routes.is_cacheable(route):
            cached = self.page_cache.get(route)
            if cached is not None:
                log.debug("router: %s served from page cache", route)
                self._render(route, cached)
                return True

        self.state = NavState.LOADING
        self._project()
        task = asyncio.create_task(self._fetch(route, path))
        self._inflight = task
        try:
            html = await task
        except asyncio.CancelledError:
            if gen != self.generation:
                log.debug("router: fetch for %s superseded", route)
                return False
            raise
        except ContentFetchError as e:
            if gen != self.generation:
                return False
            log.warning("router: error loading %s: %s", route, e.reason)
            self._fail(route)
            return False

        if gen != self.generation:
            log.debug("router: dropping stale content for %s", route)
            return False
        if routes.is_cacheable(route):
            self.page_cache.set(route, html)
        self._render(route, html)
        return True

    async def _fetch(self, route: str, path: str) -> str:
        url = f"{self.origin}/{path}"
        try:
            response = await asyncio.wait_for(
                self.client.get(url, headers={"Cache-Control": "no-store"}),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise ContentFetchError(route, f"timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            raise ContentFetchError(route, f"network error: {e}")
        if not response.is_success:
            raise ContentFetchError(route, f"HTTP {response.status_code}")
        ctype = response.headers.get("content-type", "")
        if "html" not in ctype:
            raise ContentFetchError(route, f"unexpected content type {ctype or '(none)'}")
        return response.text

    def _render(self, route: str, html: str) -> None:
        previous = self.current_route
        if (
            previous is not None
            and routes.is_menu_page(previous)
            and routes.is_menu_page(route)
            and self.failed_route is None
        ):
            swapped = swap_menu_container(self.viewport.html, html)
            if swapped is None:
                log.info("router: no .menu-container for %s; doing a full render", route)
                self.viewport.html = html
            else:
                self.viewport.html = swapped
        else:
            self.viewport.html = html

        self.state = NavState.IDLE
        self.current_route = route
        self.pending_route = None
        self.failed_route = None
        self._project()
        self._restore_scroll(route)
        self._run_hooks(route)
        self._schedule_prefetch(route)

    def _fail(self, route: str) -> None:
        self.state = NavState.IDLE
        self.pending_route = None
        self.failed_route = route
        self.viewport.html = retry_html(route)
        self._project()

    def _project(self) -> None:
        vp = self.viewport
        vp.loading = self.state == NavState.LOADING
        vp.active_route = self.current_route
        vp.showing_retry = self.failed_route is not None
        vp.side_nav = self.side_nav

    # ── scroll offsets ──────────────────────────────────────────────────────
    def _save_scroll(self) -> None:
        if self.current_route and self.failed_route is None:
            self.store.set_item(scroll_key(self.current_route), str(self.viewport.scroll_offset))

    def _restore_scroll(self, route: str) -> None:
        if route == routes.DEFAULT_ROUTE:
            self.viewport.scroll_offset = 0
            return
        saved = self.store.get_item(scroll_key(route))
        try:
            self.viewport.scroll_offset = int(float(saved)) if saved else 0
        except ValueError:
            log.debug("router: ignoring bad scroll offset %r for %s", saved, route)
            self.viewport.scroll_offset = 0

    # ── hooks & prefetch ────────────────────────────────────────────────────
    def _run_hooks(self, route: str) -> None:
        for hook in self.hooks:
            try:
                hook(route, self.viewport)
            except Exception as e:
                log.warning("router: post-render hook %r failed: %s", hook, e)

    def _schedule_prefetch(self, route: str) -> None:
        for token in routes.adjacent(route):
            if self.page_cache.has(token):
                continue
            task = asyncio.create_task(self._prefetch(token))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _prefetch(self, token: str) -> bool:
        route, path = routes.resolve(token)
        try:
            html = await self._fetch(route, path)
        except ContentFetchError as e:
            log.debug("router: prefetch of %s failed: %s", route, e.reason)
            return False
        if routes.is_cacheable(route) and not self.page_cache.has(route):
            self.page_cache.set(route, html)
        return True

    async def preload_menu_pages(self) -> int:
        """Fetch every menu category into the page cache; returns how many succeeded."""
        results = await asyncio.gather(
            *(self._prefetch(token) for token in routes.MENU_CATEGORIES),
            return_exceptions=True,
        )
        ok = sum(1 for r in results if r is True)
        log.info("router: preloaded %d/%d menu pages", ok, len(routes.MENU_CATEGORIES))
        return ok

    async def wait_idle(self) -> None:
        """Wait for background prefetches to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel the in-flight fetch and any prefetches still running."""
        self.generation += 1
        pending = [t for t in [self._inflight, *self._background] if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
