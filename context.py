import asyncio
import logging
from typing import Optional, List, Set

import httpx

from config import APP_VERSION, FETCH_TIMEOUT_S, PAGE_CACHE_MAX, SITE_ORIGIN, CLIENT_STATE_DB
from offline_cache import OfflineWorker, WorkerClient
from page_cache import PageCache
from router import Router, Location, PostRenderHook
from storage import KeyValueStore, SessionStore
from version_gate import VersionGate, VersionCheck

log = logging.getLogger("uvicorn.error")


class _WorkerLink(httpx.AsyncBaseTransport):
    """Routes a page's requests through the shared worker without owning it."""

    def __init__(self, worker: OfflineWorker):
        self.worker = worker

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self.worker.handle_async_request(request)

    async def aclose(self) -> None:
        # the worker outlives every page
        pass


class SiteContext:
    """Everything one page load owns: stores, page cache, router and the worker link.

    The offline worker (and its persistent cache) outlives the context and is
    shared by every context created against it; the page cache is not.
    """

    def __init__(
        self,
        *,
        store: KeyValueStore,
        worker: Optional[OfflineWorker] = None,
        network: Optional[httpx.AsyncBaseTransport] = None,
        app_version: str = APP_VERSION,
        origin: str = SITE_ORIGIN,
        fragment: str = "",
        page_cache_size: int = PAGE_CACHE_MAX,
        timeout: float = FETCH_TIMEOUT_S,
        hooks: Optional[List[PostRenderHook]] = None,
    ):
        self.app_version = app_version
        self.store = store
        self.session = SessionStore()
        self.page_cache = PageCache(page_cache_size)
        self.worker = worker
        self.worker_client: Optional[WorkerClient] = worker.connect() if worker is not None else None
        # page fetches go through the worker when there is one
        transport = _WorkerLink(worker) if worker is not None else network
        self.http = httpx.AsyncClient(transport=transport, timeout=timeout)
        self.router = Router(
            self.http,
            self.page_cache,
            self.store,
            location=Location(fragment),
            origin=origin,
            timeout=timeout,
            hooks=hooks,
        )
        self.version_check: Optional[VersionCheck] = None
        self._tasks: Set[asyncio.Task] = set()

    def version_gate(self) -> VersionGate:
        return VersionGate(
            self.store,
            self.session,
            self.app_version,
            client=self.worker_client,
            page_cache=self.page_cache,
        )

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def settle(self) -> None:
        """Wait for preloads, prefetches and queued worker messages."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.router.wait_idle()
        if self.worker is not None:
            await self.worker.dispatch_pending()
            await self.worker.drain()

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.router.aclose()
        if self.worker_client is not None:
            self.worker_client.close()
        await self.http.aclose()


def create_context(
    *,
    worker: Optional[OfflineWorker] = None,
    network: Optional[httpx.AsyncBaseTransport] = None,
    store: Optional[KeyValueStore] = None,
    state_path: str = CLIENT_STATE_DB,
    **kwargs,
) -> SiteContext:
    return SiteContext(
        store=store if store is not None else KeyValueStore(state_path),
        worker=worker,
        network=network,
        **kwargs,
    )


async def load_page(ctx: SiteContext, *, preload: bool = True) -> bool:
    """Page load: version gate first, then the initial route, then menu preloading."""
    ctx.version_check = ctx.version_gate().run()
    if ctx.worker is not None and ctx.version_check == VersionCheck.UPGRADED:
        ctx.spawn(ctx.worker.dispatch_pending())
    ok = await ctx.router.start()
    if preload:
        ctx.spawn(ctx.router.preload_menu_pages())
    return ok
