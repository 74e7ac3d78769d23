import json
import time
import uuid
import asyncio
import sqlite3
import logging
from enum import Enum
from collections import deque
from pathlib import Path
from urllib.parse import urljoin
from typing import Optional, Literal, Dict, Any, List, Set, Iterable, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config import APP_VERSION, APP_NAME, CACHE_PREFIX, CORE_ASSETS, OFFLINE_CACHE_DB, SITE_ORIGIN
from storage import KeyValueStore, PENDING_CONTACT_KEY
from website import offline_html

log = logging.getLogger("uvicorn.error")

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".svg")
CONTACT_SYNC_TAG = "contact-form-sync"
CONTACT_SYNC_PATH = "/api/contact"
_HOP_HEADERS = ("content-encoding", "content-length", "transfer-encoding", "connection")


def namespace_for(version: str, prefix: str = CACHE_PREFIX) -> str:
    return f"{prefix}v{version}"


def cache_key(url: Union[str, httpx.URL]) -> str:
    return str(httpx.URL(str(url)).copy_with(fragment=None))


class CacheAddError(Exception):
    pass


# ────────────────────────────────────────────────────────────────────────────
# Worker <-> page messages
# ────────────────────────────────────────────────────────────────────────────
class VersionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["VERSION_UPDATE"] = "VERSION_UPDATE"
    version: str
    previous_version: Optional[str] = Field(None, alias="previousVersion")


class CacheUpdated(BaseModel):
    type: Literal["CACHE_UPDATED"] = "CACHE_UPDATED"
    version: str


class Notification(BaseModel):
    type: Literal["NOTIFICATION"] = "NOTIFICATION"
    title: str
    body: str


# ────────────────────────────────────────────────────────────────────────────
# Persistent, namespaced response store
# ────────────────────────────────────────────────────────────────────────────
_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS namespaces (name TEXT PRIMARY KEY, created_at REAL NOT NULL)",
    "CREATE TABLE IF NOT EXISTS entries ("
    " namespace TEXT NOT NULL, url TEXT NOT NULL, status INTEGER NOT NULL,"
    " headers TEXT NOT NULL, body BLOB NOT NULL, stored_at REAL NOT NULL,"
    " PRIMARY KEY (namespace, url))",
)


class CacheStorage:
    """Named response caches persisted in sqlite, shared by every page of the profile.

    Writes are last-writer-wins per (namespace, url).
    """

    def __init__(self, path: str = OFFLINE_CACHE_DB):
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        for stmt in _SCHEMA:
            self._conn.execute(stmt)

    def keys(self) -> List[str]:
        return [r[0] for r in self._conn.execute("SELECT name FROM namespaces ORDER BY created_at, name")]

    def has(self, name: str) -> bool:
        return self._conn.execute("SELECT 1 FROM namespaces WHERE name = ?", (name,)).fetchone() is not None

    def open(self, name: str) -> "Cache":
        self._conn.execute("INSERT OR IGNORE INTO namespaces (name, created_at) VALUES (?, ?)", (name, time.time()))
        return Cache(self, name)

    def delete(self, name: str) -> bool:
        self._conn.execute("DELETE FROM entries WHERE namespace = ?", (name,))
        cur = self._conn.execute("DELETE FROM namespaces WHERE name = ?", (name,))
        return cur.rowcount > 0

    def match(self, url: Union[str, httpx.URL], *, namespace: Optional[str] = None) -> Optional[httpx.Response]:
        names = [namespace] if namespace else self.keys()
        for name in names:
            hit = Cache(self, name).match(url)
            if hit is not None:
                return hit
        return None

    def close(self) -> None:
        self._conn.close()


class Cache:
    """Handle on one namespace of a CacheStorage."""

    def __init__(self, storage: CacheStorage, name: str):
        self.storage = storage
        self.name = name

    @property
    def _conn(self) -> sqlite3.Connection:
        return self.storage._conn

    def match(self, url: Union[str, httpx.URL]) -> Optional[httpx.Response]:
        row = self._conn.execute(
            "SELECT status, headers, body FROM entries WHERE namespace = ? AND url = ?",
            (self.name, cache_key(url)),
        ).fetchone()
        if not row:
            return None
        status, headers, body = row
        return httpx.Response(status, headers=json.loads(headers), content=bytes(body))

    def put(self, url: Union[str, httpx.URL], status: int, headers: Iterable, body: bytes) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO entries (namespace, url, status, headers, body, stored_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (self.name, cache_key(url), status, json.dumps(list(headers)), sqlite3.Binary(body), time.time()),
        )

    def keys(self) -> List[str]:
        return [r[0] for r in self._conn.execute(
            "SELECT url FROM entries WHERE namespace = ? ORDER BY stored_at", (self.name,))]

    def delete(self, url: Union[str, httpx.URL]) -> bool:
        cur = self._conn.execute("DELETE FROM entries WHERE namespace = ? AND url = ?", (self.name, cache_key(url)))
        return cur.rowcount > 0


class _Snapshot:
    """A fully read network response: raw body plus headers, safe to store and replay."""

    def __init__(self, url: httpx.URL, status: int, headers: List[List[str]], body: bytes):
        self.url = url
        self.status = status
        self.headers = headers
        self.body = body

    def to_response(self) -> httpx.Response:
        return httpx.Response(self.status, headers=self.headers, content=self.body)


# ────────────────────────────────────────────────────────────────────────────
# Worker
# ────────────────────────────────────────────────────────────────────────────
class WorkerState(str, Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"


class WorkerClient:
    """A page's connection to the worker. Messages from the worker land in `messages`."""

    def __init__(self, worker: "OfflineWorker", client_id: str):
        self.id = client_id
        self.worker = worker
        self.controlled = False
        self.messages: "asyncio.Queue[BaseModel]" = asyncio.Queue()

    @property
    def connected(self) -> bool:
        return self.worker.has_client(self.id)

    def post_message(self, message: Union[BaseModel, Dict[str, Any]]) -> None:
        self.worker.post(message)

    def receive(self, message: BaseModel) -> None:
        self.messages.put_nowait(message)

    def close(self) -> None:
        self.worker.disconnect(self)


class OfflineWorker(httpx.AsyncBaseTransport):
    """Offline tier: sits between page-side httpx clients and the network.

    Navigations are network-first with a fallback document; other same-origin
    GETs are stale-while-revalidate. Everything else goes straight through.
    """

    def __init__(
        self,
        storage: CacheStorage,
        network: Optional[httpx.AsyncBaseTransport] = None,
        *,
        origin: str = SITE_ORIGIN,
        version: str = APP_VERSION,
        core_assets: Optional[List[str]] = None,
        prefix: str = CACHE_PREFIX,
        store: Optional[KeyValueStore] = None,
    ):
        self.storage = storage
        self.network = network or httpx.AsyncHTTPTransport()
        self.origin = httpx.URL(origin.rstrip("/") + "/")
        self.version = version
        self.prefix = prefix
        self.core_assets = list(CORE_ASSETS if core_assets is None else core_assets)
        self.store = store
        self.state = WorkerState.PARSED
        self.waiting_skipped = False
        self.version_updates: List[VersionUpdate] = []
        self._inbox: "deque[Union[BaseModel, Dict[str, Any]]]" = deque()
        self._clients: Dict[str, WorkerClient] = {}
        self._background: Set[asyncio.Task] = set()

    @property
    def cache_name(self) -> str:
        return namespace_for(self.version, self.prefix)

    @property
    def fallback_url(self) -> str:
        return self.resolve("./index.html")

    def resolve(self, path: str) -> str:
        return cache_key(urljoin(str(self.origin), path))

    # ── clients & messages ──────────────────────────────────────────────────
    def connect(self) -> WorkerClient:
        client = WorkerClient(self, uuid.uuid4().hex)
        client.controlled = self.state == WorkerState.ACTIVATED
        self._clients[client.id] = client
        return client

    def disconnect(self, client: WorkerClient) -> None:
        self._clients.pop(client.id, None)

    def has_client(self, client_id: str) -> bool:
        return client_id in self._clients

    def clients(self) -> List[WorkerClient]:
        return list(self._clients.values())

    def broadcast(self, message: BaseModel) -> None:
        for client in self.clients():
            client.receive(message)

    def post(self, message: Union[BaseModel, Dict[str, Any]]) -> None:
        self._inbox.append(message)

    async def dispatch_pending(self) -> int:
        """Handle queued page messages in arrival order; returns how many were handled."""
        handled = 0
        while self._inbox:
            await self.handle_message(self._inbox.popleft())
            handled += 1
        return handled

    async def handle_message(self, data: Union[BaseModel, Dict[str, Any]]) -> None:
        if isinstance(data, BaseModel):
            data = data.model_dump(by_alias=True)
        if not isinstance(data, dict) or data.get("type") != "VERSION_UPDATE":
            log.debug("worker: ignoring message %r", data)
            return
        try:
            msg = VersionUpdate.model_validate(data)
        except ValidationError as e:
            log.warning("worker: malformed VERSION_UPDATE message: %s", e)
            return
        self.version_updates.append(msg)
        log.info("worker: version update detected %s -> %s", msg.previous_version, msg.version)
        await self.rebuild(msg.version)

    async def rebuild(self, version: str) -> None:
        """Drop every application namespace and start over with core assets under `version`."""
        self.version = version
        try:
            for name in self.storage.keys():
                if name.startswith(self.prefix):
                    log.info("worker: deleting cache %s", name)
                    self.storage.delete(name)
            cache = self.storage.open(self.cache_name)
            log.info("worker: recreating cache with new version %s", version)
            await self._add_all(cache, self.core_assets)
        except (sqlite3.Error, httpx.HTTPError, CacheAddError) as e:
            log.error("worker: cache clearing failed: %s", e)
            return
        self.skip_waiting()
        self.broadcast(CacheUpdated(version=version))

    # ── lifecycle ───────────────────────────────────────────────────────────
    async def register(self) -> None:
        await self.install()
        await self.activate()

    async def install(self) -> bool:
        self.state = WorkerState.INSTALLING
        self.skip_waiting()
        ok = True
        try:
            cache = self.storage.open(self.cache_name)
            log.info("worker: caching core assets into %s", self.cache_name)
            await self._add_all(cache, self.core_assets)
        except (sqlite3.Error, httpx.HTTPError, CacheAddError) as e:
            log.error("worker: failed to cache core assets: %s", e)
            ok = False
        self.state = WorkerState.INSTALLED
        return ok

    async def activate(self) -> None:
        self.state = WorkerState.ACTIVATING
        for name in self.storage.keys():
            if name.startswith(self.prefix) and name != self.cache_name:
                log.info("worker: deleting old cache %s", name)
                self.storage.delete(name)
        self.state = WorkerState.ACTIVATED
        await self.claim()

    def skip_waiting(self) -> None:
        self.waiting_skipped = True

    async def claim(self) -> None:
        for client in self.clients():
            client.controlled = True

    async def _add_all(self, cache: Cache, paths: List[str]) -> None:
        # all-or-nothing, like Cache.addAll
        snapshots = []
        for path in paths:
            request = httpx.Request("GET", self.resolve(path))
            snap = await self._fetch(request)
            if snap.status != 200:
                raise CacheAddError(f"{path} returned {snap.status}")
            snapshots.append(snap)
        for snap in snapshots:
            cache.put(snap.url, snap.status, snap.headers, snap.body)

    # ── fetch interception ──────────────────────────────────────────────────
    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if (
            self.state != WorkerState.ACTIVATED
            or request.method != "GET"
            or not self._same_origin(request.url)
        ):
            return await self.network.handle_async_request(request)
        if request.headers.get("sec-fetch-mode") == "navigate":
            return await self._navigate(request)
        return await self._stale_while_revalidate(request)

    def _same_origin(self, url: httpx.URL) -> bool:
        return (url.scheme, url.host, url.port) == (self.origin.scheme, self.origin.host, self.origin.port)

    async def _navigate(self, request: httpx.Request) -> httpx.Response:
        try:
            return (await self._fetch(request)).to_response()
        except httpx.TransportError as e:
            log.info("worker: navigation offline (%s); serving fallback", e)
            return self._fallback_document()

    async def _stale_while_revalidate(self, request: httpx.Request) -> httpx.Response:
        cached = self._match(request.url)
        versioned = "v" in request.url.params
        if cached is not None and not versioned:
            task = asyncio.create_task(self._revalidate_quietly(request))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return cached
        try:
            return (await self._revalidate(request)).to_response()
        except httpx.TransportError as e:
            log.info("worker: fetch failed for %s: %s", request.url, e)
            if cached is not None:
                return cached
            path = request.url.path.lower()
            if ".html" in path:
                return self._fallback_document()
            if path.endswith(IMAGE_EXTENSIONS):
                return httpx.Response(
                    200, headers={"Content-Type": "image/svg+xml", "Cache-Control": "no-store"}, content=b""
                )
            raise

    async def _revalidate(self, request: httpx.Request) -> _Snapshot:
        snap = await self._fetch(request)
        if snap.status == 200:
            try:
                self.storage.open(self.cache_name).put(snap.url, snap.status, snap.headers, snap.body)
            except sqlite3.Error as e:
                log.warning("worker: could not store %s: %s", snap.url, e)
        return snap

    async def _revalidate_quietly(self, request: httpx.Request) -> None:
        try:
            await self._revalidate(request)
        except httpx.HTTPError as e:
            log.debug("worker: background refresh failed for %s: %s", request.url, e)

    async def _fetch(self, request: httpx.Request) -> _Snapshot:
        response = await self.network.handle_async_request(request)
        try:
            body = await response.aread()
        finally:
            await response.aclose()
        # body is already decoded, so the stored headers must not claim an encoding
        headers = [[k, v] for k, v in response.headers.multi_items() if k.lower() not in _HOP_HEADERS]
        return _Snapshot(request.url, response.status_code, headers, body)

    def _match(self, url: httpx.URL) -> Optional[httpx.Response]:
        try:
            return self.storage.match(url, namespace=self.cache_name)
        except sqlite3.Error as e:
            log.warning("worker: cache lookup failed for %s: %s", url, e)
            return None

    def _fallback_document(self) -> httpx.Response:
        cached = self._match(httpx.URL(self.fallback_url))
        if cached is not None:
            return cached
        return httpx.Response(
            200,
            headers={"Content-Type": "text/html; charset=utf-8", "Cache-Control": "no-store"},
            content=offline_html(self.version).encode("utf-8"),
        )

    # ── background sync ─────────────────────────────────────────────────────
    async def sync(self, tag: str) -> bool:
        """Replay work queued while offline. Returns True when something was delivered."""
        if tag != CONTACT_SYNC_TAG:
            log.debug("worker: unknown sync tag %s", tag)
            return False
        if self.store is None:
            return False
        raw = self.store.get_item(PENDING_CONTACT_KEY)
        if not raw:
            return False
        try:
            payload = json.loads(raw)
        except ValueError as e:
            log.warning("worker: dropping unreadable pending contact form: %s", e)
            self.store.remove_item(PENDING_CONTACT_KEY)
            return False
        request = httpx.Request("POST", self.resolve(CONTACT_SYNC_PATH.lstrip("/")), json=payload)
        try:
            response = await self.network.handle_async_request(request)
            await response.aclose()
        except httpx.HTTPError as e:
            log.warning("worker: contact form sync failed: %s", e)
            return False
        if not 200 <= response.status_code < 300:
            log.warning("worker: contact form sync rejected with %s", response.status_code)
            return False
        self.store.remove_item(PENDING_CONTACT_KEY)
        self.broadcast(Notification(title=APP_NAME, body="Your contact form has been submitted successfully!"))
        return True

    async def drain(self) -> None:
        """Wait for in-flight background refreshes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self.network.aclose()
