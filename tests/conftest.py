import asyncio
import json
from typing import Dict, List, Tuple, Optional

import httpx
import pytest

from config import CORE_ASSETS
from offline_cache import CacheStorage
from routes import ROUTES, MENU_CATEGORIES
from storage import KeyValueStore

ORIGIN = "http://blaze.test"


def menu_fragment(token: str) -> str:
    return (
        f'<section class="menu-page" id="page-{token}">'
        f'<div class="menu-container"><h2>{token}</h2>'
        f'<img class="menu-svg" data-src="assets/menu/{token}.svg"></div>'
        f"</section>"
    )


def section_fragment(token: str) -> str:
    return f'<section class="page" id="page-{token}"><h1>{token}</h1></section>'


class FakeSite:
    """In-process stand-in for the Blaze origin behind an httpx.MockTransport."""

    def __init__(self):
        self.pages: Dict[str, Tuple[int, bytes, str]] = {}
        self.delays: Dict[str, float] = {}
        self.offline = False
        self.hits: List[Tuple[str, str]] = []
        self.posted: List[dict] = []
        self.post_status = 200

    def add(self, path: str, body: str, *, status: int = 200,
            content_type: str = "text/html; charset=utf-8", delay: Optional[float] = None) -> None:
        self.pages[path] = (status, body.encode("utf-8"), content_type)
        if delay is not None:
            self.delays[path] = delay

    def count(self, path: str) -> int:
        return sum(1 for _, p in self.hits if p == path)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.hits.append((request.method, path))
        if self.offline:
            raise httpx.ConnectError("network unreachable", request=request)
        delay = self.delays.get(path)
        if delay:
            await asyncio.sleep(delay)
        if request.method == "POST":
            self.posted.append(json.loads(request.content or b"{}"))
            return httpx.Response(self.post_status, json={"ok": self.post_status < 300})
        if path not in self.pages:
            return httpx.Response(404, text="not found")
        status, body, ctype = self.pages[path]
        headers = {"Content-Type": ctype} if ctype else {}
        return httpx.Response(status, headers=headers, content=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def site() -> FakeSite:
    s = FakeSite()
    for token, path in ROUTES.items():
        body = menu_fragment(token) if token in MENU_CATEGORIES else section_fragment(token)
        s.add(f"/{path}", body)
    for asset in CORE_ASSETS:
        path = "/" + asset[2:]
        if path == "/" or path.endswith(".html"):
            s.add(path, "<!DOCTYPE html><html><body><main id='app'></main>shell</body></html>")
        else:
            s.add(path, f"/* {asset} */", content_type="application/octet-stream")
    return s


@pytest.fixture
def store(tmp_path) -> KeyValueStore:
    kv = KeyValueStore(str(tmp_path / "client_state.db"))
    yield kv
    kv.close()


@pytest.fixture
def storage(tmp_path) -> CacheStorage:
    cs = CacheStorage(str(tmp_path / "offline_cache.db"))
    yield cs
    cs.close()
