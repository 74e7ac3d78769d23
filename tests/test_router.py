"""Tests for the hash router."""

import asyncio

import httpx
import pytest
import pytest_asyncio

from conftest import ORIGIN
from page_cache import PageCache
from router import Location, NavState, Router, SideNav, swap_menu_container


@pytest_asyncio.fixture
async def make_router(site, store):
    clients = []
    routers = []

    def _make(fragment: str = "", **kwargs) -> Router:
        client = httpx.AsyncClient(transport=site.transport)
        clients.append(client)
        kwargs.setdefault("page_cache", PageCache())
        router = Router(
            client,
            kwargs.pop("page_cache"),
            store,
            location=Location(fragment),
            origin=ORIGIN,
            **kwargs,
        )
        routers.append(router)
        return router

    yield _make
    for router in routers:
        await router.wait_idle()
    for client in clients:
        await client.aclose()


class TestResolution:
    @pytest.mark.asyncio
    async def test_empty_fragment_loads_home(self, make_router):
        router = make_router()

        assert await router.start() is True

        assert router.current_route == "home"
        assert router.location.fragment == "#home"
        assert 'id="page-home"' in router.viewport.html
        assert router.viewport.active_route == "home"

    @pytest.mark.asyncio
    async def test_unknown_route_is_normalized_to_home(self, make_router, site):
        router = make_router("#secret-menu")

        await router.start()

        assert router.current_route == "home"
        assert router.location.fragment == "#home"
        assert site.count("/pages/secret-menu.html") == 0

    @pytest.mark.asyncio
    async def test_back_forward_reads_the_location(self, make_router):
        router = make_router("#about")
        await router.start()

        router.location.fragment = "#contact"
        await router.on_location_change()

        assert router.current_route == "contact"


class TestPageCache:
    @pytest.mark.asyncio
    async def test_menu_page_is_served_from_cache_on_return(self, make_router, site):
        router = make_router()
        await router.navigate("wraps")
        await router.navigate("about")
        await router.navigate("wraps")

        assert site.count("/pages/wraps.html") == 1
        assert router.page_cache.has("wraps")
        assert router.current_route == "wraps"

    @pytest.mark.asyncio
    async def test_sections_are_always_refetched(self, make_router, site):
        router = make_router()
        await router.navigate("about")
        await router.navigate("contact")
        await router.navigate("about")

        assert site.count("/pages/about.html") == 2
        assert not router.page_cache.has("about")

    @pytest.mark.asyncio
    async def test_same_category_only_refreshes_indicator(self, make_router, site):
        router = make_router()
        await router.navigate("pasta")
        await router.navigate("pasta")

        assert site.count("/pages/pasta.html") == 1
        assert router.viewport.active_route == "pasta"


class TestFailures:
    @pytest.mark.asyncio
    async def test_timeout_shows_retry_and_caches_nothing(self, make_router, site):
        site.add("/pages/desserts.html", "<p>late</p>", delay=1.0)
        router = make_router(timeout=0.05)
        await router.navigate("about")

        assert await router.navigate("desserts") is False

        assert router.state == NavState.IDLE
        assert router.viewport.showing_retry is True
        assert "Unable to load content" in router.viewport.html
        assert not router.page_cache.has("desserts")
        assert router.current_route == "about"

    @pytest.mark.asyncio
    async def test_http_error_shows_retry(self, make_router, site):
        site.add("/pages/indian.html", "oops", status=503)
        router = make_router()

        assert await router.navigate("indian") is False

        assert router.viewport.showing_retry is True
        assert not router.page_cache.has("indian")
        assert router.current_route is None

    @pytest.mark.asyncio
    async def test_network_error_shows_retry(self, make_router, site):
        router = make_router()
        site.offline = True

        assert await router.navigate("menu") is False
        assert router.failed_route == "menu"
        assert router.viewport.loading is False

    @pytest.mark.asyncio
    async def test_non_html_body_is_a_failure(self, make_router, site):
        site.add("/pages/sides.html", '{"x": 1}', content_type="application/json")
        router = make_router()

        assert await router.navigate("sides") is False
        assert not router.page_cache.has("sides")

    @pytest.mark.asyncio
    async def test_missing_content_type_is_a_failure(self, make_router, site):
        site.add("/pages/sides.html", '<div class="menu-container">sides</div>', content_type="")
        router = make_router()

        assert await router.navigate("sides") is False
        assert router.viewport.showing_retry is True
        assert not router.page_cache.has("sides")

    @pytest.mark.asyncio
    async def test_recovers_after_failure(self, make_router, site):
        site.add("/pages/wraps.html", "oops", status=500)
        router = make_router()
        await router.navigate("wraps")

        site.add("/pages/wraps.html", '<div class="menu-container">fixed</div>')
        assert await router.navigate("wraps") is True
        assert router.viewport.showing_retry is False
        assert "fixed" in router.viewport.html


class TestOrdering:
    @pytest.mark.asyncio
    async def test_loading_state_while_fetching(self, make_router, site):
        site.add("/pages/about.html", "<p>about</p>", delay=0.1)
        router = make_router()

        task = asyncio.create_task(router.navigate("about"))
        await asyncio.sleep(0.02)
        assert router.state == NavState.LOADING
        assert router.viewport.loading is True
        await task

        assert router.state == NavState.IDLE
        assert router.viewport.loading is False

    @pytest.mark.asyncio
    async def test_slow_earlier_fetch_cannot_overwrite_later_one(self, make_router, site):
        site.add("/pages/pasta.html", '<div class="menu-container">slow pasta</div>', delay=0.2)
        router = make_router()

        slow = asyncio.create_task(router.navigate("pasta"))
        await asyncio.sleep(0.02)
        fast = await router.navigate("about")
        slow_result = await slow

        assert fast is True
        assert slow_result is False
        assert router.current_route == "about"
        assert "slow pasta" not in router.viewport.html
        assert not router.page_cache.has("pasta")
        assert router.location.fragment == "#about"

    @pytest.mark.asyncio
    async def test_cache_hit_supersedes_inflight_fetch(self, make_router, site):
        cache = PageCache()
        cache.set("wraps", '<div class="menu-container">cached wraps</div>')
        site.add("/pages/about.html", "<p>about</p>", delay=0.2)
        router = make_router(page_cache=cache)

        slow = asyncio.create_task(router.navigate("about"))
        await asyncio.sleep(0.02)
        await router.navigate("wraps")

        assert await slow is False
        assert router.current_route == "wraps"
        assert "cached wraps" in router.viewport.html


class TestMenuContainerSwap:
    @pytest.mark.asyncio
    async def test_category_switch_swaps_only_the_container(self, make_router):
        router = make_router()
        await router.navigate("wraps")
        await router.navigate("sides")

        html = router.viewport.html
        assert 'id="page-wraps"' in html
        assert "<h2>sides</h2>" in html
        assert "<h2>wraps</h2>" not in html
        assert router.page_cache.get("sides").count("menu-container") == 1

    @pytest.mark.asyncio
    async def test_missing_container_falls_back_to_full_render(self, make_router, site):
        site.add("/pages/sides.html", '<section id="page-sides">no container</section>')
        router = make_router()
        await router.navigate("wraps")
        await router.navigate("sides")

        assert router.viewport.html.startswith('<section id="page-sides">')
        assert "page-wraps" not in router.viewport.html

    def test_swap_helper(self):
        current = '<main><h1>Menu</h1><div class="menu-container"><p>a</p></div></main>'
        new = '<div class="menu-container"><p>b</p><p>c</p></div>'

        assert swap_menu_container(current, new) == (
            '<main><h1>Menu</h1><div class="menu-container"><p>b</p><p>c</p></div></main>'
        )
        assert swap_menu_container("<p>x</p>", new) is None
        assert swap_menu_container(current, "<p>x</p>") is None


class TestScrollAndHooks:
    @pytest.mark.asyncio
    async def test_scroll_offset_is_saved_and_restored(self, make_router, store):
        router = make_router()
        await router.navigate("about")
        router.viewport.scroll_offset = 420
        await router.navigate("contact")

        assert store.get_item("scrollPos_about") == "420"
        assert router.viewport.scroll_offset == 0

        await router.navigate("about")
        assert router.viewport.scroll_offset == 420

    @pytest.mark.asyncio
    async def test_home_always_scrolls_to_top(self, make_router, store):
        store.set_item("scrollPos_home", "999")
        router = make_router()
        await router.navigate("home")

        assert router.viewport.scroll_offset == 0

    @pytest.mark.asyncio
    async def test_lazy_sources_are_promoted(self, make_router):
        router = make_router()
        await router.navigate("wraps")

        assert 'src="assets/menu/wraps.svg"' in router.viewport.html
        assert "data-src" not in router.viewport.html

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_break_render(self, make_router):
        calls = []

        def broken(route, viewport):
            raise RuntimeError("boom")

        def record(route, viewport):
            calls.append(route)

        router = make_router(hooks=[broken, record])
        assert await router.navigate("about") is True
        assert calls == ["about"]
        assert "data-src" not in router.viewport.html


class TestPrefetch:
    @pytest.mark.asyncio
    async def test_adjacent_categories_are_prefetched(self, make_router):
        router = make_router()
        await router.navigate("sides")
        await router.wait_idle()

        assert sorted(router.page_cache.keys()) == ["pasta", "sides", "wraps"]

    @pytest.mark.asyncio
    async def test_prefetch_failures_are_silent(self, make_router, site):
        site.add("/pages/pasta.html", "oops", status=500)
        router = make_router()
        await router.navigate("sides")
        await router.wait_idle()

        assert router.viewport.showing_retry is False
        assert router.current_route == "sides"
        assert not router.page_cache.has("pasta")

    @pytest.mark.asyncio
    async def test_preload_menu_pages(self, make_router, site):
        site.add("/pages/indian.html", "oops", status=500)
        router = make_router()

        assert await router.preload_menu_pages() == 10
        assert len(router.page_cache) == 10


class TestSideNav:
    @pytest.mark.asyncio
    async def test_toggle_and_close_on_navigation(self, make_router):
        router = make_router()

        assert router.toggle_side_nav() == SideNav.OPEN
        assert router.viewport.side_nav == SideNav.OPEN
        await router.navigate("about")

        assert router.side_nav == SideNav.CLOSED
        assert router.viewport.side_nav == SideNav.CLOSED


class TestShutdown:
    @pytest.mark.asyncio
    async def test_aclose_cancels_prefetches(self, make_router, site):
        site.add("/pages/gourmet-burgers.html", '<div class="menu-container">late</div>', delay=1.0)
        site.add("/pages/sides.html", '<div class="menu-container">late</div>', delay=1.0)
        router = make_router()
        await router.navigate("wraps")
        assert router._background

        await router.aclose()

        assert not router._background
        assert router.page_cache.keys() == ["wraps"]
