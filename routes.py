from types import MappingProxyType
from typing import List, Mapping, Tuple

DEFAULT_ROUTE = "home"

# Menu categories in display order; adjacency follows this order
MENU_CATEGORIES: Tuple[str, ...] = (
    "gourmet-burgers",
    "wraps",
    "sides",
    "pasta",
    "main-course",
    "chinese",
    "og-momos",
    "cold-beverages",
    "hot-beverages",
    "desserts",
    "indian",
)

_SECTIONS = ("home", "hours-location", "about", "order-online", "contact", "menu")

ROUTES: Mapping[str, str] = MappingProxyType(
    {token: f"pages/{token}.html" for token in _SECTIONS + MENU_CATEGORIES}
)

# Only menu pages are kept in the page cache; everything else is re-fetched
CACHEABLE_ROUTES = frozenset(MENU_CATEGORIES)


def is_menu_page(token: str) -> bool:
    """True for a menu category page (the `menu` overview is not one)."""
    return token in MENU_CATEGORIES


def is_cacheable(token: str) -> bool:
    return token in CACHEABLE_ROUTES


def resolve(token: str) -> Tuple[str, str]:
    """Map a route token to (token, content path), falling back to the default route."""
    token = (token or "").strip().lstrip("#")
    if token not in ROUTES:
        token = DEFAULT_ROUTE
    return token, ROUTES[token]


def adjacent(token: str) -> List[str]:
    """Routes worth prefetching after `token` has been shown."""
    if token in CACHEABLE_ROUTES:
        i = MENU_CATEGORIES.index(token)
        out = []
        if i > 0:
            out.append(MENU_CATEGORIES[i - 1])
        if i < len(MENU_CATEGORIES) - 1:
            out.append(MENU_CATEGORIES[i + 1])
        return out
    if token == "menu":
        return list(MENU_CATEGORIES[:3])
    return []
