import logging
from collections import OrderedDict
from typing import List, Optional

from config import PAGE_CACHE_MAX

log = logging.getLogger("uvicorn.error")


class PageCache:
    """In-memory LRU of fetched HTML fragments keyed by route token.

    One instance per page load. `get` counts as a use; `has` does not.
    """

    def __init__(self, max_size: int = PAGE_CACHE_MAX):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._store: "OrderedDict[str, str]" = OrderedDict()

    def get(self, key: str) -> Optional[str]:
        if key not in self._store:
            return None
        self._store.move_to_end(key)
        return self._store[key]

    def set(self, key: str, content: str) -> None:
        if key in self._store:
            self._store[key] = content
            self._store.move_to_end(key)
            return
        if len(self._store) >= self.max_size:
            oldest, _ = self._store.popitem(last=False)
            log.debug("page cache full, evicted %s", oldest)
        self._store[key] = content

    def has(self, key: str) -> bool:
        return key in self._store

    def clear(self) -> None:
        self._store.clear()
        log.debug("page cache cleared")

    def keys(self) -> List[str]:
        # least- to most-recently used
        return list(self._store.keys())

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __len__(self) -> int:
        return len(self._store)
