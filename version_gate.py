import logging
from enum import Enum
from typing import Optional

from config import APP_VERSION, APP_NAME
from offline_cache import VersionUpdate, WorkerClient
from page_cache import PageCache
from storage import KeyValueStore, SessionStore, VERSION_KEY

log = logging.getLogger("uvicorn.error")


class VersionCheck(str, Enum):
    FIRST_RUN = "first_run"
    UNCHANGED = "unchanged"
    UPGRADED = "upgraded"


class VersionGate:
    """Compares the built-in version with the last one this profile saw.

    Runs synchronously, before the router. On a change every persisted key
    except the version itself is dropped, session state is cleared and the
    offline worker is told to rebuild its cache.
    """

    def __init__(
        self,
        store: KeyValueStore,
        session: SessionStore,
        app_version: str = APP_VERSION,
        *,
        client: Optional[WorkerClient] = None,
        page_cache: Optional[PageCache] = None,
    ):
        self.store = store
        self.session = session
        self.app_version = app_version
        self.client = client
        self.page_cache = page_cache

    def run(self) -> VersionCheck:
        log.info("%s Web App v%s", APP_NAME, self.app_version)
        previous = self.store.get_item(VERSION_KEY)
        if previous == self.app_version:
            return VersionCheck.UNCHANGED

        self.store.set_item(VERSION_KEY, self.app_version)
        if previous is None:
            return VersionCheck.FIRST_RUN

        log.info("version change %s -> %s; clearing client state", previous, self.app_version)
        for key in self.store.keys():
            if key != VERSION_KEY:
                self.store.remove_item(key)
        self.session.clear()
        if self.page_cache is not None:
            self.page_cache.clear()

        if self.client is not None and self.client.connected and self.client.controlled:
            self.client.post_message(VersionUpdate(version=self.app_version, previous_version=previous))
        return VersionCheck.UPGRADED
