"""Cache of Lark clients keyed by app credentials."""

from __future__ import annotations

import time
from typing import Callable, Dict, Optional, Tuple

from lib.lark_client import LarkClient
from utils.locks import ReadWriteLock
from utils.logging import logger

CLIENT_TTL_SECONDS = 24 * 60 * 60

ClientFactory = Callable[[str, str], LarkClient]


class ClientRegistry:
    """Hands out one LarkClient per (app_id, app_secret), rebuilt after a day."""

    def __init__(
        self,
        factory: ClientFactory = LarkClient,
        ttl: float = CLIENT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self._ttl = ttl
        self._clock = clock
        self._clients: Dict[Tuple[str, str], Tuple[LarkClient, float]] = {}
        self._lock = ReadWriteLock()

    def get(self, app_id: str, app_secret: str) -> LarkClient:
        key = (app_id, app_secret)
        with self._lock.read():
            client = self._fresh(key)
        if client is not None:
            return client

        with self._lock.write():
            client = self._fresh(key)
            if client is not None:
                return client
            self._drop_expired()
            client = self._factory(app_id, app_secret)
            self._clients[key] = (client, self._clock() + self._ttl)
            logger.info("Created Lark client for app %s", app_id)
            return client

    def clear(self) -> None:
        with self._lock.write():
            self._clients.clear()

    def _fresh(self, key: Tuple[str, str]) -> Optional[LarkClient]:
        entry = self._clients.get(key)
        if entry and entry[1] > self._clock():
            return entry[0]
        return None

    def _drop_expired(self) -> None:
        now = self._clock()
        for key in [key for key, (_, expires) in self._clients.items() if expires <= now]:
            del self._clients[key]
