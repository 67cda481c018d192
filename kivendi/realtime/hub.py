from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, DefaultDict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class RealtimeHub:
    """
    Sockets grouped by key (a conversation id for chat rooms, a user id for inboxes).

    Sends work on a snapshot taken under the lock; sockets that fail a write are
    closed and evicted in a second pass under the lock, so the set is never
    mutated while another coroutine is iterating it.
    """

    def __init__(self, name: str = "hub") -> None:
        self.name = name
        self._connections: DefaultDict[int, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, key: int, ws: WebSocket) -> None:
        async with self._lock:
            self._connections[key].add(ws)

    async def disconnect(self, key: int, ws: WebSocket) -> None:
        async with self._lock:
            conns = self._connections.get(key)
            if not conns:
                return
            conns.discard(ws)
            if not conns:
                self._connections.pop(key, None)

    async def send(self, key: int, payload: dict[str, Any]) -> int:
        """Write payload to every socket under key. Returns how many writes succeeded."""
        message = json.dumps(payload, ensure_ascii=False, default=str)
        async with self._lock:
            conns = list(self._connections.get(key, set()))
        dead: list[WebSocket] = []
        for ws in conns:
            try:
                await ws.send_text(message)
            except Exception as e:
                logger.info("%s: write to key=%s failed (%s), evicting", self.name, key, type(e).__name__)
                dead.append(ws)
        if dead:
            for ws in dead:
                try:
                    await ws.close()
                except Exception:
                    pass
            async with self._lock:
                conns_now = self._connections.get(key)
                if conns_now is not None:
                    for ws in dead:
                        conns_now.discard(ws)
                    if not conns_now:
                        self._connections.pop(key, None)
        return len(conns) - len(dead)

    def connection_count(self, key: int) -> int:
        return len(self._connections.get(key, ()))

    def has_key(self, key: int) -> bool:
        return key in self._connections


# conversation id -> sockets in that chat
chat_hub = RealtimeHub("chat")
# user id -> sockets listening for inbox events
inbox_hub = RealtimeHub("inbox")
