from __future__ import annotations

import asyncio
import logging
from typing import Dict, Set

from fastapi import WebSocket


class WebSocketManager:
    """Fans job events out to the sockets subscribed to each job id."""

    def __init__(self) -> None:
        self._connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, job_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(job_id, set()).add(websocket)

    async def disconnect(self, job_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._connections.get(job_id)
            if sockets is None:
                return
            sockets.discard(websocket)
            if not sockets:
                self._connections.pop(job_id, None)

    async def broadcast(self, job_id: str, message: dict) -> None:
        async with self._lock:
            sockets = list(self._connections.get(job_id, set()))
        if not sockets:
            return
        results = await asyncio.gather(*(ws.send_json(message) for ws in sockets), return_exceptions=True)
        for ws, result in zip(sockets, results):
            if isinstance(result, Exception):
                logging.debug("Dropping websocket for job %s: %s", job_id, result)
                await self.disconnect(job_id, ws)
