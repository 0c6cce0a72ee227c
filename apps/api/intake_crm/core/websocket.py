"""
WebSocket connection registry for real-time notifications.

Process-scoped: populated on connect, pruned by a periodic liveness sweep,
and torn down on application shutdown.
"""

from typing import Dict, Set
from uuid import UUID
import asyncio
import json
import logging
import time

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections per user and organization."""

    def __init__(self):
        # user_id -> set of active WebSocket connections
        self._connections: Dict[UUID, Set[WebSocket]] = {}
        # user_id -> org_id (for org-based broadcasts)
        self._user_orgs: Dict[UUID, UUID] = {}
        # websocket -> (user_id, monotonic time of last client frame)
        self._last_seen: Dict[WebSocket, tuple[UUID, float]] = {}
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None

    async def connect(
        self, websocket: WebSocket, user_id: UUID, org_id: UUID | None = None
    ):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            if user_id not in self._connections:
                self._connections[user_id] = set()
            self._connections[user_id].add(websocket)
            self._last_seen[websocket] = (user_id, time.monotonic())
            if org_id:
                self._user_orgs[user_id] = org_id

    async def disconnect(self, websocket: WebSocket, user_id: UUID):
        """Remove a WebSocket connection."""
        async with self._lock:
            self._remove(websocket, user_id)

    def _remove(self, websocket: WebSocket, user_id: UUID) -> None:
        # Caller holds the lock
        self._last_seen.pop(websocket, None)
        if user_id in self._connections:
            self._connections[user_id].discard(websocket)
            if not self._connections[user_id]:
                del self._connections[user_id]
                self._user_orgs.pop(user_id, None)

    def touch(self, websocket: WebSocket) -> None:
        """Record client activity on a connection."""
        entry = self._last_seen.get(websocket)
        if entry:
            self._last_seen[websocket] = (entry[0], time.monotonic())

    async def send_to_user(self, user_id: UUID, message: dict) -> int:
        """Send a message to all connections for a user. Returns connections reached."""
        async with self._lock:
            connections = self._connections.get(user_id, set()).copy()

        if not connections:
            return 0

        data = json.dumps(message, default=str)
        closed = []

        for ws in connections:
            try:
                await ws.send_text(data)
            except Exception:
                closed.append(ws)

        if closed:
            async with self._lock:
                for ws in closed:
                    self._remove(ws, user_id)
        return len(connections) - len(closed)

    async def send_to_org(self, org_id: UUID, message: dict) -> int:
        """Send a message to all connected users in an organization."""
        async with self._lock:
            user_ids = [uid for uid, oid in self._user_orgs.items() if oid == org_id]

        reached = 0
        for user_id in user_ids:
            reached += await self.send_to_user(user_id, message)
        return reached

    def get_connected_count(self, user_id: UUID) -> int:
        """Get the number of active connections for a user."""
        return len(self._connections.get(user_id, set()))

    def get_org_user_ids(self, org_id: UUID) -> list[UUID]:
        """Get all connected user IDs for an organization."""
        return [uid for uid, oid in self._user_orgs.items() if oid == org_id]

    def get_total_connections(self) -> int:
        """Get total number of active connections across all users."""
        return sum(len(conns) for conns in self._connections.values())

    async def sweep_stale(self, max_idle_seconds: float) -> int:
        """Close and drop connections with no client frame within max_idle_seconds."""
        cutoff = time.monotonic() - max_idle_seconds
        async with self._lock:
            stale = [
                (ws, user_id)
                for ws, (user_id, seen) in self._last_seen.items()
                if seen < cutoff
            ]
            for ws, user_id in stale:
                self._remove(ws, user_id)

        for ws, _ in stale:
            try:
                await ws.close(code=4008, reason="Idle timeout")
            except Exception:
                logger.debug("Stale websocket already closed")
        if stale:
            logger.info("Swept %d stale websocket connections", len(stale))
        return len(stale)

    async def _sweep_forever(self, interval_seconds: float, max_idle_seconds: float):
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep_stale(max_idle_seconds)
            except Exception:
                logger.exception("Websocket liveness sweep failed")

    def start_sweeper(self, interval_seconds: float, max_idle_seconds: float) -> None:
        """Start the periodic liveness sweep on the running loop."""
        if self._sweeper and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_forever(interval_seconds, max_idle_seconds)
        )

    async def shutdown(self) -> None:
        """Stop the sweeper and close every registered connection."""
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        async with self._lock:
            entries = list(self._last_seen.items())
            self._connections.clear()
            self._user_orgs.clear()
            self._last_seen.clear()

        for ws, _ in entries:
            try:
                await ws.close(code=1001, reason="Server shutdown")
            except Exception:
                logger.debug("Websocket already closed during shutdown")


# Singleton instance
manager = ConnectionManager()
