# ============================================================================
# STREET PATROL LOG - Change Notifier
# ============================================================================
# Realtime "something changed" signals for one owner's patrols.
# Messages carry no patrol data: every consumer reacts by re-fetching the
# affected view (active-patrol banner, navbar badge, history list).
# ============================================================================

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger("patrols.notifier")

Subscriber = Callable[[Dict], None]


class PatrolChangeNotifier:
    """
    Fan-out of invalidate signals, scoped by owner.

    Two kinds of consumers:
    - WebSocket connections (browser badges)
    - in-process subscriber callbacks
    """

    def __init__(self):
        # owner -> set of WebSocket connections
        self._connections: Dict[str, Set[WebSocket]] = {}
        # WebSocket -> owner
        self._ws_to_owner: Dict[WebSocket, str] = {}
        self._lock = asyncio.Lock()
        # owner -> callbacks
        self._subscribers: Dict[str, List[Subscriber]] = {}
        # Broadcast tasks still in flight
        self._pending: Set[asyncio.Task] = set()

    # ---- WebSocket connections ----

    async def connect(self, websocket: WebSocket, owner: str):
        """Register a new WebSocket connection for an owner."""
        await websocket.accept()

        async with self._lock:
            self._connections.setdefault(owner, set()).add(websocket)
            self._ws_to_owner[websocket] = owner

        logger.info("[WS] %s connected. Total connections: %d", owner, self._count_connections())

        await self._send_to_websocket(websocket, {
            "type": "connected",
            "owner": owner,
            "timestamp": datetime.now().isoformat(),
        })

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            owner = self._ws_to_owner.pop(websocket, None)
            if owner and owner in self._connections:
                self._connections[owner].discard(websocket)
                if not self._connections[owner]:
                    del self._connections[owner]

        logger.info("[WS] %s disconnected. Total connections: %d", owner, self._count_connections())

    def _count_connections(self) -> int:
        return sum(len(conns) for conns in self._connections.values())

    def connection_count(self, owner: str) -> int:
        return len(self._connections.get(owner, ()))

    async def _send_to_websocket(self, ws: WebSocket, data: Dict) -> bool:
        try:
            await ws.send_json(data)
            return True
        except Exception as e:
            logger.warning("[WS] Send failed: %s", e)
            return False

    async def send_to_owner(self, owner: str, message: Dict) -> int:
        """Send a message to every connection of one owner."""
        sent_count = 0
        failed_connections = []

        async with self._lock:
            connections = self._connections.get(owner, set()).copy()

        for ws in connections:
            if await self._send_to_websocket(ws, message):
                sent_count += 1
            else:
                failed_connections.append(ws)

        for ws in failed_connections:
            await self.disconnect(ws)

        return sent_count

    async def handle_client_message(self, websocket: WebSocket, data: Dict):
        """Client keepalive; anything else is ignored."""
        if data.get("type") == "ping":
            await self._send_to_websocket(websocket, {
                "type": "pong",
                "timestamp": datetime.now().isoformat(),
            })

    # ---- In-process subscribers ----

    def subscribe(self, owner: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for an owner's invalidate signals.

        Returns a function that removes the subscription.
        """
        self._subscribers.setdefault(owner, []).append(callback)

        def unsubscribe():
            callbacks = self._subscribers.get(owner, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(owner, None)

        return unsubscribe

    # ---- Signal ----

    def notify(self, owner: str, patrol_id: Optional[str] = None, change: str = "updated") -> Dict:
        """
        Emit an invalidate signal for one owner.

        Safe to call from sync code: subscriber callbacks run inline, and the
        WebSocket fan-out is scheduled on the running loop when there is one.
        A failing consumer never breaks the caller.
        """
        message = {
            "type": "invalidate",
            "owner": owner,
            "patrol_id": patrol_id,
            "change": change,
            "timestamp": datetime.now().isoformat(),
        }

        for callback in list(self._subscribers.get(owner, [])):
            try:
                callback(message)
            except Exception as e:
                logger.error("Change subscriber failed for %s: %s", owner, e)

        if owner in self._connections:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # No running loop; in-process subscribers were still told
                logger.debug("No running loop, WebSocket fan-out skipped for %s", owner)
            else:
                task = loop.create_task(self.send_to_owner(owner, message))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

        return message


# Singleton instance
_notifier = None


def get_notifier() -> PatrolChangeNotifier:
    """Get or create the singleton notifier instance."""
    global _notifier
    if _notifier is None:
        _notifier = PatrolChangeNotifier()
    return _notifier
