"""
Realtime Change Notifications

Writers publish a no-payload "table changed" signal after each commit.
Subscribers re-fetch whatever they display; no diff is ever sent.

Usage:
- Service code calls notifier.publish("tasks") after a committed write
- In-process subscribers (e.g. cached collections) get a sync callback
- Dashboard clients connect to /ws/changes and receive JSON signals
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List

from fastapi import WebSocket

logger = logging.getLogger(__name__)

TASKS = "tasks"
ACTIVITY = "activity_log"
PROFILES = "profiles"


class ChangeNotifier:
    """In-process publish/subscribe for table-changed signals."""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[], None]]] = {}

    def subscribe(self, table: str, callback: Callable[[], None]) -> Callable[[], None]:
        self._subscribers.setdefault(table, []).append(callback)
        logger.debug(f"Subscribed to {table} changes ({len(self._subscribers[table])} subscribers)")

        def unsubscribe():
            callbacks = self._subscribers.get(table, [])
            if callback in callbacks:
                callbacks.remove(callback)
                logger.debug(f"Unsubscribed from {table} changes")

        return unsubscribe

    def publish(self, table: str):
        for callback in list(self._subscribers.get(table, [])):
            try:
                callback()
            except Exception:
                # A broken subscriber must not undo a committed write
                logger.exception(f"Change subscriber for {table} failed")


class ChangeWebSocketManager:
    """
    Manages WebSocket connections for dashboard clients.

    Connection: client connects, waits for signals
    Broadcast: every published table change is forwarded to all clients
    Disconnect: client closes app, connection drops
    """

    def __init__(self):
        # Key: profile id, Value: queue drained by that client's socket loop
        self.active_connections: Dict[int, asyncio.Queue] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    async def connect(self, websocket: WebSocket, profile_id: int) -> asyncio.Queue:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        self.active_connections[profile_id] = queue
        logger.info(
            f"✓ Profile {profile_id} connected to change WebSocket "
            f"({len(self.active_connections)} active connections)"
        )
        return queue

    def disconnect(self, profile_id: int):
        if profile_id in self.active_connections:
            del self.active_connections[profile_id]
            logger.info(
                f"✓ Profile {profile_id} disconnected from change WebSocket "
                f"({len(self.active_connections)} active connections)"
            )

    def broadcast_table_change(self, table: str):
        """
        Queue a signal for every connected client.

        Called from sync route handlers running in the threadpool, so the
        queues are fed through the event loop rather than touched directly.
        """
        if self._loop is None or not self.active_connections:
            return

        message = json.dumps({
            "type": "table_changed",
            "table": table,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

        for queue in list(self.active_connections.values()):
            self._loop.call_soon_threadsafe(queue.put_nowait, message)

    def attach(self, notifier: ChangeNotifier, tables=(TASKS, ACTIVITY, PROFILES)):
        for table in tables:
            notifier.subscribe(table, lambda table=table: self.broadcast_table_change(table))


# Global instances
change_notifier = ChangeNotifier()
change_manager = ChangeWebSocketManager()
change_manager.attach(change_notifier)
