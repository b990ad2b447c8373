# sse_broadcast.py
"""
In-process fan-out of workout updates to Server-Sent Events connections.

Connections are kept per user in memory, so only clients attached to this
process receive updates. A writer is anything with write(bytes) and close().
"""

import json
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 25


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_event(event: Dict) -> bytes:
    return f"data: {json.dumps(event, default=str)}\n\n".encode("utf-8")


def connected_event() -> bytes:
    return format_event({"type": "connected", "timestamp": _now_iso()})


class QueueWriter:
    """Bridges broadcast writes to a Flask streaming response generator."""

    def __init__(self, keepalive_seconds: float = KEEPALIVE_SECONDS):
        self._queue = queue.Queue()
        self._keepalive = keepalive_seconds
        self.closed = False

    def write(self, chunk: bytes):
        if self.closed:
            raise BrokenPipeError("stream closed")
        self._queue.put(chunk)

    def close(self):
        if not self.closed:
            self.closed = True
            self._queue.put(None)

    def stream(self):
        while True:
            try:
                chunk = self._queue.get(timeout=self._keepalive)
            except queue.Empty:
                if self.closed:
                    break
                yield b": keepalive\n\n"
                continue
            if chunk is None:
                break
            yield chunk


class ConnectionRegistry:
    def __init__(self):
        self._connections: Dict[str, Set] = {}
        self._lock = threading.Lock()

    def add(self, user_id: str, writer):
        with self._lock:
            self._connections.setdefault(str(user_id), set()).add(writer)
        logger.info("sse_connection_added user_id=%s connections=%s", user_id, self.count(user_id))

    def remove(self, user_id: str, writer):
        with self._lock:
            writers = self._connections.get(str(user_id))
            if not writers:
                return
            writers.discard(writer)
            if not writers:
                del self._connections[str(user_id)]

    def count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is None:
                return sum(len(writers) for writers in self._connections.values())
            return len(self._connections.get(str(user_id), ()))

    def clear(self):
        with self._lock:
            self._connections.clear()

    def broadcast(self, user_id: str, event: Dict) -> int:
        """Write one event to every writer of the user; returns how many succeeded."""
        with self._lock:
            writers = list(self._connections.get(str(user_id), ()))
        if not writers:
            return 0

        chunk = format_event(event)
        delivered = 0
        for writer in writers:
            try:
                writer.write(chunk)
                delivered += 1
            except Exception as e:
                logger.warning("sse_writer_dead user_id=%s error=%s", user_id, e)
                self.remove(user_id, writer)
                try:
                    writer.close()
                except Exception as close_error:
                    logger.debug("sse_writer_close_failed user_id=%s error=%s", user_id, close_error)
        return delivered


registry = ConnectionRegistry()


def add_connection(user_id: str, writer):
    registry.add(user_id, writer)


def remove_connection(user_id: str, writer):
    registry.remove(user_id, writer)


def connection_count(user_id: Optional[str] = None) -> int:
    return registry.count(user_id)


def broadcast_workout_update(user_id: str, workout: Dict) -> int:
    return registry.broadcast(user_id, {
        "type": "workout-updated",
        "workout": workout,
        "timestamp": _now_iso(),
    })
