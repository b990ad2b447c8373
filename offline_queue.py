# offline_queue.py
"""
File-backed FIFO of workout saves made while the API was unreachable.

The queue is one JSON array in DATA_DIR. Items carry an attempt counter and
are dropped once they reach MAX_ATTEMPTS failed replays. Replay order is
FIFO; the API applies saves last-writer-wins, so there is no conflict
resolution here.
"""

import argparse
import json
import logging
import sys
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Callable, Dict, List, Optional

import requests

import config
from errors import QueueStorageError

logger = logging.getLogger(__name__)

QUEUE_FILENAME = "swole-tracker-offline-queue-v1.json"
MAX_ATTEMPTS = 8
BATCH_SIZE = 5
FILE_LOCK = threading.Lock()


def backoff(attempt: int) -> int:
    """Retry delay in milliseconds: 500ms * 2^attempt, capped at 8s."""
    return min(500 * 2 ** attempt, 8000)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class FlushResult:
    status: str
    processed: int = 0
    failed: int = 0
    last_error: Optional[str] = None


class OfflineQueue:
    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else None

    @property
    def path(self) -> Path:
        return self._path or (config.data_dir() / QUEUE_FILENAME)

    # -------------------------
    # Raw storage
    # -------------------------
    def read_queue(self) -> List[Dict]:
        with FILE_LOCK:
            return self._read_unlocked()

    def write_queue(self, items: List[Dict]):
        with FILE_LOCK:
            self._write_unlocked(items)

    def _read_unlocked(self) -> List[Dict]:
        path = self.path
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8") or "[]")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("offline_queue_unreadable path=%s error=%s", path, e)
            return []
        if not isinstance(data, list):
            logger.warning("offline_queue_not_a_list path=%s", path)
            return []
        items = [q for q in data if isinstance(q, dict)]
        if len(items) != len(data):
            logger.warning("offline_queue_bad_entries path=%s dropped=%s", path, len(data) - len(items))
        return items

    def _write_unlocked(self, items: List[Dict]):
        path = self.path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with NamedTemporaryFile("w", dir=path.parent, delete=False, encoding="utf-8") as tmp:
                json.dump(items, tmp)
                temp_path = Path(tmp.name)
            temp_path.replace(path)
        except OSError as e:
            raise QueueStorageError(f"Could not write offline queue to {path}: {e}") from e

    def _mutate(self, fn):
        with FILE_LOCK:
            items = self._read_unlocked()
            result = fn(items)
            self._write_unlocked(items)
            return result

    # -------------------------
    # Queue operations
    # -------------------------
    def enqueue_workout_save(self, payload: Dict) -> str:
        now = _now_ms()
        item = {
            "id": f"q_{uuid.uuid4().hex[:12]}_{now:x}",
            "type": "workout_save",
            "payload": payload,
            "attempts": 0,
            "last_error": None,
            "created_at": now,
            "updated_at": now,
        }
        self._mutate(lambda items: items.append(item))
        logger.info("offline_queue_enqueued id=%s session_id=%s", item["id"], payload.get("session_id"))
        return item["id"]

    def dequeue(self) -> Optional[Dict]:
        return self._mutate(lambda items: items.pop(0) if items else None)

    def get_queue(self) -> List[Dict]:
        return self.read_queue()

    def get_queue_length(self) -> int:
        return len(self.read_queue())

    def requeue_front(self, item: Dict):
        def _requeue(items):
            items[:] = [q for q in items if q.get("id") != item.get("id")]
            items.insert(0, item)
        self._mutate(_requeue)

    def update_item(self, item_id: str, **patch) -> Optional[Dict]:
        def _update(items):
            for q in items:
                if q.get("id") == item_id:
                    q.update(patch)
                    q["updated_at"] = _now_ms()
                    return q
            return None
        return self._mutate(_update)

    def remove_items(self, item_ids):
        item_ids = set(item_ids)

        def _remove(items):
            items[:] = [q for q in items if q.get("id") not in item_ids]
        self._mutate(_remove)

    def remove_item(self, item_id: str):
        self.remove_items([item_id])

    def prune_exhausted(self) -> int:
        def _prune(items):
            before = len(items)
            items[:] = [q for q in items if q.get("attempts", 0) < MAX_ATTEMPTS]
            return before - len(items)
        dropped = self._mutate(_prune)
        if dropped:
            logger.warning("offline_queue_pruned dropped=%s", dropped)
        return dropped

    def clear_queue(self):
        with FILE_LOCK:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

    def record_failure(self, item: Dict, error: str) -> bool:
        """
        Count a failed replay of a dequeued item.

        Returns True if the item went back to the head of the queue, False if
        it hit MAX_ATTEMPTS and was dropped.
        """
        attempts = int(item.get("attempts", 0)) + 1
        failed = dict(item, attempts=attempts, last_error=error, updated_at=_now_ms())
        if attempts >= MAX_ATTEMPTS:
            self.remove_item(item["id"])
            logger.error("offline_queue_item_dropped id=%s attempts=%s error=%s",
                         item["id"], attempts, error)
            return False
        self.requeue_front(failed)
        return True

    def flush(self, save_batch: Callable[[List[Dict]], object], batch_size: int = BATCH_SIZE) -> FlushResult:
        """
        Replay queued saves through `save_batch` in batches.

        A batch that raises is put back at the head with its attempts
        incremented and flushing stops there; the caller decides when to try
        again (see backoff()).
        """
        self.prune_exhausted()
        pending = [q for q in self.get_queue()
                   if q.get("type") == "workout_save" and q.get("attempts", 0) < MAX_ATTEMPTS]
        if not pending:
            return FlushResult(status="done")

        result = FlushResult(status="done")
        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            try:
                save_batch([q["payload"] for q in batch])
            except Exception as e:
                message = str(e) or "Network or server error"
                logger.warning("offline_queue_batch_failed size=%s error=%s", len(batch), message)
                result.status = "error"
                result.last_error = message
                # reversed so the batch keeps its order at the head
                for item in reversed(batch):
                    if not self.record_failure(item, message):
                        result.failed += 1
                break

            self.remove_items(q["id"] for q in batch)
            result.processed += len(batch)
            logger.info("offline_queue_batch_synced size=%s depth=%s", len(batch), self.get_queue_length())

        return result


class ApiBatchSaver:
    """Replays batches against the tracker API's batch-save endpoint."""

    def __init__(self, user_id: str, base_url: Optional[str] = None, timeout: float = 10.0):
        self.user_id = user_id
        self.base_url = (base_url or config.api_base()).rstrip("/")
        self.timeout = timeout

    def __call__(self, payloads: List[Dict]):
        response = requests.post(
            f"{self.base_url}/api/workouts/batch-save",
            json={"workouts": payloads},
            headers={"X-User-Id": str(self.user_id)},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()


_default_queue = OfflineQueue()


def enqueue_workout_save(payload: Dict) -> str:
    return _default_queue.enqueue_workout_save(payload)


def dequeue() -> Optional[Dict]:
    return _default_queue.dequeue()


def get_queue() -> List[Dict]:
    return _default_queue.get_queue()


def get_queue_length() -> int:
    return _default_queue.get_queue_length()


def read_queue() -> List[Dict]:
    return _default_queue.read_queue()


def write_queue(items: List[Dict]):
    _default_queue.write_queue(items)


def requeue_front(item: Dict):
    _default_queue.requeue_front(item)


def update_item(item_id: str, **patch) -> Optional[Dict]:
    return _default_queue.update_item(item_id, **patch)


def remove_item(item_id: str):
    _default_queue.remove_item(item_id)


def prune_exhausted() -> int:
    return _default_queue.prune_exhausted()


def clear_queue():
    _default_queue.clear_queue()


def flush_queue(save_batch: Callable[[List[Dict]], object], batch_size: int = BATCH_SIZE) -> FlushResult:
    return _default_queue.flush(save_batch, batch_size=batch_size)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Replay queued offline workout saves")
    parser.add_argument("--user-id", required=True, help="User the queued saves belong to")
    parser.add_argument("--api-base", default=None, help="Tracker API base URL")
    args = parser.parse_args(argv)

    config.configure_logging()
    depth = get_queue_length()
    print(f"Offline queue depth: {depth}")
    if depth == 0:
        return 0

    result = flush_queue(ApiBatchSaver(args.user_id, base_url=args.api_base))
    print(f"Synced {result.processed} workout(s), dropped {result.failed}")
    if result.status == "error":
        print(f"Last error: {result.last_error}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
