"""Durable filesystem-backed offline queue.

Layout under the queue directory::

    queue.json          JSON list of serialised ``OfflineQueueItem``
    images/<item>_<name> copies of the captured images

The index is rewritten atomically (temp file, fsync, ``os.replace``) so a
crash leaves either the old or the new index on disk, never a partial
one. Image copies are made before the index write and removed again if
that write fails. All mutations are serialised with an ``asyncio.Lock``;
blocking file I/O runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from snaptrack.core.config import settings
from snaptrack.core.errors import QueueError
from snaptrack.models.schemas import CapturedImage, OfflineQueueItem

logger = logging.getLogger(__name__)

T = TypeVar("T")

INDEX_FILENAME = "queue.json"
IMAGES_DIRNAME = "images"


def _normalise_filename(filename: str) -> str:
    keepchars = {"-", "_", "."}
    cleaned = "".join(c for c in filename if c.isalnum() or c in keepchars)
    return cleaned or "receipt.jpg"


class FileOfflineQueue:
    """``QueueStorage`` implementation writing to a local directory."""

    def __init__(self, directory: Optional[str] = None) -> None:
        self.directory = Path(directory or settings.OFFLINE_QUEUE_DIRECTORY)
        self.index_path = self.directory / INDEX_FILENAME
        self.images_dir = self.directory / IMAGES_DIRNAME
        self._lock = asyncio.Lock()
        self._last_enqueued_ns: Optional[int] = None

    # ------------------------------------------------------------------
    # QueueStorage

    async def append(self, item: OfflineQueueItem) -> OfflineQueueItem:
        return await self._locked(self._append_sync, "Could not save receipt offline", item)

    async def drain_all(self) -> List[OfflineQueueItem]:
        items, _unreadable = await self._locked(self._read_index, "Could not read offline queue")
        return sorted(items, key=lambda i: i.enqueued_at_ns)

    async def remove(self, item: OfflineQueueItem) -> None:
        await self._locked(self._remove_sync, "Could not remove queued item", item)

    async def replace(self, old: OfflineQueueItem, new: OfflineQueueItem) -> None:
        await self._locked(self._replace_sync, "Could not update queued item", old, new)

    async def pending_count(self) -> int:
        return len(await self.drain_all())

    async def _locked(self, func: Callable[..., T], message: str, *args: Any) -> T:
        async with self._lock:
            try:
                return await asyncio.to_thread(func, *args)
            except (OSError, ValueError) as exc:
                # ValueError covers a corrupt index (JSONDecodeError) and bad items
                logger.error("[queue] %s: %s", message.lower(), exc)
                raise QueueError(f"{message}: {exc}") from exc

    # ------------------------------------------------------------------
    # Synchronous helpers (run in a worker thread)

    def _read_index(self) -> Tuple[List[OfflineQueueItem], List[Any]]:
        """Return readable items plus the raw entries that failed to parse.

        Unreadable entries (e.g. written by a newer version) are carried
        over verbatim on every rewrite so they are never lost.
        """
        if not self.index_path.exists():
            return [], []
        raw = json.loads(self.index_path.read_text(encoding="utf-8") or "[]")
        if not isinstance(raw, list):
            raise ValueError("queue index is not a JSON list")
        items: List[OfflineQueueItem] = []
        unreadable: List[Any] = []
        for entry in raw:
            try:
                items.append(OfflineQueueItem.model_validate(entry))
            except ValueError as exc:
                logger.warning("[queue] keeping unreadable entry as is: %s", exc)
                unreadable.append(entry)
        return items, unreadable

    def _write(self, items: List[OfflineQueueItem], unreadable: List[Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([i.model_dump(mode="json") for i in items] + unreadable, indent=2)
        tmp_path = self.index_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, self.index_path)

    def _next_timestamp(self, existing: List[OfflineQueueItem]) -> int:
        last = self._last_enqueued_ns
        if existing:
            newest = max(i.enqueued_at_ns for i in existing)
            last = newest if last is None else max(last, newest)
        now = time.time_ns()
        stamp = now if last is None else max(now, last + 1)
        self._last_enqueued_ns = stamp
        return stamp

    def _copy_image(self, item: OfflineQueueItem) -> CapturedImage:
        self.images_dir.mkdir(parents=True, exist_ok=True)
        target = self.images_dir / f"{item.item_id}_{_normalise_filename(item.image.filename)}"
        if item.image.data is not None:
            target.write_bytes(item.image.data)
        else:
            shutil.copyfile(item.image.uri, target)
        return item.image.model_copy(update={"uri": str(target), "data": None})

    def _append_sync(self, item: OfflineQueueItem) -> OfflineQueueItem:
        items, unreadable = self._read_index()
        image = self._copy_image(item)
        stored = item.model_copy(update={"image": image, "enqueued_at_ns": self._next_timestamp(items)})
        try:
            self._write(items + [stored], unreadable)
        except OSError:
            Path(image.uri).unlink(missing_ok=True)
            raise
        logger.info("[queue] enqueued %s (%d pending)", stored.item_id, len(items) + 1)
        return stored

    def _remove_sync(self, item: OfflineQueueItem) -> None:
        items, unreadable = self._read_index()
        remaining = [i for i in items if i.item_id != item.item_id]
        if len(remaining) == len(items):
            return
        self._write(remaining, unreadable)
        image_path = Path(item.image.uri)
        if image_path.parent == self.images_dir:
            image_path.unlink(missing_ok=True)
        logger.info("[queue] removed %s", item.item_id)

    def _replace_sync(self, old: OfflineQueueItem, new: OfflineQueueItem) -> None:
        items, unreadable = self._read_index()
        if not any(i.item_id == old.item_id for i in items):
            raise QueueError(f"queued item {old.item_id} not found")
        self._write([new if i.item_id == old.item_id else i for i in items], unreadable)
