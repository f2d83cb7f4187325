"""Offline queue drain.

Submits receipts saved while offline. Each queued item is uploaded
once from its stored image copy. The expense id the server returns is
saved on the item before the user's edited fields are applied with an
update, so a retry never creates a second expense. Successful items are
removed; an upload without a usable id counts as a failure. A failure
replaces the item with a copy whose ``attempts`` is incremented. Items
that reached the attempt limit are left in place and skipped so nothing
the user entered is lost.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from snaptrack.core.config import settings
from snaptrack.core.errors import ApiError, PipelineError
from snaptrack.core.observability import sentry_breadcrumb, sentry_capture_exception
from snaptrack.core.ports import ConnectivityOracle, QueueStorage
from snaptrack.models.schemas import OfflineQueueItem
from snaptrack.services.normalizer import extract_remote_id, is_placeholder_id
from snaptrack.services.receipt_api import ReceiptApi

logger = logging.getLogger(__name__)


@dataclass
class DrainReport:
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    offline: bool = False

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.skipped)


class OfflineQueueDrainer:
    def __init__(
        self,
        api: ReceiptApi,
        queue: QueueStorage,
        connectivity: ConnectivityOracle,
        max_attempts: Optional[int] = None,
    ) -> None:
        self._api = api
        self._queue = queue
        self._connectivity = connectivity
        self._max_attempts = max_attempts or settings.OFFLINE_QUEUE_MAX_ATTEMPTS

    async def pending_count(self) -> int:
        """Number of queued items still eligible for another attempt."""
        items = await self._queue.drain_all()
        return sum(1 for item in items if item.attempts < self._max_attempts)

    async def drain(self) -> DrainReport:
        report = DrainReport()
        if not await self._connectivity.is_connected():
            logger.info("[drain] offline; leaving queue untouched")
            report.offline = True
            return report

        items = await self._queue.drain_all()
        logger.info("[drain] processing %d queued item(s)", len(items))
        for item in items:
            if item.attempts >= self._max_attempts:
                report.skipped.append(item.item_id)
                continue
            current = item
            try:
                current = await self._ensure_uploaded(item)
                await self._apply_edits(current)
            except (PipelineError, OSError) as exc:
                # OSError: the stored image copy is gone or unreadable
                await self._record_failure(current, exc)
                report.failed.append(item.item_id)
                continue
            await self._queue.remove(current)
            report.succeeded.append(item.item_id)

        sentry_breadcrumb(
            "queue",
            "offline queue drained",
            data={"succeeded": len(report.succeeded), "failed": len(report.failed), "skipped": len(report.skipped)},
        )
        return report

    async def _ensure_uploaded(self, item: OfflineQueueItem) -> OfflineQueueItem:
        """Upload the image unless a previous drain already did.

        The server id is written back to the queue immediately, so a
        failing update is retried without creating a second expense.
        """
        if item.remote_id is not None:
            return item
        fields = item.fields
        response = await self._api.submit(item.image, fields.entity, fields.tags, fields.notes)
        remote_id = extract_remote_id(response)
        if remote_id is None or is_placeholder_id(remote_id):
            raise ApiError("Upload returned no expense id", None, "MISSING_EXPENSE_ID")
        uploaded = item.model_copy(update={"remote_id": remote_id})
        await self._queue.replace(item, uploaded)
        return uploaded

    async def _apply_edits(self, item: OfflineQueueItem) -> None:
        if item.fields.missing_required():
            return
        await self._api.update(item.remote_id, item.fields)
        logger.info("[drain] %s submitted as expense %s", item.item_id, item.remote_id)

    async def _record_failure(self, item: OfflineQueueItem, exc: Exception) -> None:
        logger.warning("[drain] %s failed (attempt %d): %s", item.item_id, item.attempts + 1, exc)
        sentry_capture_exception(exc, "queue_drain", {"item_id": item.item_id, "attempts": item.attempts + 1})
        updated = item.model_copy(update={"attempts": item.attempts + 1, "last_error": str(exc)})
        await self._queue.replace(item, updated)
