"""Capture session controller.

A ``CaptureSession`` owns one receipt from image acquisition to a durable
save. Extraction never blocks manual entry: when the upload fails the
session still moves to ``editing`` with default fields and records the
failure in ``processing_error``.

Saves follow a single decision function, ``decide_save_strategy``. The
upload endpoint is the only way an expense is created on the server, so
an update is only issued against a real server id returned by a
successful upload. Everything else, including saves while offline, goes
to the durable offline queue.

Results are tagged with an attempt id. A result that arrives after
``restart()`` started a new attempt, or after ``dispose()``, is dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from snaptrack.core.config import settings
from snaptrack.core.errors import (
    ApiError,
    InvalidSessionStateError,
    PipelineError,
    QueueError,
    SaveInProgressError,
    SessionDisposedError,
    ValidationError,
)
from snaptrack.core.observability import sentry_breadcrumb, sentry_capture_exception
from snaptrack.core.ports import ConnectivityOracle, ImageSourcePort, QueueStorage
from snaptrack.models.enums import ProcessingStage, SaveStrategy, SessionState
from snaptrack.models.schemas import CapturedImage, OfflineQueueItem, ReceiptFields, SubmissionRecord
from snaptrack.services.normalizer import detect_ai_enhancement, is_placeholder_id, normalize
from snaptrack.services.progress import StageNarrator, StageProjector, StageSnapshot, describe_failure
from snaptrack.services.receipt_api import ReceiptApi

logger = logging.getLogger(__name__)

SERVER_UNAVAILABLE_MESSAGE = "Server is temporarily unavailable. You can enter the details manually."

EDITABLE_FIELDS = frozenset(ReceiptFields.model_fields)


def decide_save_strategy(connected: bool, remote_id: Optional[str]) -> SaveStrategy:
    """Pick how a validated save is persisted.

    Offline, or without a real server id, the receipt is queued. Only a
    connected session holding an id from a successful upload updates the
    remote expense.
    """
    if not connected:
        return SaveStrategy.ENQUEUE_OFFLINE
    if remote_id is None or is_placeholder_id(remote_id):
        return SaveStrategy.ENQUEUE_OFFLINE
    return SaveStrategy.UPDATE_REMOTE


@dataclass
class SaveResult:
    strategy: SaveStrategy
    state: SessionState
    remote_id: Optional[str] = None
    queued_item: Optional[OfflineQueueItem] = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CaptureSession:
    """Drives one receipt through capture, extraction, editing and save."""

    def __init__(
        self,
        api: ReceiptApi,
        queue: QueueStorage,
        connectivity: ConnectivityOracle,
        *,
        narrator: Optional[StageNarrator] = None,
        default_entity: Optional[str] = None,
        check_health: bool = True,
        on_stage: Optional[Callable[[StageSnapshot], None]] = None,
    ) -> None:
        self._api = api
        self._queue = queue
        self._connectivity = connectivity
        self._narrator = narrator or StageNarrator()
        self._default_entity = default_entity or settings.DEFAULT_ENTITY
        self._check_health = check_health
        self._on_stage = on_stage

        self._state = SessionState.IDLE
        self._record: Optional[SubmissionRecord] = None
        self._image: Optional[CapturedImage] = None
        self._projector: Optional[StageProjector] = None
        self._upload_options: Dict[str, Any] = {}
        self._processing_error: Optional[str] = None
        self._attempt_id = 0
        self._saving = False
        self._disposed = False

    # ------------------------------------------------------------------
    # Read-only views

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def record(self) -> Optional[SubmissionRecord]:
        return self._record

    @property
    def image(self) -> Optional[CapturedImage]:
        return self._image

    @property
    def stage(self) -> Optional[StageSnapshot]:
        return self._projector.snapshot() if self._projector else None

    @property
    def processing_error(self) -> Optional[str]:
        return self._processing_error

    @property
    def attempt_id(self) -> int:
        return self._attempt_id

    @property
    def disposed(self) -> bool:
        return self._disposed

    # ------------------------------------------------------------------
    # Processing

    async def capture(
        self,
        image_source: ImageSourcePort,
        entity: Optional[str] = None,
        tags: Union[str, Iterable[str], None] = None,
        notes: Optional[str] = None,
    ) -> Optional[SubmissionRecord]:
        """Acquire an image and process it; None when the user cancelled."""
        self._ensure_alive()
        self._require_state(SessionState.IDLE)
        image = await image_source.acquire()
        if image is None:
            logger.info("[session] image acquisition cancelled")
            return None
        return await self.process(image, entity=entity, tags=tags, notes=notes)

    async def process(
        self,
        image: CapturedImage,
        entity: Optional[str] = None,
        tags: Union[str, Iterable[str], None] = None,
        notes: Optional[str] = None,
    ) -> Optional[SubmissionRecord]:
        """Upload ``image`` for extraction and seed the editable fields."""
        self._ensure_alive()
        self._require_state(SessionState.IDLE)
        self._image = image
        self._upload_options = {
            "entity": entity or self._default_entity,
            "tags": tags,
            "notes": notes,
        }
        return await self._run_attempt()

    async def restart(self) -> Optional[SubmissionRecord]:
        """Start a fresh upload after a processing error."""
        self._ensure_alive()
        if self._processing_error is None or self._image is None or self._state is not SessionState.EDITING:
            raise InvalidSessionStateError("restart is only available after a processing error")
        logger.info("[session] restarting processing")
        # Keep whatever was typed during manual entry in case the retry fails too
        return await self._run_attempt(seed=self._current_record())

    async def _run_attempt(self, seed: Optional[SubmissionRecord] = None) -> Optional[SubmissionRecord]:
        if self._image is None:
            raise InvalidSessionStateError("no image to process")
        self._attempt_id += 1
        attempt = self._attempt_id
        image = self._image
        options = self._upload_options

        self._state = SessionState.PROCESSING
        self._processing_error = None
        if seed is None:
            self._record = SubmissionRecord(fields=self._default_fields())
        else:
            self._record = SubmissionRecord(local_id=seed.local_id, fields=seed.fields)
        projector = StageProjector()
        self._projector = projector
        emit = self._listener_for(attempt)

        if self._check_health and not await self._server_healthy():
            if self._is_stale(attempt):
                return None
            emit(projector.fail(SERVER_UNAVAILABLE_MESSAGE))
            self._degrade(ApiError(SERVER_UNAVAILABLE_MESSAGE, 503, "SERVER_UNAVAILABLE"))
            return self._record

        try:
            raw = await self._narrator.run(
                self._api.submit(image, options["entity"], options["tags"], options["notes"]),
                classify=lambda body: detect_ai_enhancement(body)[0],
                on_stage=emit,
                projector=projector,
                completion_note=self._completion_note,
            )
        except Exception as exc:
            if self._is_stale(attempt):
                logger.debug("[session] dropping failure from superseded attempt %d", attempt)
                return None
            self._degrade(exc)
            return self._record

        if self._is_stale(attempt):
            logger.debug("[session] dropping result from superseded attempt %d", attempt)
            return None
        self._apply_result(raw)
        return self._record

    async def _server_healthy(self) -> bool:
        try:
            return bool(await self._api.health())
        except Exception as exc:
            logger.warning("[session] health check raised, treating server as unavailable: %s", exc)
            return False

    def _apply_result(self, raw: Dict[str, Any]) -> None:
        normalized = normalize(raw, self._upload_options["entity"])
        fields = normalized.fields
        # The server may not echo what the user typed before uploading
        if not fields.tags and self._upload_options["tags"]:
            fields.tags = self._upload_options["tags"]
        if not fields.notes and self._upload_options["notes"]:
            fields.notes = self._upload_options["notes"]

        remote_id = normalized.remote_id
        if remote_id is not None and is_placeholder_id(remote_id):
            logger.warning("[session] ignoring placeholder id %s from upload response", remote_id)
            remote_id = None

        self._record = self._current_record().model_copy(
            update={
                "remote_id": remote_id,
                "fields": fields,
                "confidence": normalized.confidence,
                "ai_enhanced": normalized.ai_enhanced,
                "stage": ProcessingStage.COMPLETE,
            }
        )
        self._state = SessionState.EDITING
        logger.info(
            "[session] extraction complete remote_id=%s ai_enhanced=%s confidence=%d%%",
            remote_id,
            normalized.ai_enhanced,
            normalized.confidence.percent,
        )

    def _degrade(self, exc: BaseException) -> None:
        self._processing_error = describe_failure(exc)
        logger.warning("[session] processing failed, falling back to manual entry: %s", exc)
        sentry_breadcrumb("session", "processing failed", level="warning", data={"error": type(exc).__name__})
        self._record = self._current_record().model_copy(update={"stage": ProcessingStage.ERROR})
        self._state = SessionState.EDITING

    @staticmethod
    def _completion_note(raw: Dict[str, Any]) -> Optional[str]:
        normalized = normalize(raw)
        if not normalized.ai_enhanced:
            return None
        return f"Confidence improved to {normalized.confidence.percent}%"

    def _default_fields(self) -> ReceiptFields:
        options = self._upload_options
        return ReceiptFields(
            entity=options.get("entity") or self._default_entity,
            tags=options.get("tags"),
            notes=options.get("notes"),
        )

    # ------------------------------------------------------------------
    # Editing & saving

    def edit(self, **changes: Any) -> ReceiptFields:
        """Apply user edits to the current fields; returns the new fields."""
        self._ensure_alive()
        self._require_state(SessionState.EDITING, SessionState.FAILED)
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError({name: "Unknown field." for name in sorted(unknown)})
        record = self._current_record()
        merged = {**record.fields.model_dump(), **changes}
        try:
            fields = ReceiptFields.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(
                {str(err["loc"][0]) if err["loc"] else "fields": err["msg"] for err in exc.errors()}
            ) from exc
        self._record = record.model_copy(update={"fields": fields})
        self._state = SessionState.EDITING
        return fields

    async def save(self) -> SaveResult:
        """Persist the edited receipt remotely or to the offline queue.

        Raises ``ValidationError`` before any I/O when vendor or amount is
        missing. Remote and queue failures are returned in
        ``SaveResult.error`` with the session in ``failed`` and the edited
        fields kept.
        """
        self._ensure_alive()
        if self._saving:
            raise SaveInProgressError("A save is already in progress")
        self._require_state(SessionState.EDITING, SessionState.FAILED)
        record = self._current_record()
        errors = record.fields.missing_required()
        if errors:
            self._state = SessionState.EDITING
            raise ValidationError(errors)

        self._saving = True
        self._state = SessionState.SAVING
        try:
            connected = await self._is_connected()
            strategy = decide_save_strategy(connected, record.remote_id)
            logger.info("[session] saving via %s (connected=%s)", strategy.value, connected)
            if strategy is SaveStrategy.UPDATE_REMOTE:
                return await self._save_remote(record)
            return await self._save_offline(record)
        finally:
            self._saving = False
            # Never leave the session stuck in saving, even on cancellation
            if self._state is SessionState.SAVING:
                self._state = SessionState.FAILED

    async def _is_connected(self) -> bool:
        try:
            return bool(await self._connectivity.is_connected())
        except Exception as exc:
            logger.warning("[session] connectivity check failed, assuming offline: %s", exc)
            return False

    async def _save_remote(self, record: SubmissionRecord) -> SaveResult:
        remote_id = record.remote_id
        if remote_id is None:
            raise InvalidSessionStateError("remote update requires a server id")
        try:
            await self._api.update(remote_id, record.fields)
        except Exception as exc:
            error = exc if isinstance(exc, PipelineError) else ApiError(str(exc) or "Update failed", None, "UPDATE_FAILED")
            logger.warning("[session] update of %s failed: %s", remote_id, exc)
            sentry_capture_exception(exc, "session_save_remote", {"remote_id": remote_id})
            self._state = SessionState.FAILED
            return SaveResult(SaveStrategy.UPDATE_REMOTE, self._state, remote_id=remote_id, error=error)
        self._state = SessionState.SAVED_REMOTE
        return SaveResult(SaveStrategy.UPDATE_REMOTE, self._state, remote_id=remote_id)

    async def _save_offline(self, record: SubmissionRecord) -> SaveResult:
        if self._image is None:
            raise InvalidSessionStateError("offline save requires a captured image")
        item = OfflineQueueItem(
            local_id=record.local_id,
            fields=record.fields,
            image=self._image,
            enqueued_at_ns=0,
        )
        try:
            stored = await self._queue.append(item)
        except Exception as exc:
            error = exc if isinstance(exc, PipelineError) else QueueError(f"Could not save receipt offline: {exc}")
            logger.error("[session] offline save failed: %s", exc)
            sentry_capture_exception(exc, "session_save_offline")
            self._state = SessionState.FAILED
            return SaveResult(SaveStrategy.ENQUEUE_OFFLINE, self._state, error=error)
        self._state = SessionState.SAVED_OFFLINE
        return SaveResult(SaveStrategy.ENQUEUE_OFFLINE, self._state, queued_item=stored)

    def _current_record(self) -> SubmissionRecord:
        if self._record is None:
            raise InvalidSessionStateError("no receipt has been processed in this session")
        return self._record

    # ------------------------------------------------------------------
    # Lifecycle

    def dispose(self) -> None:
        """Stop accepting actions; in-flight results are discarded."""
        if self._disposed:
            return
        self._disposed = True
        self._attempt_id += 1
        logger.debug("[session] disposed")

    def _is_stale(self, attempt: int) -> bool:
        return self._disposed or attempt != self._attempt_id

    def _listener_for(self, attempt: int) -> Callable[[StageSnapshot], None]:
        def emit(snapshot: StageSnapshot) -> None:
            if self._is_stale(attempt):
                return
            if self._record is not None:
                self._record = self._record.model_copy(update={"stage": snapshot.stage})
            if self._on_stage is not None:
                self._on_stage(snapshot)

        return emit

    def _ensure_alive(self) -> None:
        if self._disposed:
            raise SessionDisposedError("Capture session has been disposed")

    def _require_state(self, *allowed: SessionState) -> None:
        if self._state not in allowed:
            names = ", ".join(s.value for s in allowed)
            raise InvalidSessionStateError(f"action requires state {names}, session is {self._state.value}")
