"""Stage progress projection for receipt processing.

Server-side extraction is a single request, but users are shown a
sequence of stages while it runs. This module splits that into two
pieces:

``StageProjector``
    A pure state machine over the stage tables below. It knows nothing
    about time. The track (with or without the AI ``analyzing`` stage)
    is selected once, when the upload response is available. Progress
    never moves backwards and stages are never skipped.

``StageNarrator``
    Paces the projector. It runs the upload concurrently with the
    uploading stage's minimum duration, waits for the real response,
    then walks the selected track with each stage's duration. Elapsed
    time is cosmetic: nothing past ``uploading`` is shown until the real
    response has arrived. The sleep function is injected so tests can
    use a fake clock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from snaptrack.core.config import settings
from snaptrack.core.errors import ApiError, NetworkError, StageTransitionError
from snaptrack.models.enums import ProcessingStage

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StageInfo:
    stage: ProcessingStage
    percent: int
    duration_ms: int
    message: str


@dataclass(frozen=True)
class StageSnapshot:
    stage: ProcessingStage
    percent: int
    message: str
    ai_track: Optional[bool] = None
    sub_message: Optional[str] = None


AI_TRACK: Tuple[StageInfo, ...] = (
    StageInfo(ProcessingStage.UPLOADING, 15, 500, "Uploading receipt image..."),
    StageInfo(ProcessingStage.SCANNING, 35, 1500, "Scanning text with OCR..."),
    StageInfo(ProcessingStage.ANALYZING, 80, 2500, "Analyzing with SnapTrack AI..."),
    StageInfo(ProcessingStage.EXTRACTING, 95, 500, "Extracting final details..."),
    StageInfo(ProcessingStage.COMPLETE, 100, 500, "AI-enhanced processing complete!"),
)

STANDARD_TRACK: Tuple[StageInfo, ...] = (
    StageInfo(ProcessingStage.UPLOADING, 15, 500, "Uploading receipt image..."),
    StageInfo(ProcessingStage.SCANNING, 60, 1500, "Scanning text with OCR..."),
    StageInfo(ProcessingStage.EXTRACTING, 95, 800, "Extracting receipt details..."),
    StageInfo(ProcessingStage.COMPLETE, 100, 500, "Processing complete!"),
)

UPLOADING = STANDARD_TRACK[0]
ERROR_MESSAGE = "Processing failed"


def track_for(ai_enhanced: bool) -> Tuple[StageInfo, ...]:
    return AI_TRACK if ai_enhanced else STANDARD_TRACK


def describe_failure(exc: BaseException) -> str:
    """User-facing message for a failed upload."""
    if isinstance(exc, NetworkError):
        return "Network connection failed. Please check your internet connection."
    if isinstance(exc, ApiError):
        if exc.status and exc.status >= 500:
            return "Server is temporarily unavailable. Please try again."
        return exc.message or ERROR_MESSAGE
    return str(exc) or ERROR_MESSAGE


class StageProjector:
    """Deterministic stage state machine for one processing attempt."""

    def __init__(self) -> None:
        self._track: Optional[Tuple[StageInfo, ...]] = None
        self._stage = ProcessingStage.UPLOADING
        self._percent = 0
        self._message = UPLOADING.message
        self._sub_message: Optional[str] = None
        self.history: List[StageSnapshot] = [self.snapshot()]

    @property
    def stage(self) -> ProcessingStage:
        return self._stage

    @property
    def percent(self) -> int:
        return self._percent

    @property
    def ai_track(self) -> Optional[bool]:
        if self._track is None:
            return None
        return self._track is AI_TRACK

    @property
    def is_terminal(self) -> bool:
        return self._stage in (ProcessingStage.COMPLETE, ProcessingStage.ERROR)

    def snapshot(self) -> StageSnapshot:
        return StageSnapshot(
            stage=self._stage,
            percent=self._percent,
            message=self._message,
            ai_track=self.ai_track,
            sub_message=self._sub_message,
        )

    def current_info(self) -> StageInfo:
        track = self._track or STANDARD_TRACK
        for info in track:
            if info.stage is self._stage:
                return info
        raise StageTransitionError(f"stage {self._stage.value} has no timing information")

    def select_track(self, ai_enhanced: bool) -> Tuple[StageInfo, ...]:
        if self._track is not None:
            raise StageTransitionError("track already selected")
        if self._stage is not ProcessingStage.UPLOADING:
            raise StageTransitionError(f"cannot select a track from {self._stage.value}")
        self._track = track_for(ai_enhanced)
        return self._track

    def advance(self, sub_message: Optional[str] = None) -> StageSnapshot:
        """Move to the next stage on the selected track."""
        if self.is_terminal:
            raise StageTransitionError(f"cannot advance from terminal stage {self._stage.value}")
        if self._track is None:
            raise StageTransitionError("track not selected; the upload response has not arrived")
        stages = [info.stage for info in self._track]
        nxt = self._track[stages.index(self._stage) + 1]
        return self._enter(nxt.stage, max(self._percent, nxt.percent), nxt.message, sub_message)

    def fail(self, message: str = ERROR_MESSAGE) -> StageSnapshot:
        """Enter the error state; the last reached percentage is kept."""
        if self._stage is ProcessingStage.ERROR:
            raise StageTransitionError("already in error")
        return self._enter(ProcessingStage.ERROR, self._percent, message or ERROR_MESSAGE, None)

    def _enter(self, stage: ProcessingStage, percent: int, message: str, sub_message: Optional[str]) -> StageSnapshot:
        if percent < self._percent:
            raise StageTransitionError(f"progress cannot go backwards ({self._percent} -> {percent})")
        self._stage = stage
        self._percent = percent
        self._message = message
        self._sub_message = sub_message
        snap = self.snapshot()
        self.history.append(snap)
        return snap


Sleep = Callable[[float], Awaitable[None]]
StageListener = Callable[[StageSnapshot], None]


def _consume_result(task: "asyncio.Future") -> None:
    # The task may finish after the narrator stopped waiting (abandoned session)
    if not task.cancelled():
        task.exception()


class StageNarrator:
    """Drives a ``StageProjector`` alongside the real upload."""

    def __init__(self, sleep: Sleep = asyncio.sleep, pacing_scale: Optional[float] = None) -> None:
        self._sleep = sleep
        self._scale = settings.STAGE_PACING_SCALE if pacing_scale is None else pacing_scale

    async def run(
        self,
        upload: Awaitable[T],
        classify: Callable[[T], bool],
        on_stage: Optional[StageListener] = None,
        projector: Optional[StageProjector] = None,
        completion_note: Optional[Callable[[T], Optional[str]]] = None,
    ) -> T:
        """Narrate the stages of ``upload`` and return its result.

        ``classify`` receives the upload result and returns whether the
        AI track applies. Upload failures move the projector to ``error``
        and are re-raised.
        """
        projector = projector or StageProjector()
        emit = on_stage or (lambda _snap: None)
        emit(projector.snapshot())

        upload_task = asyncio.ensure_future(upload)
        upload_task.add_done_callback(_consume_result)
        try:
            await self._pause(UPLOADING.duration_ms)
            result = await upload_task
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.info("[progress] upload failed: %s", exc)
            emit(projector.fail(describe_failure(exc)))
            raise

        projector.select_track(classify(result))
        while not projector.is_terminal:
            info_stage = projector.advance()
            if info_stage.stage is ProcessingStage.COMPLETE and completion_note is not None:
                # Replace the bare completion snapshot with one carrying the note
                info_stage = StageSnapshot(
                    stage=info_stage.stage,
                    percent=info_stage.percent,
                    message=info_stage.message,
                    ai_track=info_stage.ai_track,
                    sub_message=completion_note(result),
                )
                projector.history[-1] = info_stage
            emit(info_stage)
            if not projector.is_terminal:
                await self._pause(projector.current_info().duration_ms)
        return result

    async def _pause(self, duration_ms: int) -> None:
        seconds = duration_ms / 1000.0 * self._scale
        if seconds > 0:
            await self._sleep(seconds)
