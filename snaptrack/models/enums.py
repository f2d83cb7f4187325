"""Enumeration types used throughout the capture pipeline.

Enumerations constrain the values that flow between the session
controller, the progress projector and the offline queue, and keep the
serialised queue format readable.

When modifying these enums make sure persisted queue items written by
older versions still deserialise.
"""

from enum import Enum


class ImageSource(str, Enum):
    """Where a receipt image was acquired from."""

    CAMERA = "camera"
    LIBRARY = "library"


class ProcessingStage(str, Enum):
    """User-visible stages while a receipt is processed server-side."""

    UPLOADING = "uploading"
    SCANNING = "scanning"
    ANALYZING = "analyzing"
    EXTRACTING = "extracting"
    COMPLETE = "complete"
    ERROR = "error"


class SessionState(str, Enum):
    """Lifecycle of a single capture session."""

    IDLE = "idle"
    PROCESSING = "processing"
    EDITING = "editing"
    SAVING = "saving"
    SAVED_REMOTE = "saved_remote"
    SAVED_OFFLINE = "saved_offline"
    FAILED = "failed"


class SaveStrategy(str, Enum):
    """How a save attempt is persisted."""

    UPDATE_REMOTE = "update_remote"
    ENQUEUE_OFFLINE = "enqueue_offline"
