"""Pydantic schemas for the records that flow through the pipeline.

Pydantic models validate and serialise data that crosses a boundary:
the editable receipt fields the user changes, the normalised view of an
extraction response, the in-flight submission record and the offline
queue item persisted to disk. Coercion rules (amount parsing, tag
normalisation, ISO dates) live on the models so every path that builds
fields, whether from a server response, a user edit or a reloaded
queue file, applies the same rules.

The offline queue's on-disk format is the JSON dump of
``OfflineQueueItem``; keep changes backwards compatible.
"""

from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from snaptrack.models.enums import ImageSource, ProcessingStage
from snaptrack.utils.helpers import is_blank, normalize_tags, parse_amount, parse_iso_date

DEFAULT_ENTITY = "Personal"


def new_local_id() -> str:
    return f"local_{uuid.uuid4().hex}"


class CapturedImage(BaseModel):
    """Handle to a captured receipt image.

    ``uri`` is a file path; ``data`` optionally holds the bytes in memory
    (a blob reference) and is never serialised.
    """

    model_config = ConfigDict(frozen=True)

    uri: str
    source: ImageSource = ImageSource.CAMERA
    content_type: str = "image/jpeg"
    filename: str = "receipt.jpg"
    data: Optional[bytes] = Field(default=None, exclude=True, repr=False)

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        return Path(self.uri).read_bytes()


class ReceiptFields(BaseModel):
    """The normalised, user-editable receipt record."""

    model_config = ConfigDict(validate_assignment=True)

    vendor: str = ""
    amount: Optional[Decimal] = None
    date: dt.date = Field(default_factory=dt.date.today)
    entity: str = DEFAULT_ENTITY
    tags: Tuple[str, ...] = ()
    notes: str = ""

    @field_validator("vendor", "entity", mode="before")
    @classmethod
    def _strip_text(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator("notes", mode="before")
    @classmethod
    def _coerce_notes(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, v: Any) -> Optional[Decimal]:
        return parse_amount(v)

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, v: Any) -> dt.date:
        if is_blank(v):
            return dt.date.today()
        parsed = parse_iso_date(v)
        if parsed is None:
            raise ValueError("date must be an ISO-8601 date")
        return parsed

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, v: Any) -> Tuple[str, ...]:
        return normalize_tags(v)

    def missing_required(self) -> Dict[str, str]:
        """Return field-level messages for required fields that are empty."""
        errors: Dict[str, str] = {}
        if not self.vendor:
            errors["vendor"] = "Vendor is required."
        if self.amount is None:
            errors["amount"] = "Amount is required."
        return errors

    def to_update_payload(self) -> Dict[str, Any]:
        """Body for ``PATCH /api/expenses/{id}`` in the backend's field names."""
        return {
            "vendor": self.vendor,
            "amount": float(self.amount) if self.amount is not None else 0.0,
            "expense_date": self.date.isoformat(),
            "entity": self.entity,
            "tags": list(self.tags),
            "notes": self.notes,
            "updated_at": dt.datetime.now(dt.timezone.utc).isoformat(),
        }


class Confidence(BaseModel):
    """Extraction confidence in both conventions consumers need."""

    model_config = ConfigDict(frozen=True)

    fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    percent: int = Field(default=0, ge=0, le=100)


class NormalizedReceipt(BaseModel):
    """Canonical view of an extraction response, whatever its layout."""

    fields: ReceiptFields
    confidence: Confidence = Field(default_factory=Confidence)
    ai_enhanced: bool = False
    ai_triggers: Tuple[str, ...] = ()
    ai_reasoning: str = ""
    remote_id: Optional[str] = None


class SubmissionRecord(BaseModel):
    """In-flight / completed representation of one receipt transaction.

    ``remote_id`` is only populated once an upload returned 2xx with a real
    server id; updates must never be issued against ``local_id``.
    """

    local_id: str = Field(default_factory=new_local_id)
    remote_id: Optional[str] = None
    fields: ReceiptFields = Field(default_factory=ReceiptFields)
    confidence: Confidence = Field(default_factory=Confidence)
    ai_enhanced: bool = False
    stage: ProcessingStage = ProcessingStage.UPLOADING


class OfflineQueueItem(BaseModel):
    """Durable snapshot of an edited receipt waiting to be submitted.

    Items are immutable once enqueued; the drain process replaces an item
    with an updated copy rather than mutating it in place.
    """

    model_config = ConfigDict(frozen=True)

    item_id: str = Field(default_factory=lambda: f"offline_{uuid.uuid4().hex}")
    local_id: str
    fields: ReceiptFields
    image: CapturedImage
    enqueued_at_ns: int
    attempts: int = 0
    last_error: Optional[str] = None
    # Set once the image upload succeeded; later attempts only apply the update
    remote_id: Optional[str] = None
