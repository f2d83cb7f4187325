"""Remote extraction and update endpoints.

Thin wrappers that turn pipeline operations into ``ApiRequest`` objects
for the gateway. The backend only creates expenses through the upload
endpoint (``POST /api/parse``); edits are applied with
``PATCH /api/expenses/{id}`` against the id the upload returned.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional, Union

from snaptrack.core.config import settings
from snaptrack.core.errors import ApiError, PipelineError
from snaptrack.models.schemas import CapturedImage, ReceiptFields
from snaptrack.services.gateway import ApiRequest, AuthenticatedGateway
from snaptrack.utils.helpers import tags_to_string

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/api/parse"
EXPENSE_PATH = "/api/expenses/{expense_id}"
HEALTH_PATH = "/api/health"


class ReceiptApi:
    def __init__(self, gateway: AuthenticatedGateway) -> None:
        self._gateway = gateway

    def build_submit_request(
        self,
        image: CapturedImage,
        entity: str,
        tags: Union[str, Iterable[str], None] = None,
        notes: Optional[str] = None,
        image_bytes: Optional[bytes] = None,
    ) -> ApiRequest:
        """Build the multipart upload request; each call gets a new idempotency key."""
        payload = image_bytes if image_bytes is not None else image.read_bytes()
        form: Dict[str, Any] = {"entity": entity or settings.DEFAULT_ENTITY}
        tag_text = tags_to_string(tags)
        if tag_text:
            form["tags"] = tag_text
        if notes:
            form["notes"] = notes
        return ApiRequest.idempotent(
            "POST",
            UPLOAD_PATH,
            data=form,
            files={"image": (image.filename, payload, image.content_type)},
        )

    async def submit(
        self,
        image: CapturedImage,
        entity: str,
        tags: Union[str, Iterable[str], None] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Upload a receipt image for extraction and return the raw response."""
        request = self.build_submit_request(image, entity, tags, notes)
        logger.info("[api] uploading receipt source=%s entity=%s", image.source.value, entity)
        return await self._gateway.send(request)

    async def update(self, remote_id: str, fields: ReceiptFields) -> Dict[str, Any]:
        """Apply the user's edits to the expense created by a prior upload."""
        request = ApiRequest.idempotent(
            "PATCH",
            EXPENSE_PATH.format(expense_id=remote_id),
            json_body=fields.to_update_payload(),
        )
        response = await self._gateway.send(request)
        if not isinstance(response.get("expense") or response.get("data"), dict):
            raise ApiError("Invalid response format from server", 200, "INVALID_RESPONSE")
        return response

    async def health(self) -> bool:
        """Return True when the backend reports itself healthy."""
        request = ApiRequest("GET", HEALTH_PATH, anonymous=True, timeout=settings.HEALTH_TIMEOUT_SECONDS)
        try:
            body = await self._gateway.send(request)
        except PipelineError as exc:
            logger.warning("[api] health check failed: %s", exc)
            return False
        status = str(body.get("status", "ok")).lower()
        return status in {"ok", "healthy", "up"}
