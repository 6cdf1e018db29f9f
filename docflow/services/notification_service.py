"""Run notifications: an audit event plus an optional webhook call."""

from typing import Any, Dict, Optional
from uuid import UUID

import httpx

from docflow.core.exceptions import ValidationError
from docflow.repositories.run_repository import RunRepository
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

NOTIFICATION_EVENTS = ("needs_review", "delivered", "failed", "cancelled")


class NotificationService:
    """Records notifications as RunEvents and forwards them to a webhook.

    Webhook failures are logged and reported in the return value; they do
    not fail the stage.
    """

    def __init__(
        self,
        run_repository: RunRepository,
        webhook_url: str = "",
        timeout: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.run_repository = run_repository
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.transport = transport

    async def notify(
        self,
        run_id: UUID,
        event: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if event not in NOTIFICATION_EVENTS:
            raise ValidationError(f"Unknown notification event: {event}")

        payload = {"run_id": str(run_id), "event": event, **(details or {})}
        await self.run_repository.emit_event(run_id, f"notification.{event}", payload)

        webhook_status = None
        if self.webhook_url:
            webhook_status = await self._post_webhook(payload)

        LOGGER.info(
            f"Notification {event} for run {run_id}",
            extra={"webhook_status": webhook_status}
        )
        return {"event": event, "webhook_status": webhook_status}

    async def _post_webhook(self, payload: Dict[str, Any]) -> Optional[int]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.webhook_url, json=payload)
            if response.status_code >= 400:
                LOGGER.warning(
                    f"Notification webhook returned {response.status_code}",
                    extra={"event": payload.get("event")}
                )
            return response.status_code
        except httpx.HTTPError as e:
            LOGGER.warning(f"Notification webhook failed: {e}", extra={"event": payload.get("event")})
            return None
