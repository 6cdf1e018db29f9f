"""HTTP client for the downstream ERP endpoint."""

from typing import Any, Dict, Optional

import httpx

from docflow.core.exceptions import APIClientError, APITimeoutError, ValidationError
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class ErpClient:
    """Pushes extraction payloads to the ERP.

    5xx and network errors raise ``APIClientError`` so Temporal retries the
    activity. A 4xx means the ERP rejected the payload and is not retried.
    """

    def __init__(
        self,
        endpoint_url: str,
        api_key: str = "",
        timeout: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint_url = endpoint_url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.endpoint_url)

    async def push(self, payload: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.endpoint_url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise APITimeoutError(f"ERP request timed out: {e}", original_error=e)
        except httpx.HTTPError as e:
            raise APIClientError(f"ERP request failed: {e}", original_error=e)

        if response.status_code >= 500:
            LOGGER.warning(
                f"ERP returned {response.status_code}",
                extra={"idempotency_key": idempotency_key}
            )
            raise APIClientError(f"ERP server error {response.status_code}: {response.text}")
        if response.status_code >= 400:
            LOGGER.error(
                f"ERP rejected payload: {response.text}",
                extra={"status_code": response.status_code, "idempotency_key": idempotency_key}
            )
            raise ValidationError(f"ERP rejected payload ({response.status_code}): {response.text}")

        try:
            return response.json()
        except ValueError:
            return {"status_code": response.status_code}
