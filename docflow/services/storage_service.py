"""Storage service for Supabase Storage blob operations."""

from typing import Any, Dict, Optional

import httpx

from docflow.core.config import settings
from docflow.core.exceptions import APIClientError, APITimeoutError, DocumentNotFoundError
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class StorageService:
    """Uploads, downloads and signs blobs in Supabase storage."""

    def __init__(
        self,
        url: Optional[str] = None,
        service_role_key: Optional[str] = None,
        timeout: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize storage service.

        Args:
            url: Supabase project URL, defaults to settings
            service_role_key: Service role key, defaults to settings
            timeout: Request timeout in seconds
            transport: Optional httpx transport, mainly for tests
        """
        self.url = (url if url is not None else settings.supabase_url).rstrip("/")
        self.service_role_key = service_role_key if service_role_key is not None else settings.supabase_service_role_key
        self.timeout = timeout or settings.http_timeout
        self.transport = transport
        self.base_api_url = f"{self.url}/storage/v1"
        self.headers = {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def upload_bytes(
        self,
        content: bytes,
        bucket: str,
        path: str,
        content_type: str = "application/octet-stream",
        upsert: bool = True,
    ) -> Dict[str, Any]:
        """Upload raw bytes to ``bucket/path``.

        Raises:
            APIClientError: If the upload fails
        """
        upload_url = f"{self.base_api_url}/object/{bucket}/{path}"
        headers = {
            **self.headers,
            "Content-Type": content_type,
            "x-upsert": "true" if upsert else "false",
        }
        try:
            async with self._client() as client:
                response = await client.post(upload_url, headers=headers, content=content)
        except httpx.TimeoutException as e:
            raise APITimeoutError(f"Storage upload timed out: {e}", original_error=e)
        except httpx.HTTPError as e:
            LOGGER.error(f"Error uploading file to Supabase: {str(e)}", exc_info=True)
            raise APIClientError(f"Storage upload error: {str(e)}", original_error=e)

        if response.status_code != 200:
            LOGGER.error(
                f"Failed to upload file to Supabase: {response.text}",
                extra={"bucket": bucket, "path": path, "status_code": response.status_code}
            )
            raise APIClientError(f"Upload failed: {response.text}")

        LOGGER.info(f"Uploaded {len(content)} bytes", extra={"bucket": bucket, "path": path})
        return {"bucket": bucket, "path": path, **response.json()}

    async def download_file(self, bucket: str, path: str) -> bytes:
        """Download ``bucket/path``.

        Raises:
            DocumentNotFoundError: If the object does not exist
            APIClientError: On any other failure
        """
        download_url = f"{self.base_api_url}/object/{bucket}/{path}"
        try:
            async with self._client() as client:
                response = await client.get(download_url, headers=self.headers)
        except httpx.TimeoutException as e:
            raise APITimeoutError(f"Storage download timed out: {e}", original_error=e)
        except httpx.HTTPError as e:
            LOGGER.error(f"Error downloading file from Supabase: {str(e)}", exc_info=True)
            raise APIClientError(f"Storage download error: {str(e)}", original_error=e)

        if response.status_code in (400, 404):
            raise DocumentNotFoundError(f"Object not found: {bucket}/{path}")
        if response.status_code != 200:
            LOGGER.error(
                f"Failed to download file from Supabase: {response.text}",
                extra={"bucket": bucket, "path": path, "status_code": response.status_code}
            )
            raise APIClientError(f"Download failed: {response.text}")
        return response.content

    async def get_signed_url(
        self,
        bucket: str,
        path: str,
        expires_in: int = 3600
    ) -> Dict[str, Any]:
        """Generate a signed URL for ``bucket/path``.

        Returns:
            ``{"signed_url", "storage_path"}``
        """
        url = f"{self.base_api_url}/object/sign/{bucket}/{path}"
        try:
            async with self._client() as client:
                response = await client.post(url, headers=self.headers, json={"expiresIn": expires_in})
        except httpx.HTTPError as e:
            LOGGER.error(f"Error generating signed URL: {str(e)}", exc_info=True)
            raise APIClientError(f"Signed URL error: {str(e)}", original_error=e)

        if response.status_code != 200:
            LOGGER.error(
                f"Failed to generate signed URL: {response.text}",
                extra={"bucket": bucket, "path": path, "status_code": response.status_code}
            )
            raise APIClientError(f"Signed URL generation failed: {response.text}")

        signed_path = response.json().get("signedURL")
        if not signed_path:
            raise APIClientError("Supabase response did not contain signedURL")

        # Relative to the project URL or to the storage API, depending on version
        signed_url = signed_path
        if signed_path.startswith("/storage/"):
            signed_url = f"{self.url}{signed_path}"
        elif signed_path.startswith("/"):
            signed_url = f"{self.base_api_url}{signed_path}"

        return {"signed_url": signed_url, "storage_path": path}
