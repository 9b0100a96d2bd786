"""
Supabase Storage client for chat attachment blobs.

Only three calls are needed: a signed upload URL, a signed download URL
and object deletion. Requests use the service-role key and retry on
transient failures.
"""

import asyncio
from urllib.parse import quote

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 15
MAX_RETRIES = 3
BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class StorageError(Exception):
    """Raised when the storage API rejects a request or stays unreachable."""

    def __init__(self, message: str, status_code: int | None = None, operation: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation


class StorageClient:
    def __init__(
        self,
        base_url: str | None = None,
        service_key: str | None = None,
        bucket: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.storage_url()).rstrip("/")
        self.service_key = service_key if service_key is not None else settings.SUPABASE_SERVICE_ROLE_KEY
        self.bucket = bucket or settings.CHAT_ATTACHMENTS_BUCKET
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(REQUEST_TIMEOUT),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            "Content-Type": "application/json",
        }

    def _object_path(self, storage_key: str) -> str:
        return f"{quote(self.bucket)}/{quote(storage_key)}"

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, headers=self._headers(), **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Storage API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise StorageError(f"Storage unreachable: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Storage API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise StorageError("Storage retry loop exhausted")

    def _check(self, response: httpx.Response, operation: str) -> dict:
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                raise StorageError(f"Invalid storage response: {e}", operation=operation) from e

        logger.error(
            f"Storage {operation} failed",
            status_code=response.status_code,
            response_text=response.text[:200] if response.text else "",
        )
        raise StorageError(
            f"Storage {operation} failed (HTTP {response.status_code})",
            status_code=response.status_code,
            operation=operation,
        )

    async def create_upload_url(self, storage_key: str) -> str:
        response = await self._request_with_retry(
            "POST", f"{self.base_url}/object/upload/sign/{self._object_path(storage_key)}"
        )
        data = self._check(response, "create_upload_url")
        return self._absolute(data.get("url"), "create_upload_url")

    async def create_download_url(self, storage_key: str, expires_in: int | None = None) -> str:
        response = await self._request_with_retry(
            "POST",
            f"{self.base_url}/object/sign/{self._object_path(storage_key)}",
            json={"expiresIn": expires_in or settings.ATTACHMENT_URL_TTL_SECONDS},
        )
        data = self._check(response, "create_download_url")
        return self._absolute(data.get("signedURL") or data.get("signedUrl"), "create_download_url")

    async def delete_object(self, storage_key: str) -> None:
        response = await self._request_with_retry(
            "DELETE", f"{self.base_url}/object/{self._object_path(storage_key)}"
        )
        if response.status_code == 404:
            logger.info("Storage object already gone", storage_key=storage_key)
            return
        self._check(response, "delete_object")

    def _absolute(self, path: str | None, operation: str) -> str:
        if not path:
            raise StorageError("Storage response missing signed URL", operation=operation)
        if path.startswith("http"):
            return path
        return f"{self.base_url}{path if path.startswith('/') else '/' + path}"
