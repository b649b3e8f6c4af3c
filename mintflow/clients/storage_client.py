import asyncio
import json
import time

import httpx
import structlog

from mintflow.config import settings
from mintflow.errors import NotFoundError, StorageUploadError, UploadFailure
from mintflow.models import ContentBlob, ContentMetadata, ContentRecord, kind_name

logger = structlog.get_logger(__name__)

_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/webm": "webm",
    "video/webm": "webm",
    "video/mp4": "mp4",
}


class ContentStorageClient:
    """Content-addressed storage over a Pinata-compatible pinning API.

    ``upload`` is a single attempt with a hard deadline: the caller keeps the
    blob and decides whether to start over.  ``resolve`` reads the bytes back
    through an ordered list of public gateways and returns the first success.

    Identical bytes pin to the same content id, so re-uploading is data-safe
    (the provider still receives the bytes again).
    """

    def __init__(
        self,
        *,
        api_url: str | None = None,
        api_key: str | None = None,
        secret_key: str | None = None,
        gateway_url: str | None = None,
        fallback_gateways: list[str] | None = None,
        upload_timeout: float | None = None,
        gateway_timeout: float | None = None,
        max_upload_bytes: int | None = None,
    ) -> None:
        self._api_url = (api_url or settings.storage_api_url).rstrip("/")
        self._api_key = settings.storage_api_key if api_key is None else api_key
        self._secret_key = settings.storage_secret_key if secret_key is None else secret_key
        self._gateway_url = gateway_url or settings.storage_gateway_url
        self._fallback_gateways = (
            settings.fallback_gateways if fallback_gateways is None else fallback_gateways
        )
        self._upload_timeout = settings.upload_timeout_seconds if upload_timeout is None else upload_timeout
        self._gateway_timeout = settings.gateway_timeout_seconds if gateway_timeout is None else gateway_timeout
        self._max_upload_bytes = settings.max_upload_bytes if max_upload_bytes is None else max_upload_bytes

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(self, blob: ContentBlob, metadata: ContentMetadata) -> ContentRecord:
        if blob.size_bytes == 0:
            raise StorageUploadError(UploadFailure.EMPTY, "refusing to upload an empty blob")
        if blob.size_bytes > self._max_upload_bytes:
            raise StorageUploadError(
                UploadFailure.TOO_LARGE,
                f"blob is {blob.size_bytes} bytes, limit is {self._max_upload_bytes}",
            )
        if not self.is_configured():
            raise StorageUploadError(UploadFailure.AUTH_FAILURE, "storage credentials not configured")

        kind = kind_name(metadata.kind)
        name = metadata.name or (
            f"{kind}-{metadata.room_id}-{int(time.time())}.{_EXTENSIONS.get(blob.mime_type, 'bin')}"
        )
        files = {"file": (name, blob.data, blob.mime_type)}
        form = {"pinataMetadata": json.dumps({"name": name, "keyvalues": metadata.to_keyvalues()})}

        try:
            async with httpx.AsyncClient(timeout=self._upload_timeout) as client:
                resp = await asyncio.wait_for(
                    client.post(
                        f"{self._api_url}/pinning/pinFileToIPFS",
                        files=files,
                        data=form,
                        headers=self._auth_headers(),
                    ),
                    timeout=self._upload_timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error("upload_timeout", name=name, timeout_seconds=self._upload_timeout)
            raise StorageUploadError(
                UploadFailure.TIMEOUT, f"upload exceeded {self._upload_timeout}s"
            ) from e
        except httpx.RequestError as e:
            logger.error("upload_request_error", name=name, error=str(e))
            raise StorageUploadError(UploadFailure.PROVIDER_ERROR, f"upload failed: {e}") from e

        if resp.status_code in (401, 403):
            raise StorageUploadError(UploadFailure.AUTH_FAILURE, "invalid storage credentials")
        if resp.status_code == 429:
            raise StorageUploadError(UploadFailure.RATE_LIMITED, "storage upload rate limit exceeded")
        if resp.status_code == 413:
            raise StorageUploadError(UploadFailure.TOO_LARGE, "provider rejected the blob as too large")
        if resp.is_error:
            raise StorageUploadError(
                UploadFailure.PROVIDER_ERROR,
                f"upload failed with HTTP {resp.status_code}: {resp.text[:200]}",
            )

        try:
            body = resp.json()
            content_id = body["IpfsHash"]
        except (ValueError, KeyError) as e:
            raise StorageUploadError(
                UploadFailure.PROVIDER_ERROR, "provider answer has no content id"
            ) from e

        record = ContentRecord(
            content_id=content_id,
            size_bytes=int(body.get("PinSize") or blob.size_bytes),
            mime_type=blob.mime_type,
            gateway_urls=self.gateway_urls(content_id),
            metadata=metadata,
        )
        logger.info(
            "upload_complete",
            content_id=content_id,
            size_bytes=record.size_bytes,
            kind=kind,
        )
        return record

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def gateway_urls(self, content_id: str) -> tuple[str, ...]:
        """Candidate URLs in preference order, primary gateway first, no duplicates."""
        urls: list[str] = []
        for gateway in [self._gateway_url, *self._fallback_gateways]:
            url = f"{gateway.rstrip('/')}/{content_id}"
            if url not in urls:
                urls.append(url)
        return tuple(urls)

    async def resolve(self, content_id: str, gateway_urls: tuple[str, ...] | None = None) -> bytes:
        urls = gateway_urls or self.gateway_urls(content_id)
        for url in urls:
            try:
                async with httpx.AsyncClient(
                    timeout=self._gateway_timeout, follow_redirects=True
                ) as client:
                    resp = await asyncio.wait_for(client.get(url), timeout=self._gateway_timeout)
            except (asyncio.TimeoutError, httpx.HTTPError) as e:
                logger.warning("gateway_failed", url=url, error=str(e) or type(e).__name__)
                continue
            if resp.status_code == 200:
                logger.debug("gateway_hit", url=url, size_bytes=len(resp.content))
                return resp.content
            logger.warning("gateway_miss", url=url, status=resp.status_code)

        raise NotFoundError(
            f"{content_id} is not readable from any of {len(urls)} gateways",
            content_id=content_id,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return bool(self._api_key and self._secret_key)

    def status(self) -> dict:
        return {
            "configured": self.is_configured(),
            "gateway": self._gateway_url,
            "fallback_gateways": list(self._fallback_gateways),
        }

    def _auth_headers(self) -> dict[str, str]:
        return {
            "pinata_api_key": self._api_key,
            "pinata_secret_api_key": self._secret_key,
        }
