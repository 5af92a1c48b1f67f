"""HTTP client for the remote menu price extraction service.

Sends one compressed menu photo per request and decodes the list of
(drink, price) pairs. Uses httpx with configurable timeouts. Nothing is
retried here; failures surface as PriceExtractionError subclasses and the
worker records them on the job.
"""

import asyncio
import base64
import json
import logging

import httpx
from pydantic import ValidationError

from compression import ImageDecodeError, compress_for_upload
from config import settings
from models import ExtractionResult

logger = logging.getLogger(__name__)

MEDIA_TYPE = "image/jpeg"


class PriceExtractionError(Exception):
    """Base class for extraction failures. ``str(err)`` is user-facing."""


class ImageConversionFailed(PriceExtractionError):
    def __init__(self):
        super().__init__("Failed to process the image.")


class InvalidResponse(PriceExtractionError):
    def __init__(self):
        super().__init__("Received invalid response from server.")


class AuthenticationFailed(PriceExtractionError):
    """401 from the service. The stored token should be invalidated."""

    def __init__(self):
        super().__init__("Authentication failed. Please sign in again.")


class RateLimitExceeded(PriceExtractionError):
    def __init__(self):
        super().__init__("Too many requests. Please wait a minute before trying again.")


class ServerError(PriceExtractionError):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NetworkError(PriceExtractionError):
    def __init__(self, cause: Exception):
        super().__init__(str(cause) or type(cause).__name__)
        self.cause = cause


class ExtractionClient:
    """Async HTTP client for the extraction endpoint."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: int | None = None,
        connect_timeout: int | None = None,
        max_image_bytes: int | None = None,
        start_quality: int | None = None,
        quality_step: int | None = None,
        min_quality: int | None = None,
    ):
        self._base_url = (base_url or settings.EXTRACTION_SERVICE_URL).rstrip("/")
        self._max_image_bytes = max_image_bytes if max_image_bytes is not None else settings.MAX_UPLOAD_BYTES
        self._start_quality = start_quality if start_quality is not None else settings.JPEG_START_QUALITY
        self._quality_step = quality_step if quality_step is not None else settings.JPEG_QUALITY_STEP
        self._min_quality = min_quality if min_quality is not None else settings.JPEG_MIN_QUALITY

        read_timeout = timeout if timeout is not None else settings.EXTRACTION_TIMEOUT_SECONDS
        conn_timeout = connect_timeout if connect_timeout is not None else settings.EXTRACTION_CONNECT_TIMEOUT

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(
                connect=float(conn_timeout),
                read=float(read_timeout),
                write=30.0,
                pool=30.0,
            ),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def extract(self, image_bytes: bytes, auth_token: str) -> ExtractionResult:
        """Extract all drink prices from a menu photo.

        Raises one of the PriceExtractionError subclasses on failure.
        """
        try:
            compressed = await asyncio.to_thread(
                compress_for_upload,
                image_bytes,
                self._max_image_bytes,
                self._start_quality,
                self._quality_step,
                self._min_quality,
            )
        except ImageDecodeError as e:
            logger.warning("Image conversion failed: %s", e)
            raise ImageConversionFailed() from e

        payload = {
            "image": base64.b64encode(compressed).decode(),
            "mediaType": MEDIA_TYPE,
        }
        headers = {"Authorization": f"Bearer {auth_token}"}

        # Log byte count only, never image content
        logger.info("Sending extraction request: %d bytes", len(compressed))

        try:
            resp = await self._client.post("/", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("Extraction service request failed: %s", e)
            raise NetworkError(e) from e

        return self._parse_response(resp)

    def _parse_response(self, resp: httpx.Response) -> ExtractionResult:
        if resp.status_code == 401:
            logger.warning("Extraction service rejected the auth token")
            raise AuthenticationFailed()

        if resp.status_code == 429:
            logger.warning("Extraction service rate limit exceeded")
            raise RateLimitExceeded()

        if resp.status_code != 200:
            message = _error_message(resp)
            logger.error("Extraction service error %d: %s", resp.status_code, message)
            raise ServerError(message)

        try:
            result = ExtractionResult.model_validate_json(resp.content)
        except ValidationError as e:
            logger.error("Could not decode extraction response: %s", e)
            raise InvalidResponse() from e

        logger.info("Extraction returned %d drink(s)", len(result.drinks))
        return result


def _error_message(resp: httpx.Response) -> str:
    """Best-effort ``error`` field of the service's error body."""
    try:
        data = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return f"HTTP {resp.status_code}"

    if isinstance(data, dict):
        return data.get("error") or "Unknown error"
    return f"HTTP {resp.status_code}"
