"""Google Maps photo links as a job source for the import process.

A shared Google Maps photo link carries everything a queued extraction needs:
the place name (``/maps/place/<name>/``), its coordinates (``!3d<lat>!4d<lng>``)
and the photo itself (``!6s<url-encoded image url>``, optionally followed by
``!7i<width>!8i<height>``). Short links (maps.app.goo.gl) are resolved by
following their redirects first.

``MapsPhotoImporter`` downloads the photo and hands it to ``SharedOutbox`` so
the host process picks it up on its next import.
"""

import argparse
import asyncio
import logging
import re
from dataclasses import dataclass
from urllib.parse import unquote, urlparse

import httpx

from compression import ImageDecodeError, compress_for_upload
from config import settings
from shared_inbox import SharedOutbox

logger = logging.getLogger(__name__)

_PLACE_RE = re.compile(r"/maps/place/([^/]+)/")
_LAT_RE = re.compile(r"!3d(-?\d+\.?\d*)")
_LNG_RE = re.compile(r"!4d(-?\d+\.?\d*)")
_WIDTH_RE = re.compile(r"!7i(\d+)")
_HEIGHT_RE = re.compile(r"!8i(\d+)")
_NEXT_MARKER_RE = re.compile(r"!\d")


class MapsUrlError(Exception):
    """Base class for link import failures. ``str(err)`` is user-facing."""

    message = "Could not import this link."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class NotGoogleMapsUrl(MapsUrlError):
    message = "This is not a Google Maps link."


class NotPhotoUrl(MapsUrlError):
    message = "This link doesn't contain a photo."


class MissingImageData(MapsUrlError):
    message = "Could not find the photo in this link."


class MissingCoordinates(MapsUrlError):
    message = "Could not find location coordinates."


class MissingPlaceName(MapsUrlError):
    message = "Could not find the place name."


class ShortUrlResolutionFailed(MapsUrlError):
    message = "Could not resolve the shortened link."


class ImageDownloadFailed(MapsUrlError):
    message = "Failed to download image."


@dataclass(frozen=True)
class MapsPhotoData:
    image_url: str
    latitude: float
    longitude: float
    place_name: str
    image_width: int | None = None
    image_height: int | None = None

    @property
    def cafe_id(self) -> str:
        """Stable id derived from coordinates and name."""
        return f"{self.latitude}_{self.longitude}_{self.place_name}".replace(" ", "_")


def is_short_url(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return "goo.gl" in host or "maps.app" in host


def parse_maps_url(url: str) -> MapsPhotoData:
    """Extract photo, coordinates and place name from a full Google Maps link."""
    if "google.com/maps" not in url:
        raise NotGoogleMapsUrl()
    if "!6s" not in url:
        raise NotPhotoUrl()

    place_name = _place_name(url)
    if place_name is None:
        raise MissingPlaceName()

    coordinates = _coordinates(url)
    if coordinates is None:
        raise MissingCoordinates()

    image_url = _image_url(url)
    if image_url is None:
        raise MissingImageData()

    width, height = _dimensions(url)
    return MapsPhotoData(
        image_url=image_url,
        latitude=coordinates[0],
        longitude=coordinates[1],
        place_name=place_name,
        image_width=width,
        image_height=height,
    )


def _place_name(url: str) -> str | None:
    match = _PLACE_RE.search(url)
    if match is None:
        return None
    name = unquote(match.group(1).replace("+", " ")).strip()
    return name or None


def _coordinates(url: str) -> tuple[float, float] | None:
    lat_match = _LAT_RE.search(url)
    lng_match = _LNG_RE.search(url)
    if lat_match is None or lng_match is None:
        return None

    lat = float(lat_match.group(1))
    lng = float(lng_match.group(1))
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return lat, lng


def _image_url(url: str) -> str | None:
    encoded = url.split("!6s", 1)[1]

    end = encoded.find("!7i")
    if end == -1:
        marker = _NEXT_MARKER_RE.search(encoded)
        end = marker.start() if marker else len(encoded)

    image_url = unquote(encoded[:end])

    # Ask for the full-size rendition
    if "=k-no" in image_url:
        image_url = image_url.replace("=k-no", "=s0")
    elif "=s" not in image_url:
        image_url += "=s0"

    parsed = urlparse(image_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return image_url


def _dimensions(url: str) -> tuple[int | None, int | None]:
    width = _WIDTH_RE.search(url)
    height = _HEIGHT_RE.search(url)
    if width is None or height is None:
        return None, None
    return int(width.group(1)), int(height.group(1))


class MapsPhotoImporter:
    """Turns a shared Google Maps photo link into a job in the shared area."""

    def __init__(self, outbox: SharedOutbox, timeout: int | None = None):
        self._outbox = outbox
        read_timeout = timeout if timeout is not None else settings.MAPS_TIMEOUT_SECONDS
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(float(read_timeout), connect=10.0),
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def resolve_short_url(self, url: str) -> str:
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as e:
            logger.warning("Short link resolution failed: %s", e)
            raise ShortUrlResolutionFailed() from e

        final_url = str(resp.url)
        if "google.com" not in (resp.url.host or ""):
            logger.warning("Short link resolved to unexpected host: %s", resp.url.host)
            raise ShortUrlResolutionFailed()
        return final_url

    async def download_image(self, image_url: str) -> bytes:
        try:
            resp = await self._client.get(image_url)
        except httpx.HTTPError as e:
            logger.warning("Image download failed: %s", e)
            raise ImageDownloadFailed() from e

        if resp.status_code != 200:
            logger.warning("Image download returned HTTP %d", resp.status_code)
            raise ImageDownloadFailed()
        return resp.content

    async def import_url(self, url: str) -> MapsPhotoData:
        """Resolve, parse, download and queue. Raises MapsUrlError subclasses."""
        full_url = await self.resolve_short_url(url) if is_short_url(url) else url
        data = parse_maps_url(full_url)

        raw = await self.download_image(data.image_url)
        try:
            image_bytes = await asyncio.to_thread(
                compress_for_upload, raw, settings.MAX_UPLOAD_BYTES
            )
        except ImageDecodeError as e:
            raise ImageDownloadFailed("Invalid image data.") from e

        queued = self._outbox.queue_extraction(
            cafe_id=data.cafe_id,
            cafe_name=data.place_name,
            cafe_address="",
            cafe_latitude=data.latitude,
            cafe_longitude=data.longitude,
            image_bytes=image_bytes,
        )
        if not queued:
            raise MapsUrlError("Could not save the photo for processing.")

        logger.info("Queued photo of %s from Google Maps (%d bytes)", data.place_name, len(image_bytes))
        return data


async def _import(url: str, shared_dir: str) -> MapsPhotoData:
    importer = MapsPhotoImporter(SharedOutbox(shared_dir))
    try:
        return await importer.import_url(url)
    finally:
        await importer.aclose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="price-pipeline-import",
        description="Queue a menu photo from a Google Maps link for price extraction",
    )
    parser.add_argument("url", help="Google Maps photo link (full or maps.app.goo.gl)")
    parser.add_argument("--shared-dir", default=settings.SHARED_DIR, help="shared area of the host process")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        data = asyncio.run(_import(args.url, args.shared_dir))
    except MapsUrlError as e:
        logger.error("%s", e)
        return 1

    print(f"Queued menu photo for {data.place_name}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
