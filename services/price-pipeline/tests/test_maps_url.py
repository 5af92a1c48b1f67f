"""Tests for importing menu photos from Google Maps links."""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from maps_url import (
    ImageDownloadFailed,
    MapsPhotoImporter,
    MissingCoordinates,
    MissingPlaceName,
    NotGoogleMapsUrl,
    NotPhotoUrl,
    ShortUrlResolutionFailed,
    is_short_url,
    main,
    parse_maps_url,
)
from shared_inbox import SharedInbox, SharedOutbox

PHOTO_URL = (
    "https://www.google.com/maps/place/Kaffeebar+Mitte/@52.529,13.401,17z/data="
    "!3m8!1e5!3m6!1sAF1QipN!2e10!6shttps:%2F%2Flh5.googleusercontent.com%2Fp%2FAF1QipN%3Dk-no"
    "!7i4032!8i3024!4m7!3m6!1s0x47a851!8m2!3d52.529!4d13.401"
)


def _response(status: int, url: str, **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("GET", url), **kwargs)


class TestParseMapsUrl:
    def test_full_photo_link(self):
        data = parse_maps_url(PHOTO_URL)

        assert data.place_name == "Kaffeebar Mitte"
        assert data.latitude == 52.529
        assert data.longitude == 13.401
        assert data.image_url == "https://lh5.googleusercontent.com/p/AF1QipN=s0"
        assert (data.image_width, data.image_height) == (4032, 3024)
        assert data.cafe_id == "52.529_13.401_Kaffeebar_Mitte"

    def test_size_parameter_appended(self):
        url = PHOTO_URL.replace("%3Dk-no", "")
        assert parse_maps_url(url).image_url == "https://lh5.googleusercontent.com/p/AF1QipN=s0"

    def test_image_ends_at_next_marker_without_dimensions(self):
        url = PHOTO_URL.replace("!7i4032!8i3024", "")
        data = parse_maps_url(url)

        assert data.image_url == "https://lh5.googleusercontent.com/p/AF1QipN=s0"
        assert data.image_width is None

    def test_percent_encoded_place_name(self):
        url = PHOTO_URL.replace("Kaffeebar+Mitte", "Caf%C3%A9+Sch%C3%B6n")
        assert parse_maps_url(url).place_name == "Café Schön"

    def test_not_google_maps(self):
        with pytest.raises(NotGoogleMapsUrl, match="not a Google Maps link"):
            parse_maps_url("https://example.com/maps/place/Foo/")

    def test_no_photo(self):
        with pytest.raises(NotPhotoUrl):
            parse_maps_url("https://www.google.com/maps/place/Kaffeebar+Mitte/@52.5,13.4,17z")

    def test_missing_coordinates(self):
        with pytest.raises(MissingCoordinates):
            parse_maps_url(PHOTO_URL.replace("!3d52.529", ""))

    def test_out_of_range_coordinates(self):
        with pytest.raises(MissingCoordinates):
            parse_maps_url(PHOTO_URL.replace("!3d52.529", "!3d152.529"))

    def test_missing_place_name(self):
        with pytest.raises(MissingPlaceName):
            parse_maps_url(PHOTO_URL.replace("/maps/place/Kaffeebar+Mitte/", "/maps/"))


class TestIsShortUrl:
    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("https://maps.app.goo.gl/AbCdEf", True),
            ("https://goo.gl/maps/AbCdEf", True),
            (PHOTO_URL, False),
        ],
    )
    def test_detection(self, url: str, expected: bool):
        assert is_short_url(url) is expected


@pytest.fixture
def importer(shared_dir: Path):
    imp = MapsPhotoImporter(SharedOutbox(shared_dir), timeout=5)
    yield imp
    asyncio.run(imp.aclose())


class TestMapsPhotoImporter:
    @pytest.mark.asyncio
    async def test_short_link_imported_into_shared_area(self, importer: MapsPhotoImporter, shared_dir: Path, sample_image_bytes: bytes):
        mock_get = AsyncMock(side_effect=[
            _response(200, PHOTO_URL, text="<html></html>"),
            _response(200, "https://lh5.googleusercontent.com/p/AF1QipN=s0", content=sample_image_bytes),
        ])

        with patch.object(importer._client, "get", mock_get):
            data = await importer.import_url("https://maps.app.goo.gl/AbCdEf")

        assert data.place_name == "Kaffeebar Mitte"
        assert [call.args[0] for call in mock_get.await_args_list] == [
            "https://maps.app.goo.gl/AbCdEf",
            "https://lh5.googleusercontent.com/p/AF1QipN=s0",
        ]

        entries = SharedInbox(shared_dir).drain()
        assert len(entries) == 1
        assert entries[0].cafe_id == "52.529_13.401_Kaffeebar_Mitte"
        assert entries[0].cafe_name == "Kaffeebar Mitte"
        assert entries[0].cafe_latitude == 52.529
        stored = (shared_dir / "pendingImages" / entries[0].image_file_name).read_bytes()
        assert stored[:3] == b"\xff\xd8\xff"

    @pytest.mark.asyncio
    async def test_short_link_to_other_host(self, importer: MapsPhotoImporter):
        mock_get = AsyncMock(return_value=_response(200, "https://example.com/landing"))

        with patch.object(importer._client, "get", mock_get):
            with pytest.raises(ShortUrlResolutionFailed):
                await importer.import_url("https://maps.app.goo.gl/AbCdEf")

    @pytest.mark.asyncio
    async def test_short_link_network_error(self, importer: MapsPhotoImporter):
        mock_get = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))

        with patch.object(importer._client, "get", mock_get):
            with pytest.raises(ShortUrlResolutionFailed):
                await importer.import_url("https://maps.app.goo.gl/AbCdEf")

    @pytest.mark.asyncio
    async def test_download_failure_queues_nothing(self, importer: MapsPhotoImporter, shared_dir: Path):
        mock_get = AsyncMock(return_value=_response(404, "https://lh5.googleusercontent.com/p/AF1QipN=s0"))

        with patch.object(importer._client, "get", mock_get):
            with pytest.raises(ImageDownloadFailed):
                await importer.import_url(PHOTO_URL)

        assert SharedInbox(shared_dir).drain() == []

    @pytest.mark.asyncio
    async def test_non_image_download(self, importer: MapsPhotoImporter, shared_dir: Path, invalid_bytes: bytes):
        mock_get = AsyncMock(return_value=_response(200, "https://lh5.googleusercontent.com/p/AF1QipN=s0", content=invalid_bytes))

        with patch.object(importer._client, "get", mock_get):
            with pytest.raises(ImageDownloadFailed, match="Invalid image data"):
                await importer.import_url(PHOTO_URL)

        assert SharedInbox(shared_dir).drain() == []


class TestCli:
    def test_invalid_link_exits_with_error(self, shared_dir: Path):
        assert main(["https://example.com/menu.jpg", "--shared-dir", str(shared_dir)]) == 1
        assert SharedInbox(shared_dir).drain() == []
