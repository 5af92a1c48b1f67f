"""Tests for the record store and the cafe commit."""

import asyncio
import base64
import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from auth import NotSignedIn
from models import Cafe, Contributor, DrinkPrice, PriceRecord
from record_store import (
    HttpRecordStore,
    InMemoryRecordStore,
    RecordNotFound,
    RecordStoreError,
    add_or_update_cafe,
)

CONTRIBUTOR = Contributor(user_id="user-1", user_name="Ada")


def _cafe(**overrides) -> Cafe:
    fields = {
        "id": "cafe-1",
        "name": "Kaffeebar Mitte",
        "address": "Torstraße 1, Berlin",
        "latitude": 52.529,
        "longitude": 13.401,
    }
    fields.update(overrides)
    return Cafe(**fields)


class TestAddOrUpdateCafe:
    @pytest.mark.asyncio
    async def test_creates_missing_cafe(self):
        store = InMemoryRecordStore()
        drinks = [DrinkPrice(name="Cappuccino", price=3.4), DrinkPrice(name="Espresso", price=2.6)]

        saved = await add_or_update_cafe(store, _cafe(), drinks, CONTRIBUTOR, note="lunch menu", menu_image=b"jpeg")

        assert saved.current_price == 2.6
        assert saved.price_history[0].drinks == drinks
        assert saved.price_history[0].note == "lunch menu"

        cafes = await store.fetch_all_cafes()
        assert [c.id for c in cafes] == ["cafe-1"]
        assert cafes[0].price_history[0].added_by == "user-1"
        assert cafes[0].price_history[0].menu_image_data == b"jpeg"

    @pytest.mark.asyncio
    async def test_appends_to_existing_history(self):
        store = InMemoryRecordStore()
        await store.save_cafe(_cafe(current_price=2.0))
        old = PriceRecord(
            drinks=[DrinkPrice(name="Espresso", price=2.0)],
            date=datetime(2025, 6, 1, tzinfo=timezone.utc),
            added_by="user-0",
            added_by_name="Bo",
        )
        await store.save_price_record("cafe-1", old)

        await add_or_update_cafe(store, _cafe(name="ignored"), [DrinkPrice(name="Espresso", price=2.4)], CONTRIBUTOR)

        cafes = await store.fetch_all_cafes()
        assert cafes[0].name == "Kaffeebar Mitte"
        assert cafes[0].current_price == 2.4
        assert len(cafes[0].price_history) == 2
        assert cafes[0].latest_price_record.added_by == "user-1"

    @pytest.mark.asyncio
    async def test_requires_contributor(self):
        store = InMemoryRecordStore()
        with pytest.raises(NotSignedIn):
            await add_or_update_cafe(store, _cafe(), [DrinkPrice(name="Espresso", price=2.5)], None)
        assert await store.fetch_all_cafes() == []

    @pytest.mark.asyncio
    async def test_lookup_error_propagates(self):
        store = AsyncMock(spec=InMemoryRecordStore)
        store.fetch_cafe.side_effect = RecordStoreError("unavailable")

        with pytest.raises(RecordStoreError, match="unavailable"):
            await add_or_update_cafe(store, _cafe(), [DrinkPrice(name="Espresso", price=2.5)], CONTRIBUTOR)
        store.save_cafe.assert_not_awaited()


class TestInMemoryRecordStore:
    @pytest.mark.asyncio
    async def test_fetch_missing(self):
        with pytest.raises(RecordNotFound):
            await InMemoryRecordStore().fetch_cafe("nope")

    @pytest.mark.asyncio
    async def test_price_record_requires_cafe(self):
        record = PriceRecord(added_by="u", added_by_name="U")
        with pytest.raises(RecordNotFound):
            await InMemoryRecordStore().save_price_record("nope", record)

    @pytest.mark.asyncio
    async def test_returns_copies(self):
        store = InMemoryRecordStore()
        await store.save_cafe(_cafe())

        fetched = await store.fetch_cafe("cafe-1")
        fetched.name = "changed"

        assert (await store.fetch_cafe("cafe-1")).name == "Kaffeebar Mitte"


@pytest.fixture
def http_store():
    store = HttpRecordStore(base_url="http://fake-records:9000", api_token="secret", timeout=5)
    yield store
    asyncio.run(store.aclose())


class TestHttpRecordStore:
    @pytest.mark.asyncio
    async def test_fetch_cafe(self, http_store: HttpRecordStore):
        body = {"id": "cafe-1", "name": "Kaffeebar Mitte", "address": "", "latitude": 1.0, "longitude": 2.0, "currentPrice": 2.5}
        mock_request = AsyncMock(return_value=httpx.Response(200, json=body))

        with patch.object(http_store._client, "request", mock_request):
            cafe = await http_store.fetch_cafe("cafe-1")

        assert cafe.current_price == 2.5
        mock_request.assert_awaited_once_with("GET", "/cafes/cafe-1")

    @pytest.mark.asyncio
    async def test_404_is_not_found(self, http_store: HttpRecordStore):
        mock_request = AsyncMock(return_value=httpx.Response(404, json={"error": "not found"}))

        with patch.object(http_store._client, "request", mock_request):
            with pytest.raises(RecordNotFound):
                await http_store.fetch_cafe("cafe-1")

    @pytest.mark.asyncio
    async def test_server_error(self, http_store: HttpRecordStore):
        mock_request = AsyncMock(return_value=httpx.Response(503, text="unavailable"))

        with patch.object(http_store._client, "request", mock_request):
            with pytest.raises(RecordStoreError, match="HTTP 503") as exc_info:
                await http_store.fetch_cafe("cafe-1")

        assert not isinstance(exc_info.value, RecordNotFound)

    @pytest.mark.asyncio
    async def test_transport_error(self, http_store: HttpRecordStore):
        mock_request = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))

        with patch.object(http_store._client, "request", mock_request):
            with pytest.raises(RecordStoreError, match="Connection refused"):
                await http_store.fetch_all_cafes()

    @pytest.mark.asyncio
    async def test_price_record_carries_image(self, http_store: HttpRecordStore):
        record = PriceRecord(
            drinks=[DrinkPrice(name="Espresso", price=2.5)],
            added_by="user-1",
            added_by_name="Ada",
            menu_image_data=b"jpeg",
        )
        mock_request = AsyncMock(return_value=httpx.Response(201, json={"id": record.id}))

        with patch.object(http_store._client, "request", mock_request):
            await http_store.save_price_record("cafe-1", record)

        method, path = mock_request.call_args.args
        body = mock_request.call_args.kwargs["json"]
        assert (method, path) == ("POST", "/cafes/cafe-1/prices")
        assert body["addedByName"] == "Ada"
        assert body["drinks"] == [{"name": "Espresso", "price": 2.5}]
        assert base64.b64decode(body["menuImage"]) == b"jpeg"
        assert "menuImageData" not in body

    @pytest.mark.asyncio
    async def test_fetch_all_cafes_with_legacy_records(self, http_store: HttpRecordStore):
        body = {
            "cafes": [
                {
                    "id": "cafe-1",
                    "name": "Kaffeebar Mitte",
                    "address": "",
                    "latitude": 1.0,
                    "longitude": 2.0,
                    "priceHistory": [
                        {"id": "r1", "date": "2024-03-01T09:00:00Z", "addedBy": "u", "addedByName": "U", "price": 2.3},
                    ],
                },
            ],
        }
        mock_request = AsyncMock(return_value=httpx.Response(200, json=body))

        with patch.object(http_store._client, "request", mock_request):
            cafes = await http_store.fetch_all_cafes()

        assert cafes[0].price_for("Espresso") == 2.3
        assert mock_request.call_args.kwargs["params"] == {"include": "prices"}
