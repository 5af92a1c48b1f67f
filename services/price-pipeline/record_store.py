"""Remote record store for cafes and their price history.

The pipeline treats the hosted database as a record sink: keyed lookup, save,
and a few queries. ``add_or_update_cafe`` is the commit the worker performs
once an espresso price was resolved.
"""

import base64
import logging
from abc import ABC, abstractmethod

import httpx

from auth import NotSignedIn
from config import settings
from drinks import find_espresso_price
from models import Cafe, Contributor, DrinkPrice, PriceRecord

logger = logging.getLogger(__name__)


class RecordStoreError(Exception):
    """The record store failed or returned an unexpected response."""


class RecordNotFound(RecordStoreError):
    """The requested record does not exist."""


class RecordStore(ABC):
    @abstractmethod
    async def fetch_cafe(self, cafe_id: str) -> Cafe:
        """Return the cafe record (without history) or raise RecordNotFound."""
        ...

    @abstractmethod
    async def save_cafe(self, cafe: Cafe) -> Cafe:
        ...

    @abstractmethod
    async def save_price_record(self, cafe_id: str, record: PriceRecord) -> PriceRecord:
        ...

    @abstractmethod
    async def fetch_price_records(self, cafe_id: str) -> list[PriceRecord]:
        ...

    @abstractmethod
    async def fetch_all_cafes(self) -> list[Cafe]:
        """All cafes including their price history."""
        ...

    async def aclose(self) -> None:
        return None


class InMemoryRecordStore(RecordStore):
    """Process-local store, used for local development and tests."""

    def __init__(self):
        self._cafes: dict[str, Cafe] = {}
        self._prices: dict[str, list[PriceRecord]] = {}

    async def fetch_cafe(self, cafe_id: str) -> Cafe:
        cafe = self._cafes.get(cafe_id)
        if cafe is None:
            raise RecordNotFound(f"Cafe {cafe_id} not found")
        return cafe.model_copy(deep=True)

    async def save_cafe(self, cafe: Cafe) -> Cafe:
        stored = cafe.model_copy(update={"price_history": []}, deep=True)
        self._cafes[cafe.id] = stored
        return stored.model_copy(deep=True)

    async def save_price_record(self, cafe_id: str, record: PriceRecord) -> PriceRecord:
        if cafe_id not in self._cafes:
            raise RecordNotFound(f"Cafe {cafe_id} not found")
        self._prices.setdefault(cafe_id, []).append(record.model_copy(deep=True))
        return record

    async def fetch_price_records(self, cafe_id: str) -> list[PriceRecord]:
        records = self._prices.get(cafe_id, [])
        return sorted(
            (r.model_copy(deep=True) for r in records),
            key=lambda r: r.date,
            reverse=True,
        )

    async def fetch_all_cafes(self) -> list[Cafe]:
        cafes = []
        for cafe_id, cafe in self._cafes.items():
            history = await self.fetch_price_records(cafe_id)
            cafes.append(cafe.model_copy(update={"price_history": history}, deep=True))
        return cafes


class HttpRecordStore(RecordStore):
    """JSON-over-HTTP record API.

    ``GET/PUT /cafes/{id}``, ``GET/POST /cafes/{id}/prices``, ``GET /cafes``.
    A 404 on lookup means the record does not exist.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        timeout: int | None = None,
    ):
        self._base_url = (base_url or settings.RECORD_STORE_URL).rstrip("/")
        token = api_token if api_token is not None else settings.RECORD_STORE_API_TOKEN
        read_timeout = timeout if timeout is not None else settings.RECORD_STORE_TIMEOUT_SECONDS

        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(float(read_timeout), connect=10.0),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_cafe(self, cafe_id: str) -> Cafe:
        data = await self._request("GET", f"/cafes/{cafe_id}")
        return Cafe.model_validate(data)

    async def save_cafe(self, cafe: Cafe) -> Cafe:
        body = cafe.model_dump(mode="json", by_alias=True, exclude={"price_history"})
        data = await self._request("PUT", f"/cafes/{cafe.id}", json=body)
        return Cafe.model_validate(data)

    async def save_price_record(self, cafe_id: str, record: PriceRecord) -> PriceRecord:
        body = record.model_dump(mode="json", by_alias=True)
        if record.menu_image_data is not None:
            body["menuImage"] = base64.b64encode(record.menu_image_data).decode()
        await self._request("POST", f"/cafes/{cafe_id}/prices", json=body)
        return record

    async def fetch_price_records(self, cafe_id: str) -> list[PriceRecord]:
        data = await self._request("GET", f"/cafes/{cafe_id}/prices")
        return [PriceRecord.model_validate(item) for item in data.get("records", [])]

    async def fetch_all_cafes(self) -> list[Cafe]:
        data = await self._request("GET", "/cafes", params={"include": "prices"})
        return [Cafe.model_validate(item) for item in data.get("cafes", [])]

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Record store %s %s failed: %s", method, path, e)
            raise RecordStoreError(f"Record store request failed: {e}") from e

        if resp.status_code == 404:
            raise RecordNotFound(f"{path} not found")

        if resp.status_code >= 400:
            logger.error("Record store error %d on %s %s", resp.status_code, method, path)
            raise RecordStoreError(f"Record store returned HTTP {resp.status_code}")

        try:
            return resp.json()
        except ValueError as e:
            raise RecordStoreError("Record store returned invalid JSON") from e


async def add_or_update_cafe(
    store: RecordStore,
    cafe: Cafe,
    drinks: list[DrinkPrice],
    contributor: Contributor | None,
    note: str | None = None,
    menu_image: bytes | None = None,
) -> Cafe:
    """Create or update the cafe record and append a new price record.

    The cafe's current price becomes the espresso price of ``drinks``.
    Lookup errors other than "not found" propagate.
    """
    if contributor is None or not contributor.user_id:
        raise NotSignedIn("You must be signed in to add prices.")

    try:
        record = await store.fetch_cafe(cafe.id)
    except RecordNotFound:
        logger.info("Creating new cafe record %s", cafe.id)
        record = Cafe(
            id=cafe.id,
            name=cafe.name,
            address=cafe.address,
            latitude=cafe.latitude,
            longitude=cafe.longitude,
        )

    record.current_price = find_espresso_price(drinks)
    saved = await store.save_cafe(record)

    price_record = PriceRecord(
        drinks=list(drinks),
        added_by=contributor.user_id,
        added_by_name=contributor.user_name,
        note=note,
        menu_image_data=menu_image,
    )
    await store.save_price_record(saved.id, price_record)
    logger.info(
        "Saved %d drink price(s) for cafe %s (espresso=%s)",
        len(drinks), saved.id, saved.current_price,
    )

    return saved.model_copy(update={"price_history": [price_record, *saved.price_history]})
