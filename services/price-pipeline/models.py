"""Pydantic models for queued extractions and the records they produce.

Persisted and wire representations use camelCase keys.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from drinks import ESPRESSO, find_drink_price, find_espresso_price

MAX_RETRIES = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DrinkPrice(CamelModel):
    name: str
    price: float


class PendingExtractionStatus(str, Enum):
    QUEUED = "queued"
    EXTRACTING = "extracting"
    SAVING = "saving"
    COMPLETED = "completed"
    FAILED = "failed"


class ExtractionSource(str, Enum):
    MAIN_APP = "mainApp"
    SHARE_EXTENSION = "shareExtension"


class PendingExtraction(CamelModel):
    """One photographed menu awaiting or undergoing extraction.

    The cafe fields are a snapshot taken at enqueue time; the cafe may not
    exist remotely yet. Image bytes live in a side file named by
    ``image_file_name``.
    """

    max_retries: ClassVar[int] = MAX_RETRIES

    id: UUID = Field(default_factory=uuid4, frozen=True)
    created_at: datetime = Field(default_factory=utcnow, frozen=True)

    cafe_id: str
    cafe_name: str
    cafe_address: str
    cafe_latitude: float
    cafe_longitude: float

    image_file_name: str

    extracted_drinks: list[DrinkPrice] | None = None

    status: PendingExtractionStatus = PendingExtractionStatus.QUEUED
    last_error: str | None = None
    retry_count: int = 0
    last_attempt: datetime | None = None

    source: ExtractionSource = ExtractionSource.MAIN_APP

    @property
    def can_retry(self) -> bool:
        return (
            self.status == PendingExtractionStatus.FAILED
            and self.retry_count < self.max_retries
        )

    def cafe_snapshot(self) -> "Cafe":
        return Cafe(
            id=self.cafe_id,
            name=self.cafe_name,
            address=self.cafe_address,
            latitude=self.cafe_latitude,
            longitude=self.cafe_longitude,
        )


class SharedPendingExtraction(CamelModel):
    """Queue entry written into the shared area by the import process."""

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=utcnow)
    cafe_id: str
    cafe_name: str
    cafe_address: str
    cafe_latitude: float
    cafe_longitude: float
    image_file_name: str
    status: str = PendingExtractionStatus.QUEUED.value
    retry_count: int = 0
    source: str = ExtractionSource.SHARE_EXTENSION.value

    def to_pending(self) -> PendingExtraction:
        return PendingExtraction(
            id=self.id,
            created_at=self.created_at,
            cafe_id=self.cafe_id,
            cafe_name=self.cafe_name,
            cafe_address=self.cafe_address,
            cafe_latitude=self.cafe_latitude,
            cafe_longitude=self.cafe_longitude,
            image_file_name=self.image_file_name,
            source=ExtractionSource.SHARE_EXTENSION,
        )


class ExtractionResult(CamelModel):
    """Successful response body of the extraction service."""

    success: bool | None = None
    drinks: list[DrinkPrice] = []

    @property
    def espresso_price(self) -> float | None:
        return find_espresso_price(self.drinks)


class Contributor(CamelModel):
    user_id: str
    user_name: str


class PriceRecord(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    drinks: list[DrinkPrice] = []
    date: datetime = Field(default_factory=utcnow)
    added_by: str
    added_by_name: str
    note: str | None = None
    menu_image_data: bytes | None = Field(default=None, exclude=True)
    # Single espresso price written by older clients, before drinks lists
    price: float | None = None

    @property
    def effective_drinks(self) -> list[DrinkPrice]:
        if not self.drinks and self.price is not None:
            return [DrinkPrice(name=ESPRESSO, price=self.price)]
        return self.drinks

    @property
    def espresso_price(self) -> float | None:
        return find_espresso_price(self.effective_drinks)


class Cafe(CamelModel):
    id: str
    name: str
    address: str
    latitude: float
    longitude: float
    current_price: float | None = None
    price_history: list[PriceRecord] = []

    @property
    def latest_price_record(self) -> PriceRecord | None:
        if not self.price_history:
            return None
        return max(self.price_history, key=lambda record: record.date)

    def price_for(self, drink_name: str) -> float | None:
        latest = self.latest_price_record
        if latest is None:
            return None
        return find_drink_price(latest.effective_drinks, drink_name)
