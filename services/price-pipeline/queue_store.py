"""Durable queue of pending price extractions.

Holds the ordered list of PendingExtraction records plus one image file per
record. Every mutation rewrites the whole list file in one atomic replace.

A failed write is logged and reported through the mutation's return value;
the in-memory state is not rolled back. Callers that need strict durability
must check the returned flag.
"""

import logging
import shutil
from pathlib import Path
from typing import Callable, Iterable
from uuid import UUID, uuid4

from pydantic import TypeAdapter, ValidationError

from config import settings
from models import (
    DrinkPrice,
    ExtractionSource,
    PendingExtraction,
    PendingExtractionStatus,
    utcnow,
)
from storage import atomic_write_bytes

logger = logging.getLogger(__name__)

IMAGE_EXTENSION = ".jpg"

_EXTRACTION_LIST = TypeAdapter(list[PendingExtraction])


class ExtractionQueueStore:
    """Process-local queue store. Owns its records and their image files."""

    def __init__(
        self,
        data_dir: str | Path | None = None,
        shared_dir: str | Path | None = None,
        max_retries: int | None = None,
    ):
        self._data_dir = Path(data_dir or settings.DATA_DIR)
        self._queue_path = self._data_dir / settings.QUEUE_FILE_NAME
        self._images_dir = self._data_dir / settings.IMAGES_DIR_NAME
        self._shared_images_dir = (
            Path(shared_dir) / settings.IMAGES_DIR_NAME if shared_dir else None
        )
        self._max_retries = max_retries if max_retries is not None else settings.MAX_RETRIES

        self._extractions: list[PendingExtraction] = []
        self._active_id: UUID | None = None

        self._images_dir.mkdir(parents=True, exist_ok=True)
        self._load()

    # Queries

    @property
    def images_dir(self) -> Path:
        return self._images_dir

    @property
    def extractions(self) -> list[PendingExtraction]:
        return list(self._extractions)

    @property
    def active_extraction(self) -> PendingExtraction | None:
        if self._active_id is None:
            return None
        return self.get(self._active_id)

    def get(self, extraction_id: UUID) -> PendingExtraction | None:
        return next((e for e in self._extractions if e.id == extraction_id), None)

    def get_next_pending(self) -> PendingExtraction | None:
        """First queued record in insertion order. Failed records are skipped."""
        return next(
            (e for e in self._extractions if e.status == PendingExtractionStatus.QUEUED),
            None,
        )

    def get_pending_count(self) -> int:
        return sum(
            1
            for e in self._extractions
            if e.status == PendingExtractionStatus.QUEUED
            or (e.status == PendingExtractionStatus.FAILED and e.retry_count < self._max_retries)
        )

    # Enqueue / remove

    def queue_extraction(
        self,
        cafe_id: str,
        cafe_name: str,
        cafe_address: str,
        cafe_latitude: float,
        cafe_longitude: float,
        image_bytes: bytes,
        source: ExtractionSource = ExtractionSource.MAIN_APP,
    ) -> PendingExtraction | None:
        """Store the image and append a queued record.

        Returns None, and enqueues nothing, if the image cannot be written.
        """
        image_file_name = self._save_image(image_bytes)
        if image_file_name is None:
            logger.error("Failed to save image for pending extraction (cafe=%s)", cafe_id)
            return None

        extraction = PendingExtraction(
            cafe_id=cafe_id,
            cafe_name=cafe_name,
            cafe_address=cafe_address,
            cafe_latitude=cafe_latitude,
            cafe_longitude=cafe_longitude,
            image_file_name=image_file_name,
            source=source,
        )
        self._extractions.append(extraction)
        self._save()

        logger.info(
            "Queued extraction %s for cafe %s (source=%s)",
            extraction.id, cafe_id, source.value,
        )
        return extraction

    def adopt(self, extractions: Iterable[PendingExtraction]) -> int:
        """Append records whose id is not yet present. Persists once."""
        known = {e.id for e in self._extractions}
        added = 0
        for extraction in extractions:
            if extraction.id in known:
                continue
            self._extractions.append(extraction)
            known.add(extraction.id)
            added += 1

        if added:
            self._save()
        return added

    def remove_extraction(self, extraction: PendingExtraction) -> bool:
        """Delete the record's image(s) and drop it from the queue."""
        self._delete_image(extraction.image_file_name)

        self._extractions = [e for e in self._extractions if e.id != extraction.id]
        if self._active_id == extraction.id:
            self._active_id = None
        return self._save()

    # Status transitions

    def mark_as_extracting(self, extraction: PendingExtraction) -> bool:
        def update(ext: PendingExtraction) -> None:
            ext.status = PendingExtractionStatus.EXTRACTING
            ext.last_attempt = utcnow()

        saved = self._update(extraction.id, update)
        if self.get(extraction.id) is not None:
            self._active_id = extraction.id
        return saved

    def update_with_results(self, extraction_id: UUID, drinks: list[DrinkPrice]) -> bool:
        def update(ext: PendingExtraction) -> None:
            ext.extracted_drinks = list(drinks)
            ext.status = PendingExtractionStatus.SAVING

        return self._update(extraction_id, update)

    def mark_as_completed(self, extraction_id: UUID) -> bool:
        """Completion removes the record and its image."""
        extraction = self.get(extraction_id)
        if self._active_id == extraction_id:
            self._active_id = None
        if extraction is None:
            logger.warning("Cannot complete unknown extraction %s", extraction_id)
            return False
        return self.remove_extraction(extraction)

    def mark_as_failed(self, extraction_id: UUID, error: str) -> bool:
        def update(ext: PendingExtraction) -> None:
            ext.status = PendingExtractionStatus.FAILED
            ext.last_error = error
            ext.retry_count += 1
            ext.last_attempt = utcnow()

        if self._active_id == extraction_id:
            self._active_id = None
        return self._update(extraction_id, update)

    def is_retryable(self, extraction_id: UUID) -> bool:
        """Failed and still under the retry bound."""
        extraction = self.get(extraction_id)
        return (
            extraction is not None
            and extraction.status == PendingExtractionStatus.FAILED
            and extraction.retry_count < self._max_retries
        )

    def reset_for_retry(self, extraction_id: UUID) -> bool:
        """failed -> queued. Refused for any other status or once retries are used up."""
        if not self.is_retryable(extraction_id):
            logger.warning("Extraction %s is not retryable; reset skipped", extraction_id)
            return False

        def update(ext: PendingExtraction) -> None:
            ext.status = PendingExtractionStatus.QUEUED
            ext.last_error = None

        return self._update(extraction_id, update)

    # Images

    def load_image(self, extraction: PendingExtraction) -> bytes | None:
        """Image bytes from local storage, else from the shared area."""
        try:
            return (self._images_dir / extraction.image_file_name).read_bytes()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not read image %s: %s", extraction.image_file_name, e)

        if self._shared_images_dir is not None:
            try:
                return (self._shared_images_dir / extraction.image_file_name).read_bytes()
            except OSError:
                pass

        logger.warning("Image %s not found for extraction %s", extraction.image_file_name, extraction.id)
        return None

    def import_image(self, image_file_name: str, source_dir: Path) -> bool:
        """Copy an image from ``source_dir`` into local storage, then remove the source."""
        source = source_dir / image_file_name
        if not source.exists():
            return False
        try:
            shutil.copyfile(source, self._images_dir / image_file_name)
        except OSError as e:
            logger.warning("Could not copy shared image %s: %s", image_file_name, e)
            return False
        try:
            source.unlink()
        except OSError as e:
            logger.warning("Could not remove shared image %s: %s", image_file_name, e)
        return True

    # Private helpers

    def _update(self, extraction_id: UUID, update: Callable[[PendingExtraction], None]) -> bool:
        extraction = self.get(extraction_id)
        if extraction is None:
            logger.warning("Extraction %s not found; update skipped", extraction_id)
            return False
        update(extraction)
        return self._save()

    def _save_image(self, image_bytes: bytes) -> str | None:
        file_name = f"{uuid4()}{IMAGE_EXTENSION}"
        try:
            atomic_write_bytes(self._images_dir / file_name, image_bytes)
        except OSError as e:
            logger.error("Failed to save image: %s", e)
            return None
        return file_name

    def _delete_image(self, file_name: str) -> None:
        candidates = [self._images_dir / file_name]
        if self._shared_images_dir is not None:
            candidates.append(self._shared_images_dir / file_name)

        for path in candidates:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not delete image %s: %s", path, e)

    def _save(self) -> bool:
        try:
            atomic_write_bytes(self._queue_path, _EXTRACTION_LIST.dump_json(self._extractions, by_alias=True, indent=2))
        except OSError as e:
            logger.error("Failed to save pending extractions: %s", e)
            return False
        return True

    def _load(self) -> None:
        if not self._queue_path.exists():
            return
        try:
            self._extractions = _EXTRACTION_LIST.validate_json(self._queue_path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.error("Failed to load pending extractions from %s: %s", self._queue_path, e)
            return

        # No worker runs before load, so in-flight states are leftovers of a killed process
        interrupted = [
            e for e in self._extractions
            if e.status in (PendingExtractionStatus.EXTRACTING, PendingExtractionStatus.SAVING)
        ]
        for extraction in interrupted:
            extraction.status = PendingExtractionStatus.QUEUED
        if interrupted:
            logger.info("Requeued %d interrupted extraction(s)", len(interrupted))
            self._save()

        logger.info("Loaded %d pending extraction(s)", len(self._extractions))
